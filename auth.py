"""Session authentication for the single local user.

Passwords are stored as bcrypt hashes. A successful login or signup issues
an HS256 JWT that is both set as an HTTP-only cookie and recorded in the
``sessions`` table; a token is honoured only while its row exists and has
not expired, so logout is immediate even though the JWT itself is still
cryptographically valid.

The ``get_current_user`` dependency also accepts ``Authorization: Bearer``
for scripted clients.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Annotated, Optional

import bcrypt
import structlog
from fastapi import Depends, Request, Response
from jose import JWTError, jwt
from sqlalchemy.orm import Session

import crud
import models
import schemas
from database import get_db
from errors import AuthenticationRequired, SignupClosed, ValidationError
from observability import bind_user_context
from settings import get_settings

logger = structlog.get_logger(__name__)

ALGORITHM = "HS256"


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=12)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


def create_session_token(user_id: int) -> tuple[str, datetime]:
    settings = get_settings()
    now = datetime.now(timezone.utc)
    expires = now + timedelta(days=settings.session_expire_days)
    claims = {
        "sub": str(user_id),
        "iat": int(now.timestamp()),
        "exp": int(expires.timestamp()),
        # Two logins in the same second must still yield distinct tokens
        "jti": uuid.uuid4().hex,
    }
    token = jwt.encode(claims, settings.jwt_secret, algorithm=ALGORITHM)
    return token, expires.replace(tzinfo=None)


def decode_session_token(token: str) -> int:
    """Return the user id carried by ``token``; raises ``AuthenticationRequired``."""
    try:
        claims = jwt.decode(token, get_settings().jwt_secret, algorithms=[ALGORITHM])
        return int(claims["sub"])
    except (JWTError, KeyError, ValueError) as exc:
        logger.info("Rejected session token", reason=str(exc))
        raise AuthenticationRequired()


def start_session(db: Session, user: models.User) -> str:
    token, expires_at = create_session_token(user.id)
    crud.create_session(db, user.id, token, expires_at)
    logger.info("Session created", user_id=user.id)
    return token


def set_session_cookie(response: Response, token: str) -> None:
    settings = get_settings()
    response.set_cookie(
        key=settings.session_cookie_name,
        value=token,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        max_age=settings.session_expire_days * 24 * 60 * 60,
        path="/",
    )


def clear_session_cookie(response: Response) -> None:
    response.delete_cookie(key=get_settings().session_cookie_name, path="/")


def register_user(db: Session, request: schemas.SignupRequest) -> models.User:
    """Create the one and only account; closed once any user exists."""
    if crud.count_users(db) > 0:
        raise SignupClosed()
    if crud.get_user_by_email(db, request.email):
        raise ValidationError("User already exists")
    user = crud.create_user(db, request, hash_password(request.password))
    logger.info("User registered", user_id=user.id)
    return user


def authenticate(db: Session, email: str, password: str) -> models.User:
    user = crud.get_user_by_email(db, email)
    if not user or not verify_password(password, user.password_hash):
        logger.info("Login failed", email=email.strip().lower())
        raise ValidationError("Invalid email or password")
    return user


def get_session_token(request: Request) -> Optional[str]:
    token = request.cookies.get(get_settings().session_cookie_name)
    if token:
        return token
    authorization = request.headers.get("Authorization")
    if authorization and authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1].strip() or None
    return None


# --- FastAPI dependencies ---
def get_optional_user(
    token: Annotated[Optional[str], Depends(get_session_token)],
    db: Session = Depends(get_db),
) -> Optional[models.User]:
    if not token:
        return None
    try:
        user_id = decode_session_token(token)
    except AuthenticationRequired:
        return None
    session = crud.get_session(db, token)
    if session is None or session.user_id != user_id:
        return None
    return crud.get_user_by_id(db, user_id)


async def get_current_user(
    user: Annotated[Optional[models.User], Depends(get_optional_user)],
) -> models.User:
    if user is None:
        raise AuthenticationRequired()
    bind_user_context(user.id)
    return user


CurrentUser = Annotated[models.User, Depends(get_current_user)]
