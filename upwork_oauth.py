"""Upwork OAuth 2.0: authorization URL, signed state, code exchange and refresh."""
from __future__ import annotations

import asyncio
import secrets
import time
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urlencode

import httpx
import structlog
from jose import JWTError, jwt
from pydantic import BaseModel
from sqlalchemy.orm import Session

import crud
from errors import InvalidOAuthState, TokenExchangeError
from settings import Settings, get_settings

logger = structlog.get_logger(__name__)

STATE_PURPOSE = "upwork_oauth"
STATE_ALGORITHM = "HS256"


class TokenPair(BaseModel):
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    expires_in: Optional[int] = None

    def expires_at(self, now: Optional[datetime] = None) -> Optional[datetime]:
        if not self.expires_in:
            return None
        now = now or datetime.now(timezone.utc).replace(tzinfo=None)
        return now + timedelta(seconds=self.expires_in)


class RefreshResult(BaseModel):
    ok: bool = False
    tokens: Optional[TokenPair] = None
    requires_reconnect: bool = False
    reason: Optional[str] = None
    # True when a concurrent caller already refreshed and we reused its tokens
    reused: bool = False


def build_authorization_url(client_id: str, redirect_uri: str, scopes: str, state: str, base_url: str) -> str:
    query = urlencode(
        {
            "response_type": "code",
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "scope": scopes,
            "state": state,
        }
    )
    return f"{base_url}?{query}"


def issue_state(user_id: int, settings: Optional[Settings] = None) -> str:
    """Signed, short-lived ``state`` bound to the user starting the flow."""
    settings = settings or get_settings()
    claims = {
        "purpose": STATE_PURPOSE,
        "sub": str(user_id),
        "nonce": secrets.token_urlsafe(16),
        "exp": int(time.time()) + settings.oauth_state_ttl_seconds,
    }
    return jwt.encode(claims, settings.jwt_secret, algorithm=STATE_ALGORITHM)


def verify_state(state: Optional[str], user_id: int, settings: Optional[Settings] = None) -> None:
    """Raise ``InvalidOAuthState`` unless ``state`` was issued to ``user_id`` and is unexpired."""
    if not state:
        raise InvalidOAuthState()
    settings = settings or get_settings()
    try:
        claims = jwt.decode(state, settings.jwt_secret, algorithms=[STATE_ALGORITHM])
    except JWTError as exc:
        logger.warning("OAuth state rejected", user_id=user_id, reason=str(exc))
        raise InvalidOAuthState() from exc
    if claims.get("purpose") != STATE_PURPOSE or claims.get("sub") != str(user_id):
        logger.warning("OAuth state issued for a different flow", user_id=user_id)
        raise InvalidOAuthState()


def extract_upwork_user_id(access_token: str) -> Optional[str]:
    """Best-effort tenant/user id from a JWT access token; opaque tokens give ``None``."""
    try:
        claims = jwt.get_unverified_claims(access_token)
    except JWTError:
        return None
    for key in ("tenant_id", "sub", "user_id", "client_id"):
        value = claims.get(key)
        if value:
            return str(value)
    return None


class UpworkOAuth:
    """Token endpoint client. ``transport`` lets tests substitute ``httpx.MockTransport``."""

    def __init__(self, settings: Optional[Settings] = None, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings or get_settings()
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self._transport,
            timeout=self.settings.upstream_timeout_seconds,
            auth=(self.settings.upwork_client_id or "", self.settings.upwork_client_secret or ""),
            headers={"Accept": "application/json"},
        )

    async def _post_token(self, form: dict) -> httpx.Response:
        async with self._client() as client:
            return await client.post(self.settings.upwork_token_url, data=form)

    async def exchange_code(self, code: str, redirect_uri: Optional[str] = None) -> TokenPair:
        """Trade an authorization code for tokens. Never returns a partial result."""
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri or self.settings.upwork_redirect_uri,
        }
        try:
            response = await self._post_token(form)
        except httpx.TimeoutException as exc:
            logger.warning("Upwork token exchange timed out")
            raise TokenExchangeError("Upwork token endpoint timed out") from exc
        except httpx.HTTPError as exc:
            logger.warning("Upwork token exchange failed", error=str(exc))
            raise TokenExchangeError("Could not reach Upwork token endpoint") from exc

        if response.status_code >= 400:
            logger.warning(
                "Upwork rejected authorization code",
                status=response.status_code,
                body=response.text[:200],
            )
            raise TokenExchangeError(
                f"Failed to exchange authorization code for token (HTTP {response.status_code})",
                upstream_status=response.status_code,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise TokenExchangeError("Upwork token endpoint returned invalid JSON") from exc
        if not isinstance(body, dict) or not body.get("access_token"):
            raise TokenExchangeError("Upwork token response did not include an access token")

        tokens = TokenPair(
            access_token=body["access_token"],
            refresh_token=body.get("refresh_token"),
            token_type=body.get("token_type") or "Bearer",
            expires_in=_as_int(body.get("expires_in")),
        )
        logger.info("Upwork authorization code exchanged", has_refresh_token=bool(tokens.refresh_token))
        return tokens

    async def refresh(self, refresh_token: str) -> RefreshResult:
        """Refresh an access token. Failures are reported, never raised."""
        form = {"grant_type": "refresh_token", "refresh_token": refresh_token}
        try:
            response = await self._post_token(form)
        except httpx.HTTPError as exc:
            logger.warning("Upwork token refresh failed", error=str(exc))
            return RefreshResult(requires_reconnect=True, reason="Token refresh failed. Please reconnect Upwork.")

        if response.status_code >= 400:
            logger.warning("Upwork refused token refresh", status=response.status_code, body=response.text[:200])
            return RefreshResult(requires_reconnect=True, reason="Token refresh failed. Please reconnect Upwork.")
        try:
            body = response.json()
        except ValueError:
            body = None
        if not isinstance(body, dict) or not body.get("access_token"):
            return RefreshResult(requires_reconnect=True, reason="Upwork returned an unusable refresh response.")

        tokens = TokenPair(
            access_token=body["access_token"],
            # Upwork may not rotate the refresh token
            refresh_token=body.get("refresh_token") or refresh_token,
            token_type=body.get("token_type") or "Bearer",
            expires_in=_as_int(body.get("expires_in")),
        )
        return RefreshResult(ok=True, tokens=tokens)


def _as_int(value) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class RefreshCoordinator:
    """Serializes token refreshes per user within this process.

    A caller that queued behind another refresh re-reads the stored
    credentials and reuses them when the refresh token already changed.
    """

    def __init__(self) -> None:
        self._locks: dict[int, asyncio.Lock] = {}

    def lock_for(self, user_id: int) -> asyncio.Lock:
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        return lock

    async def refresh(
        self,
        db: Session,
        user_id: int,
        oauth: UpworkOAuth,
        seen_refresh_token: Optional[str] = None,
    ) -> RefreshResult:
        async with self.lock_for(user_id):
            db.expire_all()
            account = crud.get_upwork_account(db, user_id)
            if account is None:
                return RefreshResult(
                    requires_reconnect=True, reason="No Upwork account found. Please connect first."
                )
            if seen_refresh_token is not None and account.refresh_token != seen_refresh_token:
                logger.info("Reusing tokens refreshed by a concurrent request", user_id=user_id)
                return RefreshResult(
                    ok=True,
                    reused=True,
                    tokens=TokenPair(
                        access_token=account.access_token,
                        refresh_token=account.refresh_token,
                        token_type=account.token_type or "Bearer",
                    ),
                )
            if not account.refresh_token:
                return RefreshResult(
                    requires_reconnect=True, reason="No refresh token available. Please reconnect Upwork."
                )

            result = await oauth.refresh(account.refresh_token)
            if result.ok and result.tokens:
                crud.update_upwork_tokens(
                    db,
                    user_id,
                    access_token=result.tokens.access_token,
                    refresh_token=result.tokens.refresh_token,
                    expires_at=result.tokens.expires_at(),
                )
                logger.info("Upwork token refreshed", user_id=user_id)
            else:
                logger.warning("Upwork token refresh requires reconnect", user_id=user_id, reason=result.reason)
            return result
