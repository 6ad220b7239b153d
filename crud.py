from datetime import datetime
from typing import Iterable, Optional

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

import models
import schemas
from errors import PersistenceError
from proposal_lifecycle import ProposalStatus

logger = structlog.get_logger(__name__)


def _commit(db: Session, what: str) -> None:
    """Commit or roll back, surfacing failures as ``PersistenceError``."""
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Database write failed", what=what, error=str(exc))
        raise PersistenceError(f"Failed to save {what}") from exc


# --- User CRUD ---
def get_user_by_id(db: Session, user_id: int):
    """Get a user by their primary key ID."""
    return db.query(models.User).filter(models.User.id == user_id).first()


def get_user_by_email(db: Session, email: str):
    return db.query(models.User).filter(models.User.email == email.strip().lower()).first()


def count_users(db: Session) -> int:
    return db.query(models.User).count()


def create_user(db: Session, user: schemas.SignupRequest, password_hash: str):
    db_user = models.User(
        email=user.email.strip().lower(),
        password_hash=password_hash,
        name=user.name,
        company_name=user.company_name or "",
    )
    db.add(db_user)
    _commit(db, "user")
    db.refresh(db_user)
    return db_user


# --- Session CRUD ---
def create_session(db: Session, user_id: int, token: str, expires_at: datetime):
    db_session = models.AuthSession(user_id=user_id, token=token, expires_at=expires_at)
    db.add(db_session)
    _commit(db, "session")
    return db_session


def get_session(db: Session, token: str):
    """Return the session row for ``token`` if it exists and has not expired."""
    return (
        db.query(models.AuthSession)
        .filter(models.AuthSession.token == token, models.AuthSession.expires_at > models.utcnow())
        .first()
    )


def delete_session(db: Session, token: str) -> bool:
    deleted = db.query(models.AuthSession).filter(models.AuthSession.token == token).delete()
    _commit(db, "session")
    return bool(deleted)


# --- Upwork credentials ---
def get_upwork_account(db: Session, user_id: int):
    return db.query(models.UpworkAccount).filter(models.UpworkAccount.user_id == user_id).first()


def upsert_upwork_account(
    db: Session,
    user_id: int,
    access_token: str,
    refresh_token: Optional[str],
    token_type: str = "Bearer",
    expires_at: Optional[datetime] = None,
    upwork_user_id: Optional[str] = None,
):
    """Store (or overwrite) the user's single Upwork credential row."""
    account = get_upwork_account(db, user_id)
    if account is None:
        account = models.UpworkAccount(user_id=user_id)
        db.add(account)
    account.access_token = access_token
    account.refresh_token = refresh_token
    account.token_type = token_type or "Bearer"
    account.expires_at = expires_at
    if upwork_user_id:
        account.upwork_user_id = upwork_user_id
    try:
        db.commit()
    except IntegrityError:
        # Lost a race with a concurrent insert; overwrite the winner.
        db.rollback()
        account = get_upwork_account(db, user_id)
        if account is None:
            raise PersistenceError("Failed to save Upwork connection")
        account.access_token = access_token
        account.refresh_token = refresh_token
        account.token_type = token_type or "Bearer"
        account.expires_at = expires_at
        _commit(db, "Upwork connection")
    except SQLAlchemyError as exc:
        db.rollback()
        raise PersistenceError("Failed to save Upwork connection") from exc
    db.refresh(account)
    return account


def update_upwork_tokens(
    db: Session,
    user_id: int,
    access_token: str,
    refresh_token: Optional[str],
    expires_at: Optional[datetime],
):
    account = get_upwork_account(db, user_id)
    if account is None:
        return None
    account.access_token = access_token
    if refresh_token:
        account.refresh_token = refresh_token
    account.expires_at = expires_at
    _commit(db, "refreshed Upwork tokens")
    db.refresh(account)
    return account


def delete_upwork_account(db: Session, user_id: int) -> bool:
    account = get_upwork_account(db, user_id)
    if not account:
        return False
    db.delete(account)
    _commit(db, "Upwork disconnect")
    return True


# --- Prompt settings ---
PROMPT_SECTIONS = ("basic_info", "validation_rules", "proposal_templates", "ai_settings", "job_preferences")


def get_prompt_settings(db: Session, user_id: int):
    return db.query(models.PromptSettings).filter(models.PromptSettings.user_id == user_id).first()


def upsert_prompt_settings(db: Session, user_id: int, sections: dict):
    row = get_prompt_settings(db, user_id)
    if row is None:
        row = models.PromptSettings(user_id=user_id)
        db.add(row)
    for name in PROMPT_SECTIONS:
        setattr(row, name, sections.get(name))
    _commit(db, "prompt settings")
    db.refresh(row)
    return row


# --- Job cache rows ---
def upsert_jobs(db: Session, user_id: int, jobs: Iterable[schemas.JobRecord]) -> int:
    """Insert or refresh the local copies of fetched jobs. Returns the number written."""
    jobs = list(jobs)
    if not jobs:
        return 0
    ids = [job.id for job in jobs]
    existing = {
        row.job_id: row
        for row in db.query(models.Job).filter(models.Job.user_id == user_id, models.Job.job_id.in_(ids))
    }
    now = models.utcnow()
    for job in jobs:
        row = existing.get(job.id)
        if row is None:
            row = models.Job(user_id=user_id, job_id=job.id)
            db.add(row)
            existing[job.id] = row
        row.title = job.title
        row.budget = job.budget[:100]
        row.payload = job.to_json()
        row.fetched_at = now
    _commit(db, "jobs")
    return len(jobs)


def get_cached_job(db: Session, user_id: int, job_id: str):
    return db.query(models.Job).filter(models.Job.user_id == user_id, models.Job.job_id == job_id).first()


# --- Proposal CRUD ---
def get_proposal(db: Session, proposal_id: int, user_id: int):
    return (
        db.query(models.Proposal)
        .filter(models.Proposal.id == proposal_id, models.Proposal.user_id == user_id)
        .first()
    )


def get_proposal_for_job(db: Session, user_id: int, job_id: str):
    return (
        db.query(models.Proposal)
        .filter(models.Proposal.user_id == user_id, models.Proposal.job_id == job_id)
        .first()
    )


def get_proposals_for_user(db: Session, user_id: int, limit: int = 50):
    """Proposal history, most recently touched first."""
    return (
        db.query(models.Proposal)
        .filter(models.Proposal.user_id == user_id)
        .order_by(models.Proposal.updated_at.desc(), models.Proposal.id.desc())
        .limit(limit)
        .all()
    )


def _apply_proposal_fields(proposal: models.Proposal, status: ProposalStatus, fields: dict) -> None:
    # Status first: the model validator raises before anything else is touched.
    proposal.status = status
    for key, value in fields.items():
        if value is not None:
            setattr(proposal, key, value)
    if proposal.status == ProposalStatus.SENT and proposal.sent_at is None:
        proposal.sent_at = models.utcnow()


def upsert_proposal(db: Session, user_id: int, job_id: str, status: ProposalStatus, **fields):
    """Create or update the single proposal row for ``(user_id, job_id)``.

    Fields passed as ``None`` keep their stored value. Raises
    ``InvalidTransition`` when the status move is not allowed and
    ``PersistenceError`` when the write fails. Returns ``(proposal, is_new)``.
    """
    for attempt in range(2):
        proposal = get_proposal_for_job(db, user_id, job_id)
        is_new = proposal is None
        if is_new:
            proposal = models.Proposal(user_id=user_id, job_id=job_id)
        _apply_proposal_fields(proposal, status, fields)
        if is_new:
            db.add(proposal)
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            if attempt:
                raise PersistenceError("Failed to save proposal") from exc
            # A concurrent request inserted the row first; retry as an update.
            logger.info("Proposal insert raced, retrying as update", user_id=user_id, job_id=job_id)
            continue
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Proposal write failed", user_id=user_id, job_id=job_id, error=str(exc))
            raise PersistenceError("Failed to save proposal") from exc
        db.refresh(proposal)
        return proposal, is_new
    raise PersistenceError("Failed to save proposal")


def update_proposal_text(db: Session, proposal: models.Proposal, edited_text: str):
    proposal.edited_proposal = edited_text
    _commit(db, "proposal")
    db.refresh(proposal)
    return proposal


def delete_proposal(db: Session, proposal_id: int, user_id: int) -> bool:
    proposal = get_proposal(db, proposal_id, user_id)
    if not proposal:
        return False
    db.delete(proposal)
    _commit(db, "proposal deletion")
    return True


# --- Proposal edits ---
def add_proposal_edit(
    db: Session,
    user_id: int,
    job_id: str,
    original: str,
    edited: str,
    edit_reason: Optional[str],
    learned_patterns: list,
):
    edit = models.ProposalEdit(
        user_id=user_id,
        job_id=job_id,
        original_proposal=original,
        edited_proposal=edited,
        edit_reason=edit_reason,
        learned_patterns=learned_patterns,
    )
    db.add(edit)
    _commit(db, "proposal edit")
    return edit


def get_recent_edits(db: Session, user_id: int, limit: int = 50):
    return (
        db.query(models.ProposalEdit)
        .filter(models.ProposalEdit.user_id == user_id)
        .order_by(models.ProposalEdit.created_at.desc(), models.ProposalEdit.id.desc())
        .limit(limit)
        .all()
    )
