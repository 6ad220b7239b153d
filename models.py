from datetime import datetime, timezone

from sqlalchemy.orm import relationship, validates
from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from database import Base
from proposal_lifecycle import ProposalStatus, ensure_transition


def utcnow() -> datetime:
    """Naive UTC timestamp; SQLite drops tzinfo so we never store it."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    email = Column(String(255), unique=True, index=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    name = Column(String(255))
    company_name = Column(String(255), default="")
    created_at = Column(DateTime, default=utcnow, nullable=False)

    sessions = relationship("AuthSession", back_populates="user", cascade="all, delete-orphan", passive_deletes=True)
    upwork_account = relationship(
        "UpworkAccount", back_populates="user", uselist=False, cascade="all, delete-orphan", passive_deletes=True
    )
    prompt_settings = relationship(
        "PromptSettings", back_populates="user", uselist=False, cascade="all, delete-orphan", passive_deletes=True
    )
    jobs = relationship("Job", back_populates="owner", cascade="all, delete-orphan", passive_deletes=True)
    proposals = relationship("Proposal", back_populates="owner", cascade="all, delete-orphan", passive_deletes=True)
    proposal_edits = relationship(
        "ProposalEdit", back_populates="owner", cascade="all, delete-orphan", passive_deletes=True
    )


class AuthSession(Base):
    __tablename__ = "sessions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    token = Column(String(500), unique=True, nullable=False)
    expires_at = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    user = relationship("User", back_populates="sessions")


class UpworkAccount(Base):
    __tablename__ = "upwork_accounts"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    access_token = Column(Text, nullable=False)
    refresh_token = Column(Text)
    token_type = Column(String(50), default="Bearer")
    expires_at = Column(DateTime, nullable=True)
    upwork_user_id = Column(String(255))
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    user = relationship("User", back_populates="upwork_account")


class PromptSettings(Base):
    __tablename__ = "prompt_settings"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False)
    basic_info = Column(JSON)
    validation_rules = Column(JSON)
    proposal_templates = Column(JSON)
    ai_settings = Column(JSON)
    job_preferences = Column(JSON)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    user = relationship("User", back_populates="prompt_settings")


class Job(Base):
    """Best-effort local copy of a marketplace job; Upwork stays the source of truth."""

    __tablename__ = "jobs"
    __table_args__ = (UniqueConstraint("user_id", "job_id", name="uq_jobs_user_job"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    job_id = Column(String(255), nullable=False)
    title = Column(Text)
    budget = Column(String(100))
    payload = Column(JSON)
    fetched_at = Column(DateTime, default=utcnow, nullable=False)

    owner = relationship("User", back_populates="jobs")


class Proposal(Base):
    __tablename__ = "proposals"
    __table_args__ = (UniqueConstraint("user_id", "job_id", name="uq_proposals_user_job"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    job_id = Column(String(255), nullable=False)
    job_title = Column(Text)
    job_description = Column(Text)
    client_info = Column(JSON, default=dict)
    budget = Column(String(100))
    skills = Column(JSON, default=list)
    generated_proposal = Column(Text)
    edited_proposal = Column(Text)
    status = Column(
        Enum(
            ProposalStatus,
            name="proposal_status",
            native_enum=False,
            length=32,
            values_callable=lambda statuses: [s.value for s in statuses],
        ),
        default=ProposalStatus.DRAFT,
        nullable=False,
    )
    ai_model = Column(String(100))
    temperature = Column(Float)
    upwork_proposal_id = Column(String(255))
    sent_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    owner = relationship("User", back_populates="proposals")

    @validates("status")
    def _validate_status(self, key, value):
        return ensure_transition(self.status, value)


class ProposalEdit(Base):
    """Append-only (original, edited) pairs used as advisory prompt hints."""

    __tablename__ = "proposal_edits"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    job_id = Column(String(255))
    original_proposal = Column(Text)
    edited_proposal = Column(Text)
    edit_reason = Column(Text)
    learned_patterns = Column(JSON, default=list)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    owner = relationship("User", back_populates="proposal_edits")
