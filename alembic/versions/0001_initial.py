"""initial schema

Revision ID: 0001_initial
Revises:
Create Date: 2025-01-15 00:00:00
"""
from alembic import op
import sqlalchemy as sa


revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("password_hash", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=255)),
        sa.Column("company_name", sa.String(length=255)),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_users_id", "users", ["id"])
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "sessions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("token", sa.String(length=500), nullable=False, unique=True),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_sessions_id", "sessions", ["id"])
    op.create_index("ix_sessions_user_id", "sessions", ["user_id"])

    op.create_table(
        "upwork_accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True
        ),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("refresh_token", sa.Text()),
        sa.Column("token_type", sa.String(length=50)),
        sa.Column("expires_at", sa.DateTime()),
        sa.Column("upwork_user_id", sa.String(length=255)),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_upwork_accounts_id", "upwork_accounts", ["id"])

    op.create_table(
        "prompt_settings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, unique=True
        ),
        sa.Column("basic_info", sa.JSON()),
        sa.Column("validation_rules", sa.JSON()),
        sa.Column("proposal_templates", sa.JSON()),
        sa.Column("ai_settings", sa.JSON()),
        sa.Column("job_preferences", sa.JSON()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_prompt_settings_id", "prompt_settings", ["id"])

    op.create_table(
        "jobs",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("job_id", sa.String(length=255), nullable=False),
        sa.Column("title", sa.Text()),
        sa.Column("budget", sa.String(length=100)),
        sa.Column("payload", sa.JSON()),
        sa.Column("fetched_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_id", "job_id", name="uq_jobs_user_job"),
    )
    op.create_index("ix_jobs_id", "jobs", ["id"])
    op.create_index("ix_jobs_user_id", "jobs", ["user_id"])

    op.create_table(
        "proposals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("job_id", sa.String(length=255), nullable=False),
        sa.Column("job_title", sa.Text()),
        sa.Column("job_description", sa.Text()),
        sa.Column("client_info", sa.JSON()),
        sa.Column("budget", sa.String(length=100)),
        sa.Column("skills", sa.JSON()),
        sa.Column("generated_proposal", sa.Text()),
        sa.Column("edited_proposal", sa.Text()),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("ai_model", sa.String(length=100)),
        sa.Column("temperature", sa.Float()),
        sa.Column("upwork_proposal_id", sa.String(length=255)),
        sa.Column("sent_at", sa.DateTime()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_id", "job_id", name="uq_proposals_user_job"),
    )
    op.create_index("ix_proposals_id", "proposals", ["id"])
    op.create_index("ix_proposals_user_id", "proposals", ["user_id"])

    op.create_table(
        "proposal_edits",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("job_id", sa.String(length=255)),
        sa.Column("original_proposal", sa.Text()),
        sa.Column("edited_proposal", sa.Text()),
        sa.Column("edit_reason", sa.Text()),
        sa.Column("learned_patterns", sa.JSON()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_proposal_edits_id", "proposal_edits", ["id"])
    op.create_index("ix_proposal_edits_user_id", "proposal_edits", ["user_id"])


def downgrade() -> None:
    op.drop_table("proposal_edits")
    op.drop_table("proposals")
    op.drop_table("jobs")
    op.drop_table("prompt_settings")
    op.drop_table("upwork_accounts")
    op.drop_table("sessions")
    op.drop_table("users")
