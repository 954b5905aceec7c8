"""Initial schema with campaign send queue tables

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ENUMS = {
    "campaign_status": ("draft", "scheduled", "sending", "paused", "sent"),
    "send_job_status": ("queued", "processing", "sent", "failed", "skipped"),
    "send_variant": ("A", "B"),
    "suppression_reason": ("unsubscribed", "email_invalid"),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def upgrade() -> None:
    # Create enums using raw SQL with IF NOT EXISTS
    for name, values in ENUMS.items():
        labels = ", ".join(f"'{v}'" for v in values)
        op.execute(f"""
            DO $$ BEGIN
                CREATE TYPE {name} AS ENUM ({labels});
            EXCEPTION
                WHEN duplicate_object THEN null;
            END $$;
        """)

    op.create_table(
        "email_templates",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("subject_default", sa.String(500), nullable=True),
        sa.Column("html", sa.Text, nullable=False, server_default=""),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "campaigns",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("status", _enum("campaign_status"), nullable=False, server_default="draft"),
        sa.Column("template_id", sa.String(64), sa.ForeignKey("email_templates.id"), nullable=True),
        sa.Column("subject", sa.String(500), nullable=True),
        sa.Column("html_override", sa.Text, nullable=True),
        sa.Column("ab_enabled", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("split_ratio", sa.Integer, nullable=False, server_default="50"),
        sa.Column("subject_a", sa.String(500), nullable=True),
        sa.Column("subject_b", sa.String(500), nullable=True),
        sa.Column("template_id_a", sa.String(64), sa.ForeignKey("email_templates.id"), nullable=True),
        sa.Column("template_id_b", sa.String(64), sa.ForeignKey("email_templates.id"), nullable=True),
        sa.Column("audience_filter", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("scheduled_at", sa.DateTime, nullable=True),
        sa.Column("queued_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("sent_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("failed_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("skipped_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_campaigns_status", "campaigns", ["status"])

    op.create_table(
        "subscribers",
        sa.Column("id", sa.String(64), nullable=False),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("country", sa.String(100), nullable=True),
        sa.Column("continent", sa.String(100), nullable=True),
        sa.Column("source", sa.String(100), nullable=True),
        sa.Column("interests", postgresql.JSONB, nullable=False, server_default="[]"),
        sa.Column("confirmed_at", sa.DateTime, nullable=True),
        sa.Column("unsubscribe_token", sa.String(128), nullable=True, unique=True),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_subscribers_email", "subscribers", ["email"])

    op.create_table(
        "send_jobs",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("campaign_id", sa.String(64), sa.ForeignKey("campaigns.id"), nullable=False),
        sa.Column("subscriber_id", sa.String(96), nullable=False),
        sa.Column("to_email", sa.String(320), nullable=False),
        sa.Column("payload", postgresql.JSONB, nullable=False, server_default="{}"),
        sa.Column("variant", _enum("send_variant"), nullable=False, server_default="A"),
        sa.Column("status", _enum("send_job_status"), nullable=False, server_default="queued"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("skip_reason", sa.String(50), nullable=True),
        sa.Column("run_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("locked_at", sa.DateTime, nullable=True),
        sa.Column("locked_by", sa.String(255), nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime, nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("campaign_id", "subscriber_id", name="uq_send_job_recipient"),
        sa.CheckConstraint(
            "(status = 'processing') = (locked_at IS NOT NULL AND locked_by IS NOT NULL)",
            name="ck_send_job_lease",
        ),
        sa.CheckConstraint("attempts <= max_attempts", name="ck_send_job_attempts"),
    )
    op.create_index("ix_send_jobs_campaign_id", "send_jobs", ["campaign_id"])
    op.create_index("ix_send_jobs_status", "send_jobs", ["status"])
    op.create_index("ix_send_jobs_campaign_status", "send_jobs", ["campaign_id", "status"])

    # Partial index for queue polling
    op.execute("""
        CREATE INDEX ix_send_jobs_claim
        ON send_jobs (status, run_at, created_at)
        WHERE status = 'queued'
    """)

    # Partial index for stale lock sweeps
    op.execute("""
        CREATE INDEX ix_send_jobs_locked_at
        ON send_jobs (locked_at)
        WHERE status = 'processing'
    """)

    op.create_table(
        "suppression_entries",
        sa.Column("id", sa.Integer, autoincrement=True, nullable=False),
        sa.Column("email", sa.String(320), nullable=False, unique=True),
        sa.Column("reason", _enum("suppression_reason"), nullable=False),
        sa.Column("source", sa.String(100), nullable=True),
        sa.Column("details", postgresql.JSONB, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "send_rate_limits",
        sa.Column("name", sa.String(64), nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
        sa.PrimaryKeyConstraint("name"),
    )

    op.create_table(
        "send_reservations",
        sa.Column("id", sa.Integer, autoincrement=True, nullable=False),
        sa.Column("limiter", sa.String(64), nullable=False),
        sa.Column("reserved_at", sa.DateTime, nullable=False),
        sa.Column("amount", sa.Integer, nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_send_reservations_window", "send_reservations", ["limiter", "reserved_at"]
    )


def downgrade() -> None:
    op.drop_index("ix_send_reservations_window")
    op.drop_table("send_reservations")
    op.drop_table("send_rate_limits")
    op.drop_table("suppression_entries")

    op.execute("DROP INDEX IF EXISTS ix_send_jobs_locked_at")
    op.execute("DROP INDEX IF EXISTS ix_send_jobs_claim")
    op.drop_index("ix_send_jobs_campaign_status")
    op.drop_index("ix_send_jobs_status")
    op.drop_index("ix_send_jobs_campaign_id")
    op.drop_table("send_jobs")

    op.drop_index("ix_subscribers_email")
    op.drop_table("subscribers")
    op.drop_index("ix_campaigns_status")
    op.drop_table("campaigns")
    op.drop_table("email_templates")

    for name in ENUMS:
        op.execute(f"DROP TYPE IF EXISTS {name}")
