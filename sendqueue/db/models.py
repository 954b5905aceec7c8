"""
SQLAlchemy database models.
Defines the send job table and the campaign tables it reads from.
"""

from datetime import datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from sendqueue.constants import (
    DEFAULT_SPLIT_RATIO,
    CampaignStatus,
    JobStatus,
    SuppressionReason,
    Variant,
)
from sendqueue.types.job import Lease, Leased, Unleased

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _enum(enum_cls: type, name: str) -> Enum:
    return Enum(
        enum_cls,
        name=name,
        create_constraint=True,
        values_callable=lambda x: [e.value for e in x],
    )


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Campaign(Base):
    """
    A bulk email campaign.

    Counters are fast-path aggregates bumped atomically by the worker;
    the job table remains the source of truth for progress.
    """

    __tablename__ = "campaigns"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[CampaignStatus] = mapped_column(
        _enum(CampaignStatus, "campaign_status"),
        nullable=False,
        default=CampaignStatus.DRAFT,
        index=True,
    )

    # Content
    template_id: Mapped[str | None] = mapped_column(
        ForeignKey("email_templates.id"), nullable=True
    )
    subject: Mapped[str | None] = mapped_column(String(500), nullable=True)
    html_override: Mapped[str | None] = mapped_column(Text, nullable=True)

    # A/B testing
    ab_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    split_ratio: Mapped[int] = mapped_column(
        Integer, nullable=False, default=DEFAULT_SPLIT_RATIO
    )
    subject_a: Mapped[str | None] = mapped_column(String(500), nullable=True)
    subject_b: Mapped[str | None] = mapped_column(String(500), nullable=True)
    template_id_a: Mapped[str | None] = mapped_column(
        ForeignKey("email_templates.id"), nullable=True
    )
    template_id_b: Mapped[str | None] = mapped_column(
        ForeignKey("email_templates.id"), nullable=True
    )

    # Audience and scheduling
    audience_filter: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    scheduled_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Aggregate counters
    queued_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sent_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"Campaign(id={self.id}, status={self.status})"


class EmailTemplate(Base):
    """Reusable email template. Authored elsewhere, only read here."""

    __tablename__ = "email_templates"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    subject_default: Mapped[str | None] = mapped_column(String(500), nullable=True)
    html: Mapped[str] = mapped_column(Text, nullable=False, default="")


class Subscriber(Base):
    """Newsletter subscriber. Only confirmed subscribers are mailed."""

    __tablename__ = "subscribers"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, index=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    country: Mapped[str | None] = mapped_column(String(100), nullable=True)
    continent: Mapped[str | None] = mapped_column(String(100), nullable=True)
    source: Mapped[str | None] = mapped_column(String(100), nullable=True)
    interests: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    confirmed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    unsubscribe_token: Mapped[str | None] = mapped_column(
        String(128), nullable=True, unique=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )


class SendJob(Base):
    """
    One email to one subscriber for one campaign.

    This is the authoritative source of truth for send state.

    Key constraints:
    - (campaign_id, subscriber_id) is unique, so enqueue is idempotent
    - status is processing exactly when locked_at and locked_by are set
    - attempts never exceeds max_attempts
    """

    __tablename__ = "send_jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    campaign_id: Mapped[str] = mapped_column(
        ForeignKey("campaigns.id"), nullable=False, index=True
    )
    subscriber_id: Mapped[str] = mapped_column(String(96), nullable=False)
    to_email: Mapped[str] = mapped_column(String(320), nullable=False)
    payload: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    variant: Mapped[Variant] = mapped_column(
        _enum(Variant, "send_variant"), nullable=False, default=Variant.A
    )

    status: Mapped[JobStatus] = mapped_column(
        _enum(JobStatus, "send_job_status"),
        nullable=False,
        default=JobStatus.QUEUED,
        index=True,
    )
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    skip_reason: Mapped[str | None] = mapped_column(String(50), nullable=True)

    run_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    locked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    locked_by: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now(), onupdate=func.now()
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("campaign_id", "subscriber_id", name="uq_send_job_recipient"),
        CheckConstraint(
            "(status = 'processing') = (locked_at IS NOT NULL AND locked_by IS NOT NULL)",
            name="ck_send_job_lease",
        ),
        CheckConstraint("attempts <= max_attempts", name="ck_send_job_attempts"),
        # Index for efficient queue polling
        Index(
            "ix_send_jobs_claim",
            "status",
            "run_at",
            "created_at",
            postgresql_where=(Column("status") == JobStatus.QUEUED.value),
        ),
        # Index for stale lock sweeps
        Index(
            "ix_send_jobs_locked_at",
            "locked_at",
            postgresql_where=(Column("status") == JobStatus.PROCESSING.value),
        ),
        Index("ix_send_jobs_campaign_status", "campaign_id", "status"),
    )

    @property
    def lease(self) -> Lease:
        """The lease columns viewed as a single tagged value."""
        if self.locked_by is not None and self.locked_at is not None:
            return Leased(worker_id=self.locked_by, since=self.locked_at)
        return Unleased()

    def __repr__(self) -> str:
        return (
            f"SendJob(id={self.id}, campaign={self.campaign_id}, "
            f"status={self.status}, attempts={self.attempts}/{self.max_attempts})"
        )


class SuppressionEntry(Base):
    """An address that must never be mailed, keyed by normalized email."""

    __tablename__ = "suppression_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    reason: Mapped[SuppressionReason] = mapped_column(
        _enum(SuppressionReason, "suppression_reason"), nullable=False
    )
    source: Mapped[str | None] = mapped_column(String(100), nullable=True)
    details: Mapped[dict | None] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )


class SendRateLimit(Base):
    """Lock row serializing reservations for one limiter across processes."""

    __tablename__ = "send_rate_limits"

    name: Mapped[str] = mapped_column(String(64), primary_key=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class SendReservation(Base):
    """Dispatches granted by a limiter, counted over trailing windows."""

    __tablename__ = "send_reservations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    limiter: Mapped[str] = mapped_column(String(64), nullable=False)
    reserved_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        Index("ix_send_reservations_window", "limiter", "reserved_at"),
    )
