"""
Pytest configuration and shared fixtures.
"""

import os
import tempfile
from collections.abc import AsyncGenerator, Awaitable, Callable
from typing import Any
from uuid import uuid4

# Test database URL - a throwaway SQLite file unless a Postgres URL is given
_TEST_DB_DIR = tempfile.mkdtemp(prefix="sendqueue-tests-")
TEST_DATABASE_URL = os.getenv(
    "TEST_DATABASE_URL",
    f"sqlite+aiosqlite:///{_TEST_DB_DIR}/sendqueue_test.db",
)

# Set environment BEFORE any imports that might read settings
os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ["OTEL_EXPORTER_ENABLED"] = "false"
os.environ["RECOVERY_JITTER_SECONDS"] = "0"
os.environ["DRY_RUN_MODE"] = "true"
os.environ["LOG_FORMAT"] = "console"

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: E402

from sendqueue.config import Settings, get_settings  # noqa: E402
from sendqueue.constants import CampaignStatus  # noqa: E402
from sendqueue.db import close_db, connection, get_engine, init_db  # noqa: E402
from sendqueue.db.models import Base, Campaign, EmailTemplate, Subscriber  # noqa: E402
from sendqueue.types.job import utcnow  # noqa: E402
from sendqueue.worker.mailer import SendOutcome  # noqa: E402

get_settings.cache_clear()


@pytest.fixture(scope="session")
def database_url() -> str:
    """Get the test database URL."""
    return TEST_DATABASE_URL


@pytest_asyncio.fixture
async def database() -> AsyncGenerator[None]:
    """Create a fresh schema for one test and drop it afterwards."""
    await init_db()
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await close_db()


@pytest_asyncio.fixture
async def db_session(database: None) -> AsyncGenerator[AsyncSession]:
    """Create a database session for tests."""
    async with connection.AsyncSessionLocal() as session:
        yield session
        # Rollback any uncommitted changes
        await session.rollback()


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        database_url=TEST_DATABASE_URL,
        log_level="DEBUG",
        log_format="console",
        otel_exporter_enabled=False,
        recovery_jitter_seconds=0,
        test_send_allowlist="qa@example.com, Lead@Example.com",
    )


@pytest_asyncio.fixture
async def client(database: None) -> AsyncGenerator[AsyncClient]:
    """Create an async HTTP client for testing."""
    from sendqueue.api.main import create_app

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


@pytest.fixture
def campaign_id() -> str:
    """Generate a test campaign ID."""
    return f"cmp-{uuid4().hex[:8]}"


@pytest.fixture
def make_template(db_session: AsyncSession) -> Callable[..., Awaitable[EmailTemplate]]:
    """Factory for email templates."""

    async def _make(
        template_id: str | None = None,
        html: str = "<p>Hi {{ firstName }}</p><p>{{ unsubscribeUrl }}</p>",
        subject_default: str | None = "Default subject",
    ) -> EmailTemplate:
        template = EmailTemplate(
            id=template_id or f"tpl-{uuid4().hex[:8]}",
            name="Test template",
            subject_default=subject_default,
            html=html,
        )
        db_session.add(template)
        await db_session.commit()
        return template

    return _make


@pytest.fixture
def make_campaign(
    db_session: AsyncSession,
    make_template: Callable[..., Awaitable[EmailTemplate]],
) -> Callable[..., Awaitable[Campaign]]:
    """Factory for campaigns. Creates a template unless one is given."""

    async def _make(
        campaign_id: str | None = None,
        status: CampaignStatus = CampaignStatus.DRAFT,
        template_id: str | None = None,
        **overrides: Any,
    ) -> Campaign:
        if template_id is None and "html_override" not in overrides:
            template_id = (await make_template()).id
        campaign = Campaign(
            id=campaign_id or f"cmp-{uuid4().hex[:8]}",
            name="Spring newsletter",
            status=status,
            template_id=template_id,
            subject=overrides.pop("subject", "Hello {{ firstName }}"),
            audience_filter=overrides.pop("audience_filter", {}),
            **overrides,
        )
        db_session.add(campaign)
        await db_session.commit()
        return campaign

    return _make


@pytest.fixture
def make_subscribers(db_session: AsyncSession) -> Callable[..., Awaitable[list[Subscriber]]]:
    """Factory for confirmed subscribers named sub-0, sub-1, ..."""

    async def _make(
        count: int,
        prefix: str = "sub",
        confirmed: bool = True,
        **fields: Any,
    ) -> list[Subscriber]:
        subscribers = [
            Subscriber(
                id=f"{prefix}-{i}",
                email=f"{prefix}-{i}@example.com",
                name=f"Reader {i}",
                interests=fields.get("interests", []),
                country=fields.get("country"),
                continent=fields.get("continent"),
                source=fields.get("source"),
                confirmed_at=utcnow() if confirmed else None,
            )
            for i in range(count)
        ]
        db_session.add_all(subscribers)
        await db_session.commit()
        return subscribers

    return _make


class RecordingMailer:
    """Mailer double that records messages and replays scripted outcomes."""

    def __init__(self, outcomes: dict[str, SendOutcome] | None = None):
        self.outcomes = outcomes or {}
        self.sent: list[tuple[str, str, str]] = []

    async def send(self, to_email: str, subject: str, html: str) -> SendOutcome:
        self.sent.append((to_email, subject, html))
        return self.outcomes.get(to_email, SendOutcome.success())

    @property
    def recipients(self) -> list[str]:
        return [to_email for to_email, _, _ in self.sent]


@pytest.fixture
def mailer() -> RecordingMailer:
    """Create a recording mailer."""
    return RecordingMailer()
