"""
Audience resolution: which subscribers a campaign is sent to.
"""

import logging
import secrets
from typing import Any, Protocol

from pydantic import BaseModel, Field, field_validator
from sqlalchemy import and_, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from sendqueue.config import Settings, get_settings
from sendqueue.db.models import Campaign, Subscriber
from sendqueue.types.job import Recipient

logger = logging.getLogger(__name__)


def _normalize_list(values: list[str]) -> list[str]:
    return [v.strip().lower() for v in values if isinstance(v, str) and v.strip()]


class AudienceFilter(BaseModel):
    """
    Campaign audience filter. Empty criteria match everyone.

    topics and tags match against subscriber interests, location against
    country or continent, continents and sources against those columns.
    """

    topics: list[str] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)
    location: str = ""
    continents: list[str] = Field(default_factory=list)
    sources: list[str] = Field(default_factory=list)

    @field_validator("topics", "tags", "continents", "sources", mode="before")
    @classmethod
    def _coerce_list(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        return _normalize_list(value)

    @field_validator("location", mode="before")
    @classmethod
    def _coerce_location(cls, value: Any) -> str:
        return value.strip().lower() if isinstance(value, str) else ""

    @classmethod
    def from_json(cls, raw: dict | None) -> "AudienceFilter":
        return cls.model_validate(raw if isinstance(raw, dict) else {})

    def matches(self, subscriber: Subscriber) -> bool:
        interests = _normalize_list(subscriber.interests or [])
        if self.topics and not any(t in interests for t in self.topics):
            return False
        if self.tags and not any(t in interests for t in self.tags):
            return False
        country = (subscriber.country or "").strip().lower()
        continent = (subscriber.continent or "").strip().lower()
        if self.location and self.location not in (country, continent):
            return False
        if self.continents and continent not in self.continents:
            return False
        source = (subscriber.source or "").strip().lower()
        if self.sources and source not in self.sources:
            return False
        return True


class AudienceResolver(Protocol):
    async def resolve(self, campaign: Campaign) -> list[Recipient]: ...


class SubscriberAudienceResolver:
    """
    Resolves recipients from the subscriber table.

    Builds the merge fields frozen into each job and mints an unsubscribe
    token for subscribers that do not have one yet.
    """

    def __init__(self, session: AsyncSession, settings: Settings | None = None):
        self._session = session
        self._settings = settings or get_settings()

    async def _candidates(self) -> list[Subscriber]:
        stmt = (
            select(Subscriber)
            .where(
                and_(
                    Subscriber.email.is_not(None),
                    Subscriber.email != "",
                    Subscriber.confirmed_at.is_not(None),
                )
            )
            .order_by(Subscriber.created_at, Subscriber.id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def _ensure_unsubscribe_token(self, subscriber: Subscriber) -> str:
        token = (subscriber.unsubscribe_token or "").strip()
        if token:
            return token
        token = secrets.token_hex(24)
        await self._session.execute(
            update(Subscriber)
            .where(Subscriber.id == subscriber.id)
            .values(unsubscribe_token=token)
            .execution_options(synchronize_session=False)
        )
        subscriber.unsubscribe_token = token
        return token

    async def merge_fields(self, subscriber: Subscriber, campaign_id: str) -> dict[str, Any]:
        """
        Template variables for one subscriber.

        Args:
            subscriber: The recipient.
            campaign_id: The campaign being sent.

        Returns:
            Mapping usable by the subject and HTML templates.
        """
        interests = [i for i in (subscriber.interests or []) if isinstance(i, str)]
        first_name = subscriber.name.strip().split()[0] if subscriber.name and subscriber.name.strip() else ""
        token = await self._ensure_unsubscribe_token(subscriber)
        base_url = self._settings.public_url.rstrip("/")
        return {
            "firstName": first_name,
            "email": subscriber.email,
            "location": subscriber.country or subscriber.continent or "",
            "topic": interests[0] if interests else "",
            "topics": interests,
            "unsubscribeUrl": f"{base_url}/unsubscribe?token={token}",
            "trackingOpenUrl": f"{base_url}/api/public/track/open/{campaign_id}/{token}.png",
            "trackingToken": token,
        }

    async def _to_recipients(
        self,
        subscribers: list[Subscriber],
        campaign_id: str,
    ) -> list[Recipient]:
        recipients = []
        for subscriber in subscribers:
            recipients.append(
                Recipient(
                    subscriber_id=subscriber.id,
                    email=subscriber.email.strip(),
                    merge_fields=await self.merge_fields(subscriber, campaign_id),
                )
            )
        return recipients

    async def resolve(self, campaign: Campaign) -> list[Recipient]:
        """
        Confirmed subscribers matching the campaign's audience filter.

        Args:
            campaign: The campaign being sent.

        Returns:
            Recipients in a stable order.
        """
        audience_filter = AudienceFilter.from_json(campaign.audience_filter)
        subscribers = [s for s in await self._candidates() if audience_filter.matches(s)]
        logger.info(
            "Resolved campaign audience",
            extra={"campaign_id": campaign.id, "recipients": len(subscribers)},
        )
        return await self._to_recipients(subscribers, campaign.id)


class AllowlistAudienceResolver(SubscriberAudienceResolver):
    """Restricts a sandbox send to subscribers on TEST_SEND_ALLOWLIST."""

    async def resolve(self, campaign: Campaign) -> list[Recipient]:
        allowlist = self._settings.test_send_recipients
        if not allowlist:
            return []
        stmt = (
            select(Subscriber)
            .where(func.lower(Subscriber.email).in_(allowlist))
            .order_by(Subscriber.created_at, Subscriber.id)
        )
        result = await self._session.execute(stmt)
        return await self._to_recipients(list(result.scalars().all()), campaign.id)
