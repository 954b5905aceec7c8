"""
Campaign send orchestration: turning a campaign into queued send jobs
and the admin actions around it.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from sendqueue.campaigns.audience import (
    AllowlistAudienceResolver,
    AudienceResolver,
    SubscriberAudienceResolver,
)
from sendqueue.campaigns.progress import ProgressAggregator
from sendqueue.campaigns.variants import assign_variant, clamp_split_ratio
from sendqueue.config import Settings, get_settings
from sendqueue.constants import (
    NO_RECIPIENTS_WARNING,
    SANDBOX_PREFIX,
    SPAN_ENQUEUE_CAMPAIGN,
    CampaignStatus,
    JobStatus,
    Variant,
)
from sendqueue.db.campaigns import CampaignRepository
from sendqueue.db.models import Campaign
from sendqueue.db.repository import SendJobRepository
from sendqueue.db.suppressions import SuppressionRepository, normalize_email
from sendqueue.errors import CampaignNotFoundError, CampaignNotReadyError, CampaignStateError
from sendqueue.observability.metrics import get_metrics
from sendqueue.observability.tracing import get_tracer
from sendqueue.types.job import (
    CampaignProgress,
    JobFailure,
    JobPayload,
    Recipient,
    SendJobInput,
    utcnow,
)

logger = logging.getLogger(__name__)


@dataclass
class VariantContent:
    subject: str
    html: str
    template_id: str | None


@dataclass
class EnqueueResult:
    """Outcome of an enqueue request, returned to the admin."""

    campaign_id: str
    queued: int
    suppressed: int = 0
    status: CampaignStatus | None = None
    warnings: list[str] = field(default_factory=list)


class CampaignSendService:
    """
    Enrolls campaign audiences into the send queue.

    Content is frozen into each job's payload at enqueue time, suppressed
    addresses never get a job, and enqueue can be re-run safely because
    the job table is unique per (campaign, subscriber).
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: Settings | None = None,
        audience_resolver: AudienceResolver | None = None,
    ):
        self._session = session
        self._settings = settings or get_settings()
        self._campaigns = CampaignRepository(session)
        self._jobs = SendJobRepository(session)
        self._suppressions = SuppressionRepository(session)
        self._audience = audience_resolver or SubscriberAudienceResolver(session, self._settings)

    async def get_campaign(self, campaign_id: str) -> Campaign:
        campaign = await self._campaigns.get(campaign_id)
        if campaign is None:
            raise CampaignNotFoundError(campaign_id)
        return campaign

    async def resolve_content(self, campaign: Campaign) -> dict[Variant, VariantContent]:
        """
        Resolve subject and HTML per variant.

        Variant templates fall back to the campaign template. Subject A falls
        back to the campaign subject, then the template default; subject B
        falls back to subject A.

        Raises:
            CampaignNotReadyError: If a template or subject is missing.
        """
        template_id_a = campaign.template_id_a or campaign.template_id
        template_id_b = campaign.template_id_b or campaign.template_id

        async def load(template_id: str | None, label: str):
            if template_id is None:
                return None
            template = await self._campaigns.get_template(template_id)
            if template is None:
                raise CampaignNotReadyError(f"Template {label} not found")
            return template

        template_a = await load(template_id_a, "A")
        template_b = template_a if template_id_b == template_id_a else await load(template_id_b, "B")

        subject_a = (
            (campaign.subject_a or "").strip()
            or (campaign.subject or "").strip()
            or ((template_a.subject_default or "").strip() if template_a else "")
        )
        subject_b = (
            (campaign.subject_b or "").strip()
            or subject_a
            or ((template_b.subject_default or "").strip() if template_b else "")
        )
        if not subject_a or (campaign.ab_enabled and not subject_b):
            raise CampaignNotReadyError("Subject is required before sending.")

        def html_for(template) -> str:
            if campaign.html_override:
                return campaign.html_override
            if template is None:
                raise CampaignNotReadyError("Template is required before sending.")
            return template.html

        content = {Variant.A: VariantContent(subject_a, html_for(template_a), template_id_a)}
        if campaign.ab_enabled:
            content[Variant.B] = VariantContent(subject_b, html_for(template_b), template_id_b)
        return content

    async def enqueue(
        self,
        campaign: Campaign,
        recipients: list[Recipient],
        run_at: datetime | None = None,
        subscriber_prefix: str = "",
    ) -> EnqueueResult:
        """
        Freeze content per recipient and insert queued jobs.

        Args:
            campaign: The campaign to send.
            recipients: Resolved audience.
            run_at: When the jobs become due.
            subscriber_prefix: Namespace for subscriber ids (sandbox sends).

        Returns:
            EnqueueResult with the number of newly inserted jobs.
        """
        tracer = get_tracer()
        with tracer.start_as_current_span(SPAN_ENQUEUE_CAMPAIGN) as span:
            span.set_attribute("campaign.id", campaign.id)
            content = await self.resolve_content(campaign)
            suppressed = await self._suppressions.suppressed_among(r.email for r in recipients)
            split_ratio = clamp_split_ratio(campaign.split_ratio)

            jobs = []
            for recipient in recipients:
                if normalize_email(recipient.email) in suppressed:
                    continue
                variant = assign_variant(
                    campaign.id,
                    recipient.subscriber_id,
                    split_ratio,
                    ab_enabled=campaign.ab_enabled,
                )
                chosen = content[variant]
                jobs.append(
                    SendJobInput(
                        campaign_id=campaign.id,
                        subscriber_id=f"{subscriber_prefix}{recipient.subscriber_id}",
                        to_email=recipient.email,
                        payload=JobPayload(
                            variant=variant,
                            subject=chosen.subject,
                            html=chosen.html,
                            template_id=chosen.template_id,
                            merge_fields=recipient.merge_fields,
                        ),
                        max_attempts=self._settings.default_max_attempts,
                        run_at=run_at,
                    )
                )

            by_variant = await self._jobs.enqueue_by_variant(jobs)
            inserted = sum(by_variant.values())
            skipped_suppressed = len(recipients) - len(jobs)
            span.set_attribute("jobs.inserted", inserted)

        metrics = get_metrics()
        for variant, count in by_variant.items():
            metrics.record_jobs_enqueued(variant.value, count)
        logger.info(
            "Campaign enqueued",
            extra={
                "campaign_id": campaign.id,
                "recipients": len(recipients),
                "suppressed": skipped_suppressed,
                "inserted": inserted,
            },
        )
        return EnqueueResult(
            campaign_id=campaign.id,
            queued=inserted,
            suppressed=skipped_suppressed,
        )

    async def _move_scheduled_jobs(self, campaign: Campaign, run_at: datetime) -> int:
        # Only jobs still waiting on the previous schedule are moved
        if campaign.scheduled_at is None:
            return 0
        return await self._jobs.reschedule_queued(
            campaign.id, run_at, from_run_at=campaign.scheduled_at
        )

    def _warnings(self, result: EnqueueResult, already_queued: int) -> None:
        if result.queued == 0 and already_queued == 0:
            result.warnings.append(NO_RECIPIENTS_WARNING)
        if not self._settings.public_url.startswith("https://") and "localhost" not in self._settings.public_url:
            result.warnings.append("public_url_not_https")

    async def send_now(self, campaign_id: str) -> EnqueueResult:
        """
        Enqueue the campaign's audience for immediate sending.

        Raises:
            CampaignNotFoundError: If the campaign does not exist.
            CampaignStateError: If the campaign is paused.
            CampaignNotReadyError: If content is missing.
        """
        campaign = await self.get_campaign(campaign_id)
        if campaign.status == CampaignStatus.PAUSED:
            raise CampaignStateError(campaign_id, campaign.status.value, "send")

        now = utcnow()
        recipients = await self._audience.resolve(campaign)
        result = await self.enqueue(campaign, recipients, run_at=now)
        moved = await self._move_scheduled_jobs(campaign, now)
        if result.queued:
            await self._campaigns.increment_counter(campaign_id, JobStatus.QUEUED, result.queued)
        if result.queued or moved:
            await self._campaigns.transition(
                campaign_id,
                [CampaignStatus.DRAFT, CampaignStatus.SCHEDULED, CampaignStatus.SENT],
                CampaignStatus.SENDING,
            )
        self._warnings(result, moved)
        result.status = (await self.get_campaign(campaign_id)).status
        return result

    async def schedule(self, campaign_id: str, scheduled_at: datetime) -> EnqueueResult:
        """
        Enqueue the campaign's audience to become due at scheduled_at.

        Jobs still waiting on the previous schedule are moved to the new time.

        Raises:
            CampaignNotFoundError: If the campaign does not exist.
            CampaignStateError: If the campaign is paused or already sending.
            CampaignNotReadyError: If content is missing.
        """
        campaign = await self.get_campaign(campaign_id)
        if campaign.status in (CampaignStatus.PAUSED, CampaignStatus.SENDING):
            raise CampaignStateError(campaign_id, campaign.status.value, "be scheduled")

        recipients = await self._audience.resolve(campaign)
        result = await self.enqueue(campaign, recipients, run_at=scheduled_at)
        moved = await self._move_scheduled_jobs(campaign, scheduled_at)
        if result.queued:
            await self._campaigns.increment_counter(campaign_id, JobStatus.QUEUED, result.queued)
        await self._campaigns.set_schedule(campaign_id, scheduled_at, CampaignStatus.SCHEDULED)
        self._warnings(result, moved)
        result.status = CampaignStatus.SCHEDULED
        return result

    async def send_sandbox(self, campaign_id: str) -> EnqueueResult:
        """
        Send the campaign to the TEST_SEND_ALLOWLIST only.

        Each sandbox run gets its own namespace, so it never blocks the real
        send or an earlier sandbox run, and the campaign's status and
        counters are left alone.

        Raises:
            CampaignNotReadyError: If no allowlisted recipient can be sent to.
        """
        campaign = await self.get_campaign(campaign_id)
        if not self._settings.test_send_recipients:
            raise CampaignNotReadyError("TEST_SEND_ALLOWLIST is empty.")
        resolver = AllowlistAudienceResolver(self._session, self._settings)
        recipients = await resolver.resolve(campaign)
        if not recipients:
            raise CampaignNotReadyError("No sandbox recipients found.")
        run_prefix = f"{SANDBOX_PREFIX}{uuid4().hex[:8]}:"
        result = await self.enqueue(
            campaign, recipients, run_at=utcnow(), subscriber_prefix=run_prefix
        )
        if result.queued == 0:
            raise CampaignNotReadyError("All sandbox recipients are suppressed.")
        result.status = campaign.status
        return result

    async def pause(self, campaign_id: str) -> CampaignStatus:
        campaign = await self.get_campaign(campaign_id)
        changed = await self._campaigns.transition(
            campaign_id,
            [CampaignStatus.SCHEDULED, CampaignStatus.SENDING],
            CampaignStatus.PAUSED,
        )
        if not changed:
            raise CampaignStateError(campaign_id, campaign.status.value, "pause")
        return CampaignStatus.PAUSED

    async def resume(self, campaign_id: str) -> CampaignStatus:
        """
        Resume a paused campaign.

        A campaign whose schedule is still in the future goes back to
        scheduled, otherwise to sending.
        """
        campaign = await self.get_campaign(campaign_id)
        target = CampaignStatus.SENDING
        if campaign.scheduled_at is not None and campaign.scheduled_at > utcnow():
            target = CampaignStatus.SCHEDULED
        changed = await self._campaigns.transition(
            campaign_id, [CampaignStatus.PAUSED], target
        )
        if not changed:
            raise CampaignStateError(campaign_id, campaign.status.value, "resume")
        return target

    async def progress(self, campaign_id: str) -> CampaignProgress:
        await self.get_campaign(campaign_id)
        return await ProgressAggregator(self._session).progress(campaign_id)

    async def recent_errors(self, campaign_id: str, limit: int = 20) -> list[JobFailure]:
        await self.get_campaign(campaign_id)
        return await self._jobs.recent_failures(campaign_id, limit)
