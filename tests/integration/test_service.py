"""
Integration tests for the campaign send service.
"""

from datetime import timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from sendqueue.campaigns.service import CampaignSendService
from sendqueue.constants import (
    NO_RECIPIENTS_WARNING,
    SANDBOX_PREFIX,
    CampaignStatus,
    JobStatus,
    SuppressionReason,
    Variant,
)
from sendqueue.db.campaigns import CampaignRepository
from sendqueue.db.models import SendJob, Subscriber
from sendqueue.db.repository import SendJobRepository
from sendqueue.db.suppressions import SuppressionRepository
from sendqueue.errors import CampaignNotFoundError, CampaignNotReadyError, CampaignStateError
from sendqueue.types.job import utcnow
from sendqueue.worker.main import SendWorker


async def _jobs(db_session: AsyncSession, campaign_id: str) -> list[SendJob]:
    result = await db_session.execute(
        select(SendJob)
        .where(SendJob.campaign_id == campaign_id)
        .order_by(SendJob.subscriber_id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


class TestSendNow:
    """Tests for CampaignSendService.send_now."""

    async def test_enqueues_confirmed_audience(
        self,
        db_session: AsyncSession,
        make_campaign,
        make_subscribers,
    ):
        campaign = await make_campaign()
        await make_subscribers(3)
        await make_subscribers(2, prefix="pending", confirmed=False)

        result = await CampaignSendService(db_session).send_now(campaign.id)
        await db_session.commit()

        assert result.queued == 3
        assert result.status == CampaignStatus.SENDING
        assert result.warnings == []
        jobs = await _jobs(db_session, campaign.id)
        assert [j.subscriber_id for j in jobs] == ["sub-0", "sub-1", "sub-2"]
        assert all(j.status == JobStatus.QUEUED for j in jobs)

        refreshed = await CampaignRepository(db_session).get(campaign.id)
        assert refreshed.queued_count == 3

    async def test_rerun_inserts_nothing(
        self,
        db_session: AsyncSession,
        make_campaign,
        make_subscribers,
    ):
        """Sending twice never duplicates a recipient's job."""
        campaign = await make_campaign()
        await make_subscribers(3)
        service = CampaignSendService(db_session)

        await service.send_now(campaign.id)
        await db_session.commit()
        result = await service.send_now(campaign.id)
        await db_session.commit()

        assert result.queued == 0
        assert NO_RECIPIENTS_WARNING not in result.warnings
        assert len(await _jobs(db_session, campaign.id)) == 3
        refreshed = await CampaignRepository(db_session).get(campaign.id)
        assert refreshed.queued_count == 3

    async def test_suppressed_addresses_are_not_enrolled(
        self,
        db_session: AsyncSession,
        make_campaign,
        make_subscribers,
    ):
        campaign = await make_campaign()
        await make_subscribers(3)
        await SuppressionRepository(db_session).add(
            "sub-2@example.com", SuppressionReason.EMAIL_INVALID
        )
        await db_session.commit()

        result = await CampaignSendService(db_session).send_now(campaign.id)

        assert result.queued == 2
        assert result.suppressed == 1
        emails = [j.to_email for j in await _jobs(db_session, campaign.id)]
        assert "sub-2@example.com" not in emails

    async def test_content_is_frozen_into_payload(
        self,
        db_session: AsyncSession,
        make_campaign,
        make_subscribers,
        make_template,
    ):
        template = await make_template(html="<p>Version 1</p>")
        campaign = await make_campaign(template_id=template.id, subject="Launch day")
        await make_subscribers(1)

        await CampaignSendService(db_session).send_now(campaign.id)
        template.html = "<p>Version 2</p>"
        await db_session.commit()

        [job] = await _jobs(db_session, campaign.id)
        assert job.payload["subject"] == "Launch day"
        assert job.payload["html"] == "<p>Version 1</p>"
        assert job.payload["merge_fields"]["firstName"] == "Reader"
        assert job.payload["merge_fields"]["unsubscribeUrl"].startswith(
            "http://localhost:8000/unsubscribe?token="
        )

    async def test_ab_variants_get_their_own_content(
        self,
        db_session: AsyncSession,
        make_campaign,
        make_subscribers,
    ):
        campaign = await make_campaign(
            ab_enabled=True,
            split_ratio=50,
            subject_a="Subject A",
            subject_b="Subject B",
        )
        await make_subscribers(40)

        await CampaignSendService(db_session).send_now(campaign.id)

        jobs = await _jobs(db_session, campaign.id)
        variants = {j.variant for j in jobs}
        assert variants == {Variant.A, Variant.B}
        for job in jobs:
            assert job.payload["subject"] == f"Subject {job.variant.value}"
            assert job.payload["variant"] == job.variant.value

    async def test_audience_filter(
        self,
        db_session: AsyncSession,
        make_campaign,
        make_subscribers,
    ):
        campaign = await make_campaign(audience_filter={"topics": ["Travel"]})
        await make_subscribers(2, prefix="travel", interests=["travel", "food"])
        await make_subscribers(2, prefix="tech", interests=["tech"])

        result = await CampaignSendService(db_session).send_now(campaign.id)

        assert result.queued == 2
        assert {j.subscriber_id for j in await _jobs(db_session, campaign.id)} == {
            "travel-0",
            "travel-1",
        }

    async def test_empty_audience_warns(self, db_session: AsyncSession, make_campaign):
        campaign = await make_campaign()

        result = await CampaignSendService(db_session).send_now(campaign.id)

        assert result.queued == 0
        assert NO_RECIPIENTS_WARNING in result.warnings
        assert result.status == CampaignStatus.DRAFT

    async def test_subject_required(
        self,
        db_session: AsyncSession,
        make_campaign,
        make_template,
        make_subscribers,
    ):
        template = await make_template(subject_default=None)
        campaign = await make_campaign(template_id=template.id, subject="")
        await make_subscribers(1)

        with pytest.raises(CampaignNotReadyError, match="Subject is required"):
            await CampaignSendService(db_session).send_now(campaign.id)

    async def test_missing_template(self, db_session: AsyncSession, make_campaign):
        campaign = await make_campaign(template_id=None, html_override=None)

        with pytest.raises(CampaignNotReadyError, match="Template is required"):
            await CampaignSendService(db_session).send_now(campaign.id)

    async def test_unknown_campaign(self, db_session: AsyncSession):
        with pytest.raises(CampaignNotFoundError):
            await CampaignSendService(db_session).send_now("does-not-exist")

    async def test_paused_campaign_cannot_send(
        self,
        db_session: AsyncSession,
        make_campaign,
    ):
        campaign = await make_campaign(status=CampaignStatus.PAUSED)

        with pytest.raises(CampaignStateError):
            await CampaignSendService(db_session).send_now(campaign.id)


class TestSchedule:
    """Tests for scheduling, pausing and resuming."""

    async def test_schedule_defers_jobs(
        self,
        db_session: AsyncSession,
        make_campaign,
        make_subscribers,
    ):
        campaign = await make_campaign()
        await make_subscribers(2)
        scheduled_at = utcnow() + timedelta(hours=2)

        result = await CampaignSendService(db_session).schedule(campaign.id, scheduled_at)
        await db_session.commit()

        assert result.status == CampaignStatus.SCHEDULED
        assert result.queued == 2
        assert all(j.run_at == scheduled_at for j in await _jobs(db_session, campaign.id))
        assert await SendJobRepository(db_session).claim_batch("worker-1", 10) == []

    async def test_send_now_after_schedule_moves_jobs_forward(
        self,
        db_session: AsyncSession,
        make_campaign,
        make_subscribers,
    ):
        campaign = await make_campaign()
        await make_subscribers(2)
        service = CampaignSendService(db_session)
        await service.schedule(campaign.id, utcnow() + timedelta(days=1))
        await db_session.commit()

        result = await service.send_now(campaign.id)
        await db_session.commit()

        assert result.queued == 0
        assert result.status == CampaignStatus.SENDING
        assert len(await SendJobRepository(db_session).claim_batch("worker-1", 10)) == 2

    async def test_repeat_send_keeps_retry_backoff(
        self,
        db_session: AsyncSession,
        make_campaign,
        make_subscribers,
    ):
        campaign = await make_campaign()
        await make_subscribers(1)
        service = CampaignSendService(db_session)
        scheduled_at = utcnow() + timedelta(hours=1)
        await service.schedule(campaign.id, scheduled_at)
        await db_session.commit()

        repo = SendJobRepository(db_session)
        due = scheduled_at + timedelta(seconds=1)
        [job] = await repo.claim_batch("worker-1", 10, now=due)
        failed = await repo.record_failure(job, "worker-1", "421 try later", now=due)
        backoff_run_at = failed.run_at
        await db_session.commit()

        await service.send_now(campaign.id)
        await db_session.commit()

        [retrying] = await _jobs(db_session, campaign.id)
        assert retrying.status == JobStatus.QUEUED
        assert retrying.attempts == 1
        assert retrying.run_at == backoff_run_at

    async def test_cannot_schedule_while_sending(
        self,
        db_session: AsyncSession,
        make_campaign,
    ):
        campaign = await make_campaign(status=CampaignStatus.SENDING)

        with pytest.raises(CampaignStateError):
            await CampaignSendService(db_session).schedule(
                campaign.id, utcnow() + timedelta(hours=1)
            )

    async def test_pause_and_resume(
        self,
        db_session: AsyncSession,
        make_campaign,
    ):
        campaign = await make_campaign(status=CampaignStatus.SENDING)
        service = CampaignSendService(db_session)

        assert await service.pause(campaign.id) == CampaignStatus.PAUSED
        with pytest.raises(CampaignStateError):
            await service.pause(campaign.id)
        assert await service.resume(campaign.id) == CampaignStatus.SENDING

    async def test_resume_future_schedule(
        self,
        db_session: AsyncSession,
        make_campaign,
    ):
        campaign = await make_campaign(
            status=CampaignStatus.PAUSED,
            scheduled_at=utcnow() + timedelta(hours=1),
        )

        status = await CampaignSendService(db_session).resume(campaign.id)

        assert status == CampaignStatus.SCHEDULED

    async def test_draft_cannot_be_paused(self, db_session: AsyncSession, make_campaign):
        campaign = await make_campaign()

        with pytest.raises(CampaignStateError):
            await CampaignSendService(db_session).pause(campaign.id)


class TestSandbox:
    """Tests for sandbox sends to the test allowlist."""

    async def test_sandbox_only_targets_allowlist(
        self,
        db_session: AsyncSession,
        test_settings,
        make_campaign,
        make_subscribers,
        mailer,
    ):
        campaign = await make_campaign()
        await make_subscribers(3)
        await make_subscribers(1, prefix="qa")
        subscriber = await db_session.get(Subscriber, "qa-0")
        subscriber.email = "QA@example.com"
        await db_session.commit()

        service = CampaignSendService(db_session, settings=test_settings)
        result = await service.send_sandbox(campaign.id)
        await db_session.commit()

        assert result.queued == 1
        assert result.status == CampaignStatus.DRAFT
        [job] = await _jobs(db_session, campaign.id)
        assert job.subscriber_id.startswith(SANDBOX_PREFIX)
        assert job.subscriber_id.endswith(":qa-0")

        await SendWorker(worker_id="sandbox-worker", mailer=mailer).run_once()

        assert mailer.recipients == ["QA@example.com"]
        refreshed = await CampaignRepository(db_session).get(campaign.id)
        assert refreshed.status == CampaignStatus.DRAFT
        assert refreshed.sent_count == 0
        assert refreshed.queued_count == 0

        # The real send still reaches the sandbox recipient
        result = await service.send_now(campaign.id)
        assert result.queued == 4

    async def test_every_sandbox_run_is_delivered(
        self,
        db_session: AsyncSession,
        test_settings,
        make_campaign,
        make_subscribers,
        mailer,
    ):
        campaign = await make_campaign()
        await make_subscribers(1, prefix="qa")
        subscriber = await db_session.get(Subscriber, "qa-0")
        subscriber.email = "qa@example.com"
        await db_session.commit()
        service = CampaignSendService(db_session, settings=test_settings)
        worker = SendWorker(worker_id="sandbox-worker", mailer=mailer)

        first = await service.send_sandbox(campaign.id)
        await db_session.commit()
        await worker.run_once()
        second = await service.send_sandbox(campaign.id)
        await db_session.commit()
        await worker.run_once()

        assert first.queued == 1
        assert second.queued == 1
        assert mailer.recipients == ["qa@example.com", "qa@example.com"]
        jobs = await _jobs(db_session, campaign.id)
        assert len({j.subscriber_id for j in jobs}) == 2
        assert all(j.status == JobStatus.SENT for j in jobs)

    async def test_suppressed_allowlist(
        self,
        db_session: AsyncSession,
        test_settings,
        make_campaign,
        make_subscribers,
    ):
        campaign = await make_campaign()
        await make_subscribers(1, prefix="qa")
        subscriber = await db_session.get(Subscriber, "qa-0")
        subscriber.email = "qa@example.com"
        await SuppressionRepository(db_session).add(
            "qa@example.com", SuppressionReason.UNSUBSCRIBED
        )
        await db_session.commit()

        with pytest.raises(CampaignNotReadyError, match="suppressed"):
            await CampaignSendService(db_session, settings=test_settings).send_sandbox(
                campaign.id
            )

    async def test_empty_allowlist(
        self,
        db_session: AsyncSession,
        test_settings,
        make_campaign,
    ):
        campaign = await make_campaign()
        settings = test_settings.model_copy(update={"test_send_allowlist": ""})

        with pytest.raises(CampaignNotReadyError):
            await CampaignSendService(db_session, settings=settings).send_sandbox(campaign.id)

    async def test_no_matching_subscribers(
        self,
        db_session: AsyncSession,
        test_settings,
        make_campaign,
        make_subscribers,
    ):
        campaign = await make_campaign()
        await make_subscribers(2)

        with pytest.raises(CampaignNotReadyError):
            await CampaignSendService(db_session, settings=test_settings).send_sandbox(
                campaign.id
            )
