"""
Campaign send routes.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from sendqueue.campaigns.service import CampaignSendService, EnqueueResult
from sendqueue.constants import API_V1_PREFIX
from sendqueue.db import get_async_session
from sendqueue.errors import CampaignNotFoundError, CampaignNotReadyError, CampaignStateError
from sendqueue.types.api import (
    CampaignErrorsResponse,
    CampaignProgressResponse,
    CampaignResponse,
    CampaignStatusResponse,
    EnqueueResponse,
    JobFailureResponse,
    ScheduleCampaignRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/campaigns", tags=["Campaigns"])


def get_send_service(
    session: AsyncSession = Depends(get_async_session),
) -> CampaignSendService:
    return CampaignSendService(session)


@contextmanager
def _domain_errors() -> Iterator[None]:
    """Translate send service errors into HTTP errors."""
    try:
        yield
    except CampaignNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e)) from e
    except CampaignStateError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e
    except CampaignNotReadyError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e


def _enqueue_response(result: EnqueueResult) -> EnqueueResponse:
    return EnqueueResponse(
        campaign_id=result.campaign_id,
        queued=result.queued,
        suppressed=result.suppressed,
        status=result.status,
        warnings=result.warnings,
    )


@router.post(
    "/{campaign_id}/send",
    response_model=EnqueueResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Send a campaign now",
    description="Enqueue the campaign audience for immediate sending. Safe to repeat.",
)
async def send_now(
    campaign_id: str,
    service: CampaignSendService = Depends(get_send_service),
) -> EnqueueResponse:
    with _domain_errors():
        result = await service.send_now(campaign_id)
    return _enqueue_response(result)


@router.post(
    "/{campaign_id}/schedule",
    response_model=EnqueueResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Schedule a campaign",
    description="Enqueue the campaign audience to become due at scheduled_at.",
)
async def schedule(
    campaign_id: str,
    request: ScheduleCampaignRequest,
    service: CampaignSendService = Depends(get_send_service),
) -> EnqueueResponse:
    with _domain_errors():
        result = await service.schedule(campaign_id, request.scheduled_at)
    return _enqueue_response(result)


@router.post(
    "/{campaign_id}/send-sandbox",
    response_model=EnqueueResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Send a campaign to the test allowlist",
)
async def send_sandbox(
    campaign_id: str,
    service: CampaignSendService = Depends(get_send_service),
) -> EnqueueResponse:
    with _domain_errors():
        result = await service.send_sandbox(campaign_id)
    return _enqueue_response(result)


@router.post(
    "/{campaign_id}/pause",
    response_model=CampaignStatusResponse,
    summary="Pause a campaign",
    description="Workers stop dispatching the campaign's jobs until it is resumed.",
)
async def pause(
    campaign_id: str,
    service: CampaignSendService = Depends(get_send_service),
) -> CampaignStatusResponse:
    with _domain_errors():
        new_status = await service.pause(campaign_id)
    return CampaignStatusResponse(campaign_id=campaign_id, status=new_status)


@router.post(
    "/{campaign_id}/resume",
    response_model=CampaignStatusResponse,
    summary="Resume a paused campaign",
)
async def resume(
    campaign_id: str,
    service: CampaignSendService = Depends(get_send_service),
) -> CampaignStatusResponse:
    with _domain_errors():
        new_status = await service.resume(campaign_id)
    return CampaignStatusResponse(campaign_id=campaign_id, status=new_status)


@router.get(
    "/{campaign_id}",
    response_model=CampaignResponse,
    summary="Get campaign details",
)
async def get_campaign(
    campaign_id: str,
    service: CampaignSendService = Depends(get_send_service),
) -> CampaignResponse:
    with _domain_errors():
        campaign = await service.get_campaign(campaign_id)
    return CampaignResponse.model_validate(campaign, from_attributes=True)


@router.get(
    "/{campaign_id}/progress",
    response_model=CampaignProgressResponse,
    summary="Get campaign progress",
    description="Exact per-status job counts computed from the job table.",
)
async def get_progress(
    campaign_id: str,
    service: CampaignSendService = Depends(get_send_service),
) -> CampaignProgressResponse:
    with _domain_errors():
        progress = await service.progress(campaign_id)
    return CampaignProgressResponse(
        campaign_id=progress.campaign_id,
        queued_count=progress.queued_count,
        processing_count=progress.processing_count,
        sent_count=progress.sent_count,
        failed_count=progress.failed_count,
        skipped_count=progress.skipped_count,
        total_count=progress.total_count,
        is_finished=progress.is_finished,
        completion_notice=progress.completion_notice,
    )


@router.get(
    "/{campaign_id}/errors",
    response_model=CampaignErrorsResponse,
    summary="Get recent send errors",
)
async def get_errors(
    campaign_id: str,
    limit: int = Query(default=20, ge=1, le=100),
    service: CampaignSendService = Depends(get_send_service),
) -> CampaignErrorsResponse:
    with _domain_errors():
        failures = await service.recent_errors(campaign_id, limit)
    return CampaignErrorsResponse(
        campaign_id=campaign_id,
        errors=[
            JobFailureResponse(
                job_id=f.job_id,
                to_email=f.to_email,
                attempts=f.attempts,
                last_error=f.last_error,
                completed_at=f.completed_at,
            )
            for f in failures
        ],
    )
