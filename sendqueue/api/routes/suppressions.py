"""
Suppression list routes.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from sendqueue.constants import API_V1_PREFIX
from sendqueue.db import get_async_session
from sendqueue.db.models import SuppressionEntry
from sendqueue.db.suppressions import SuppressionRepository
from sendqueue.types.api import CreateSuppressionRequest, SuppressionResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix=f"{API_V1_PREFIX}/suppressions", tags=["Suppressions"])


def _entry_to_response(entry: SuppressionEntry) -> SuppressionResponse:
    return SuppressionResponse(
        email=entry.email,
        reason=entry.reason,
        source=entry.source,
        created_at=entry.created_at,
    )


@router.post(
    "",
    response_model=SuppressionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Suppress an address",
    description="Queued jobs for the address are skipped at dispatch. Idempotent.",
)
async def create_suppression(
    request: CreateSuppressionRequest,
    session: AsyncSession = Depends(get_async_session),
) -> SuppressionResponse:
    entry = await SuppressionRepository(session).add(
        request.email,
        request.reason,
        source=request.source,
        details=request.details,
    )
    return _entry_to_response(entry)


@router.get(
    "/{email}",
    response_model=SuppressionResponse,
    summary="Look up a suppressed address",
)
async def get_suppression(
    email: str,
    session: AsyncSession = Depends(get_async_session),
) -> SuppressionResponse:
    entry = await SuppressionRepository(session).get(email)
    if entry is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Address is not suppressed",
        )
    return _entry_to_response(entry)


@router.delete(
    "/{email}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Reinstate an address",
)
async def delete_suppression(
    email: str,
    session: AsyncSession = Depends(get_async_session),
) -> None:
    removed = await SuppressionRepository(session).remove(email)
    if not removed:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Address is not suppressed",
        )
    logger.info("Address reinstated")
