"""
Health check and metrics routes.
"""

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import Response
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from sendqueue import __version__
from sendqueue.db import get_async_session
from sendqueue.db.repository import SendJobRepository
from sendqueue.observability.metrics import get_metrics
from sendqueue.types.api import HealthResponse
from sendqueue.types.job import utcnow

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health of the API and database connection.",
)
async def health_check(
    session: AsyncSession = Depends(get_async_session),
) -> HealthResponse:
    """
    Perform a health check.

    Args:
        session: Database session.

    Returns:
        HealthResponse with service status.
    """
    db_status = "healthy"
    try:
        await session.execute(text("SELECT 1"))
    except SQLAlchemyError:
        logger.exception("Database health check failed")
        db_status = "unhealthy"

    return HealthResponse(
        status="healthy" if db_status == "healthy" else "degraded",
        version=__version__,
        database=db_status,
        timestamp=utcnow(),
    )


@router.get(
    "/ready",
    summary="Readiness check",
    description="Check if the service is ready to receive traffic.",
)
async def readiness_check(
    session: AsyncSession = Depends(get_async_session),
) -> dict:
    try:
        await session.execute(text("SELECT 1"))
        return {"ready": True}
    except SQLAlchemyError:
        logger.exception("Database readiness check failed")
        return {"ready": False}


@router.get(
    "/live",
    summary="Liveness check",
    description="Check if the service is alive.",
)
async def liveness_check() -> dict:
    return {"alive": True}


@router.get(
    "/metrics",
    summary="Prometheus metrics",
    description="Expose Prometheus metrics. Refreshes the queue depth gauge.",
)
async def metrics(
    session: AsyncSession = Depends(get_async_session),
) -> Response:
    """
    Expose Prometheus metrics.

    Returns:
        Prometheus-formatted metrics.
    """
    metrics_collector = get_metrics()
    metrics_collector.update_queue_depth(await SendJobRepository(session).queue_depth())
    return Response(
        content=metrics_collector.get_metrics(),
        media_type=metrics_collector.get_content_type(),
    )
