"""
API routes module.
"""

from sendqueue.api.routes.campaigns import router as campaigns_router
from sendqueue.api.routes.health import router as health_router
from sendqueue.api.routes.suppressions import router as suppressions_router

__all__ = ["campaigns_router", "suppressions_router", "health_router"]
