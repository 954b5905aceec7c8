"""
Database module.
Contains database connection, models, and repository implementations.
"""

from sendqueue.db.campaigns import CampaignRepository
from sendqueue.db.connection import (
    close_db,
    get_async_session,
    get_engine,
    get_session_context,
    init_db,
)
from sendqueue.db.models import (
    Base,
    Campaign,
    EmailTemplate,
    SendJob,
    Subscriber,
    SuppressionEntry,
)
from sendqueue.db.repository import SendJobRepository
from sendqueue.db.suppressions import SuppressionRepository

__all__ = [
    "get_async_session",
    "get_session_context",
    "get_engine",
    "init_db",
    "close_db",
    "Base",
    "Campaign",
    "EmailTemplate",
    "SendJob",
    "Subscriber",
    "SuppressionEntry",
    "SendJobRepository",
    "CampaignRepository",
    "SuppressionRepository",
]
