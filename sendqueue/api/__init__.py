"""
API module.
Contains the FastAPI application and admin routes.
"""

from sendqueue.api.main import create_app, run

__all__ = ["create_app", "run"]
