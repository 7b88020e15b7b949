"""API route modules."""

from .data_sources import router as data_sources_router
from .google import router as google_router
from .knowledge import router as knowledge_router
from .oauth import router as oauth_router
from .slack import router as slack_router
from .sync import router as sync_router

__all__ = [
    "data_sources_router",
    "google_router",
    "knowledge_router",
    "oauth_router",
    "slack_router",
    "sync_router",
]
