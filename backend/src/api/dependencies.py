"""FastAPI dependencies for injection."""
from fastapi import Request

from core.auth import get_current_user
from core.config import get_settings
from db.session import get_async_session
from services.bookmark_store import BookmarkStore
from tasks.enrichment_scheduler import EnrichmentScheduler

__all__ = [
    "get_async_session",
    "get_bookmark_store",
    "get_current_user",
    "get_scheduler",
    "get_settings",
]


def get_scheduler(request: Request) -> EnrichmentScheduler:
    """The process-wide enrichment scheduler created in the app lifespan."""
    return request.app.state.scheduler


def get_bookmark_store(request: Request) -> BookmarkStore:
    """Bookmark store shared with the scheduler."""
    return request.app.state.bookmark_store
