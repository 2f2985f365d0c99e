"""Bookmark enrichment endpoints: screenshot and link-check triggers plus status polling."""
from fastapi import APIRouter, Depends, HTTPException

from api.dependencies import get_bookmark_store, get_current_user, get_scheduler
from models.bookmark import ScreenshotStatus
from models.user import User
from schemas.enrichment import (
    BulkLinkCheckRequest,
    LinkStatusResponse,
    PassSummaryResponse,
    ScreenshotStatusResponse,
    ScreenshotTriggerResponse,
)
from services.bookmark_store import BookmarkStore
from services.exceptions import (
    BookmarkNotFoundError,
    LinkCheckInProgressError,
    SchedulerUnavailableError,
)
from tasks.enrichment_scheduler import EnrichmentScheduler

router = APIRouter(prefix="/bookmarks", tags=["enrichment"])

SCHEDULER_UNAVAILABLE_DETAIL = "Enrichment is temporarily unavailable, please retry shortly"


@router.post(
    "/{bookmark_id}/screenshot",
    response_model=ScreenshotTriggerResponse,
    status_code=202,
)
async def request_screenshot(
    bookmark_id: int,
    current_user: User = Depends(get_current_user),
    scheduler: EnrichmentScheduler = Depends(get_scheduler),
) -> ScreenshotTriggerResponse:
    """
    Queue a screenshot capture for a bookmark.

    Returns immediately with status "pending". Poll
    `GET /bookmarks/{id}/screenshot/status` until the status is "done" or "failed".
    """
    try:
        request = await scheduler.request_screenshot(bookmark_id, current_user.id)
    except BookmarkNotFoundError:
        raise HTTPException(status_code=404, detail="Bookmark not found")
    except SchedulerUnavailableError:
        raise HTTPException(status_code=503, detail=SCHEDULER_UNAVAILABLE_DETAIL)

    return ScreenshotTriggerResponse(
        bookmark_id=bookmark_id,
        status=ScreenshotStatus.PENDING,
        message=(
            "Screenshot capture started" if request.started
            else "Screenshot capture already pending"
        ),
    )


@router.get("/{bookmark_id}/screenshot/status", response_model=ScreenshotStatusResponse)
async def get_screenshot_status(
    bookmark_id: int,
    current_user: User = Depends(get_current_user),
    store: BookmarkStore = Depends(get_bookmark_store),
) -> ScreenshotStatusResponse:
    """Get the screenshot state of a bookmark (poll while "pending")."""
    status = await store.get_enrichment_status(bookmark_id, current_user.id)
    if status is None:
        raise HTTPException(status_code=404, detail="Bookmark not found")
    return ScreenshotStatusResponse(
        bookmark_id=bookmark_id,
        status=status.screenshot_status,
        screenshot_url=status.screenshot_url,
        updated_at=status.screenshot_updated_at,
    )


@router.post("/{bookmark_id}/check-link", response_model=LinkStatusResponse)
async def check_link(
    bookmark_id: int,
    current_user: User = Depends(get_current_user),
    scheduler: EnrichmentScheduler = Depends(get_scheduler),
) -> LinkStatusResponse:
    """
    Check a bookmark's link now and return the recorded result.

    The check shares the concurrency limit of the background checker, so it
    may wait briefly for a free slot.
    """
    try:
        update = await scheduler.check_link_now(bookmark_id, current_user.id)
    except BookmarkNotFoundError:
        raise HTTPException(status_code=404, detail="Bookmark not found")
    except LinkCheckInProgressError:
        raise HTTPException(
            status_code=409, detail="A link check for this bookmark is already in progress",
        )
    except SchedulerUnavailableError:
        raise HTTPException(status_code=503, detail=SCHEDULER_UNAVAILABLE_DETAIL)

    return LinkStatusResponse(
        bookmark_id=bookmark_id,
        link_status=update.status,
        http_status=update.http_status,
        last_link_check_at=update.checked_at,
        link_fail_count=update.fail_count,
    )


@router.get("/{bookmark_id}/link-status", response_model=LinkStatusResponse)
async def get_link_status(
    bookmark_id: int,
    current_user: User = Depends(get_current_user),
    store: BookmarkStore = Depends(get_bookmark_store),
) -> LinkStatusResponse:
    """Get the last recorded link-check result of a bookmark."""
    status = await store.get_enrichment_status(bookmark_id, current_user.id)
    if status is None:
        raise HTTPException(status_code=404, detail="Bookmark not found")
    return LinkStatusResponse(
        bookmark_id=bookmark_id,
        link_status=status.link_status,
        http_status=status.http_status,
        last_link_check_at=status.last_link_check_at,
        link_fail_count=status.link_fail_count,
    )


@router.post("/bulk/check-links", response_model=PassSummaryResponse)
async def bulk_check_links(
    data: BulkLinkCheckRequest,
    current_user: User = Depends(get_current_user),
    scheduler: EnrichmentScheduler = Depends(get_scheduler),
) -> PassSummaryResponse:
    """
    Check up to 50 bookmarks now.

    Ids that don't exist, belong to another user or are already being
    checked are counted as skipped.
    """
    try:
        summary = await scheduler.check_links_now(data.ids, current_user.id)
    except SchedulerUnavailableError:
        raise HTTPException(status_code=503, detail=SCHEDULER_UNAVAILABLE_DETAIL)
    return PassSummaryResponse(**summary.to_dict())
