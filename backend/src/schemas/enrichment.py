"""Pydantic schemas for enrichment status and trigger endpoints."""
from datetime import datetime

from pydantic import BaseModel, Field

from models.bookmark import LinkStatus, ScreenshotStatus
from schemas.user_settings import LinkCheckerSettingsResponse


MAX_BULK_LINK_CHECK = 50


class ScreenshotStatusResponse(BaseModel):
    """
    Screenshot state of a bookmark.

    Clients poll this every few seconds while status is "pending" and stop
    once it is "done" or "failed".
    """

    bookmark_id: int
    status: ScreenshotStatus
    screenshot_url: str | None
    updated_at: datetime | None


class ScreenshotTriggerResponse(BaseModel):
    """Response to a screenshot request (202 Accepted)."""

    bookmark_id: int
    status: ScreenshotStatus
    message: str


class LinkStatusResponse(BaseModel):
    """Link-health state of a bookmark."""

    bookmark_id: int
    link_status: LinkStatus
    http_status: int | None
    last_link_check_at: datetime | None
    link_fail_count: int


class BulkLinkCheckRequest(BaseModel):
    """Schema for checking several bookmarks at once."""

    ids: list[int] = Field(min_length=1, max_length=MAX_BULK_LINK_CHECK)


class PassSummaryResponse(BaseModel):
    """Counts from an enrichment pass or bulk check."""

    scanned: int
    succeeded: int
    failed: int
    skipped: int
    requeued_screenshots: int
    ran: bool


class SchedulerStatusResponse(BaseModel):
    """Scheduler state as seen by the status endpoint."""

    state: str
    pass_in_progress: bool
    link_check_enabled: bool
    interval_minutes: int
    max_concurrent: int
    active_operations: int
    last_run_at: datetime | None
    next_run_at: datetime | None
    last_summary: PassSummaryResponse | None


class LinkCheckerStatusResponse(BaseModel):
    """User's link checker preferences plus the scheduler state."""

    settings: LinkCheckerSettingsResponse
    scheduler: SchedulerStatusResponse
