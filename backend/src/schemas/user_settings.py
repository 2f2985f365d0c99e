"""Pydantic schemas for user settings endpoints."""
from datetime import datetime

from pydantic import BaseModel, Field


MAX_LINK_CHECK_BATCH_SIZE = 500


class LinkCheckerSettingsUpdate(BaseModel):
    """
    Schema for updating link checker preferences.

    Omitted fields are left unchanged. Null interval/batch size means
    "use the server default".
    """

    link_check_enabled: bool | None = None
    link_check_interval_minutes: int | None = Field(default=None, ge=1)
    link_check_batch_size: int | None = Field(
        default=None, ge=1, le=MAX_LINK_CHECK_BATCH_SIZE,
    )


class LinkCheckerSettingsResponse(BaseModel):
    """Stored link checker preferences together with the values in effect."""

    link_check_enabled: bool
    link_check_interval_minutes: int | None
    link_check_batch_size: int | None
    effective_interval_minutes: int
    effective_batch_size: int
    updated_at: datetime
