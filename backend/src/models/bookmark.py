"""Bookmark model, limited to the columns that background enrichment reads and writes."""
from datetime import datetime
from enum import StrEnum
from typing import TYPE_CHECKING

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from models.base import Base, TimestampMixin

if TYPE_CHECKING:
    from models.user import User


class ScreenshotStatus(StrEnum):
    """Lifecycle of a bookmark's screenshot."""

    IDLE = "idle"
    PENDING = "pending"
    DONE = "done"
    FAILED = "failed"


class LinkStatus(StrEnum):
    """Result of the most recent link-health check."""

    UNKNOWN = "unknown"
    OK = "ok"
    BROKEN = "broken"
    TIMEOUT = "timeout"


class Bookmark(Base, TimestampMixin):
    """Bookmark model - stores a user's URL together with its enrichment state."""

    __tablename__ = "bookmarks"
    __table_args__ = (
        CheckConstraint(
            "screenshot_status <> 'done' OR screenshot_url IS NOT NULL",
            name="ck_bookmarks_screenshot_done_has_url",
        ),
        CheckConstraint("link_fail_count >= 0", name="ck_bookmarks_link_fail_count_nonnegative"),
        # Oldest-checked-first scans for the link checker
        Index(
            "ix_bookmarks_link_check_due",
            "last_link_check_at",
            "id",
            postgresql_where=text("deleted_at IS NULL"),
        ),
        # Recovery sweep for screenshots stuck in pending
        Index(
            "ix_bookmarks_screenshot_pending",
            "screenshot_updated_at",
            postgresql_where=text("screenshot_status = 'pending'"),
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
    )
    url: Mapped[str] = mapped_column(Text, nullable=False)
    title: Mapped[str | None] = mapped_column(String(500), nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Soft delete: a deleted bookmark is never selected or written back by enrichment
    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True, default=None, index=True,
    )

    # Screenshot enrichment
    screenshot_status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=ScreenshotStatus.IDLE.value,
        server_default=ScreenshotStatus.IDLE.value,
    )
    screenshot_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    screenshot_updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )

    # Link-health enrichment
    link_status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default=LinkStatus.UNKNOWN.value,
        server_default=LinkStatus.UNKNOWN.value,
    )
    http_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_link_check_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True,
    )
    link_fail_count: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
        comment="Consecutive non-ok link checks; reset to 0 on the first ok.",
    )

    user: Mapped["User"] = relationship(back_populates="bookmarks")
