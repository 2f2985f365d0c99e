"""
Bookmark store used by the enrichment scheduler.

The scheduler only talks to the BookmarkStore protocol. SqlAlchemyBookmarkStore
implements it on top of PostgreSQL. Each call opens its own short session and
commits it, so every status transition is an independent single-row update
and a partially completed pass leaves the table consistent.

Write-backs target only live rows (deleted_at IS NULL). A bookmark deleted
while its enrichment was in flight matches zero rows, and the update reports
False instead of recreating or resurrecting anything.
"""
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from sqlalchemy import Float, Interval, func, literal_column, or_, select, update
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from models.bookmark import Bookmark, LinkStatus, ScreenshotStatus
from models.user_settings import UserSettings
from services.exceptions import StoreUnavailableError
from services.link_check_policy import MAX_BACKOFF_EXPONENT, DuePolicy

logger = logging.getLogger(__name__)

# Errors that mean the database itself is unreachable (as opposed to a bad query)
_CONNECTIVITY_ERRORS = (OperationalError, InterfaceError, OSError)

_ONE_MINUTE = literal_column("INTERVAL '1 minute'", type_=Interval())


@dataclass(frozen=True)
class LinkCheckCandidate:
    """A bookmark selected for a link check."""

    id: int
    user_id: int
    url: str
    link_status: str
    last_link_check_at: datetime | None
    link_fail_count: int


@dataclass(frozen=True)
class LinkStatusUpdate:
    """Outcome of a link check, written back in one update."""

    status: LinkStatus
    http_status: int | None
    checked_at: datetime
    fail_count: int

    def __post_init__(self) -> None:
        if self.status is LinkStatus.UNKNOWN:
            raise ValueError("A completed link check cannot record status 'unknown'")
        if self.fail_count < 0:
            raise ValueError("fail_count cannot be negative")


@dataclass(frozen=True)
class ScreenshotTarget:
    """A bookmark whose screenshot should be captured."""

    id: int
    user_id: int
    url: str


@dataclass(frozen=True)
class ScreenshotRequest:
    """Result of asking for a screenshot: started now, or already pending."""

    target: ScreenshotTarget
    started: bool
    status: ScreenshotStatus
    updated_at: datetime | None


@dataclass(frozen=True)
class ScreenshotStatusUpdate:
    """Terminal outcome of a capture."""

    status: ScreenshotStatus
    updated_at: datetime
    asset_ref: str | None = None

    def __post_init__(self) -> None:
        if self.status is ScreenshotStatus.DONE and not self.asset_ref:
            raise ValueError("A done screenshot requires an asset reference")


@dataclass(frozen=True)
class EnrichmentStatus:
    """Current enrichment state of one bookmark, as returned to polling clients."""

    bookmark_id: int
    screenshot_status: ScreenshotStatus
    screenshot_url: str | None
    screenshot_updated_at: datetime | None
    link_status: LinkStatus
    http_status: int | None
    last_link_check_at: datetime | None
    link_fail_count: int


class BookmarkStore(Protocol):
    """Read/write access to bookmark enrichment state."""

    async def list_due_for_link_check(
        self,
        limit: int,
        *,
        now: datetime,
        policy: DuePolicy,
        user_id: int | None = None,
        per_user_default: int | None = None,
    ) -> list[LinkCheckCandidate]:
        """Bookmarks due for a link check, oldest-checked first (never-checked first of all)."""
        ...

    async def get_link_check_candidate(
        self, bookmark_id: int, user_id: int,
    ) -> LinkCheckCandidate | None:
        """A single live bookmark owned by user_id, or None."""
        ...

    async def update_link_status(self, bookmark_id: int, update: LinkStatusUpdate) -> bool:
        """Record a link check. False if the bookmark no longer exists."""
        ...

    async def mark_screenshot_pending(
        self,
        bookmark_id: int,
        user_id: int,
        *,
        now: datetime,
        stale_before: datetime,
    ) -> ScreenshotRequest | None:
        """Move a screenshot to pending unless a fresh capture is pending. None if not found."""
        ...

    async def requeue_stale_screenshots(
        self,
        *,
        stale_before: datetime,
        now: datetime,
        limit: int,
    ) -> list[ScreenshotTarget]:
        """Claim screenshots pending since before stale_before so they can be captured again."""
        ...

    async def update_screenshot_status(
        self, bookmark_id: int, update: ScreenshotStatusUpdate,
    ) -> bool:
        """Record a capture outcome. False if the bookmark no longer exists."""
        ...

    async def exists(self, bookmark_id: int) -> bool:
        """Check whether a live bookmark with this id exists."""
        ...

    async def get_enrichment_status(
        self, bookmark_id: int, user_id: int,
    ) -> EnrichmentStatus | None:
        """Enrichment state of a live bookmark owned by user_id, or None."""
        ...


def _candidate_from_row(row: object) -> LinkCheckCandidate:
    return LinkCheckCandidate(
        id=row.id,
        user_id=row.user_id,
        url=row.url,
        link_status=row.link_status,
        last_link_check_at=row.last_link_check_at,
        link_fail_count=row.link_fail_count,
    )


class SqlAlchemyBookmarkStore:
    """BookmarkStore backed by the bookmarks and user_settings tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        """Open a session, translating connectivity failures into StoreUnavailableError."""
        try:
            async with self._session_factory() as session:
                yield session
        except _CONNECTIVITY_ERRORS as e:
            raise StoreUnavailableError(f"Bookmark store unavailable: {e}") from e

    async def list_due_for_link_check(
        self,
        limit: int,
        *,
        now: datetime,
        policy: DuePolicy,
        user_id: int | None = None,
        per_user_default: int | None = None,
    ) -> list[LinkCheckCandidate]:
        """
        Select bookmarks due for a link check.

        Mirrors link_check_policy.is_due_for_link_check in SQL: a bookmark is due
        when it was never checked, or when last_link_check_at plus its effective
        interval (user interval or default, doubled per failure past the backoff
        threshold, capped) lies before `now`.

        Without user_id only users with link checking enabled are included and
        each user contributes at most their own batch size (per_user_default,
        or `limit` when unset, for users without one). With user_id the
        enabled flag is ignored (the user asked explicitly).

        Results are ordered by last_link_check_at ascending with never-checked
        bookmarks first, then by id, and capped at `limit`.
        """
        interval = func.coalesce(UserSettings.link_check_interval_minutes, policy.interval_minutes)
        exponent = func.least(
            func.greatest(Bookmark.link_fail_count - (policy.backoff_threshold - 1), 0),
            MAX_BACKOFF_EXPONENT,
        )
        effective_minutes = func.least(
            interval * func.power(2, exponent),
            func.greatest(policy.max_backoff_minutes, interval),
            type_=Float,
        )
        due = or_(
            Bookmark.last_link_check_at.is_(None),
            Bookmark.last_link_check_at + _ONE_MINUTE * effective_minutes < now,
        )

        conditions = [Bookmark.deleted_at.is_(None), due]
        if user_id is None:
            conditions.append(UserSettings.link_check_enabled.is_(True))
        else:
            conditions.append(Bookmark.user_id == user_id)

        user_rank = func.row_number().over(
            partition_by=Bookmark.user_id,
            order_by=(Bookmark.last_link_check_at.asc().nulls_first(), Bookmark.id.asc()),
        )
        ranked = (
            select(
                Bookmark.id,
                Bookmark.user_id,
                Bookmark.url,
                Bookmark.link_status,
                Bookmark.last_link_check_at,
                Bookmark.link_fail_count,
                user_rank.label("user_rank"),
                func.coalesce(
                    UserSettings.link_check_batch_size, per_user_default or limit,
                ).label("user_limit"),
            )
            .select_from(Bookmark)
            .outerjoin(UserSettings, UserSettings.user_id == Bookmark.user_id)
            .where(*conditions)
            .subquery("due_bookmarks")
        )
        stmt = (
            select(ranked)
            .where(ranked.c.user_rank <= ranked.c.user_limit)
            .order_by(ranked.c.last_link_check_at.asc().nulls_first(), ranked.c.id.asc())
            .limit(limit)
        )

        async with self._session() as session:
            result = await session.execute(stmt)
            return [_candidate_from_row(row) for row in result.all()]

    async def get_link_check_candidate(
        self, bookmark_id: int, user_id: int,
    ) -> LinkCheckCandidate | None:
        """Load one live bookmark owned by user_id for an on-demand check."""
        stmt = select(
            Bookmark.id,
            Bookmark.user_id,
            Bookmark.url,
            Bookmark.link_status,
            Bookmark.last_link_check_at,
            Bookmark.link_fail_count,
        ).where(
            Bookmark.id == bookmark_id,
            Bookmark.user_id == user_id,
            Bookmark.deleted_at.is_(None),
        )
        async with self._session() as session:
            row = (await session.execute(stmt)).first()
            return _candidate_from_row(row) if row is not None else None

    async def update_link_status(self, bookmark_id: int, update: LinkStatusUpdate) -> bool:
        """Write a link-check outcome; False if the bookmark was deleted meanwhile."""
        stmt = (
            _live_bookmark_update(bookmark_id)
            .values(
                link_status=update.status.value,
                http_status=update.http_status,
                last_link_check_at=update.checked_at,
                link_fail_count=update.fail_count,
            )
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount == 1

    async def mark_screenshot_pending(
        self,
        bookmark_id: int,
        user_id: int,
        *,
        now: datetime,
        stale_before: datetime,
    ) -> ScreenshotRequest | None:
        """
        Atomically move a screenshot to pending.

        A screenshot that is already pending and younger than stale_before is
        left alone (started=False). A stale pending one is claimed again.
        """
        claim = (
            update(Bookmark)
            .where(
                Bookmark.id == bookmark_id,
                Bookmark.user_id == user_id,
                Bookmark.deleted_at.is_(None),
                or_(
                    Bookmark.screenshot_status != ScreenshotStatus.PENDING.value,
                    Bookmark.screenshot_updated_at.is_(None),
                    Bookmark.screenshot_updated_at < stale_before,
                ),
            )
            .values(screenshot_status=ScreenshotStatus.PENDING.value, screenshot_updated_at=now)
            .returning(Bookmark.id, Bookmark.user_id, Bookmark.url)
            .execution_options(synchronize_session=False)
        )
        async with self._session() as session:
            row = (await session.execute(claim)).first()
            if row is not None:
                await session.commit()
                return ScreenshotRequest(
                    target=ScreenshotTarget(id=row.id, user_id=row.user_id, url=row.url),
                    started=True,
                    status=ScreenshotStatus.PENDING,
                    updated_at=now,
                )

            current = (
                await session.execute(
                    select(
                        Bookmark.id,
                        Bookmark.user_id,
                        Bookmark.url,
                        Bookmark.screenshot_status,
                        Bookmark.screenshot_updated_at,
                    ).where(
                        Bookmark.id == bookmark_id,
                        Bookmark.user_id == user_id,
                        Bookmark.deleted_at.is_(None),
                    ),
                )
            ).first()
            if current is None:
                return None
            return ScreenshotRequest(
                target=ScreenshotTarget(id=current.id, user_id=current.user_id, url=current.url),
                started=False,
                status=ScreenshotStatus(current.screenshot_status),
                updated_at=current.screenshot_updated_at,
            )

    async def requeue_stale_screenshots(
        self,
        *,
        stale_before: datetime,
        now: datetime,
        limit: int,
    ) -> list[ScreenshotTarget]:
        """
        Claim stale pending screenshots for another capture attempt.

        Claimed rows get screenshot_updated_at=now, so a concurrent sweep in
        another process (SKIP LOCKED) doesn't pick the same rows.
        """
        stale_ids = (
            select(Bookmark.id)
            .where(
                Bookmark.screenshot_status == ScreenshotStatus.PENDING.value,
                Bookmark.deleted_at.is_(None),
                or_(
                    Bookmark.screenshot_updated_at.is_(None),
                    Bookmark.screenshot_updated_at < stale_before,
                ),
            )
            .order_by(Bookmark.screenshot_updated_at.asc().nulls_first(), Bookmark.id.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        stmt = (
            update(Bookmark)
            .where(Bookmark.id.in_(stale_ids))
            .values(screenshot_updated_at=now)
            .returning(Bookmark.id, Bookmark.user_id, Bookmark.url)
            .execution_options(synchronize_session=False)
        )
        async with self._session() as session:
            rows = (await session.execute(stmt)).all()
            await session.commit()
        targets = [ScreenshotTarget(id=row.id, user_id=row.user_id, url=row.url) for row in rows]
        return sorted(targets, key=lambda target: target.id)

    async def update_screenshot_status(
        self, bookmark_id: int, update: ScreenshotStatusUpdate,
    ) -> bool:
        """
        Write a capture outcome; False if the bookmark was deleted meanwhile.

        A failed capture keeps the previous screenshot_url, if any.
        """
        values: dict[str, object] = {
            "screenshot_status": update.status.value,
            "screenshot_updated_at": update.updated_at,
        }
        if update.asset_ref is not None:
            values["screenshot_url"] = update.asset_ref
        stmt = _live_bookmark_update(bookmark_id).values(**values)
        async with self._session() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount == 1

    async def exists(self, bookmark_id: int) -> bool:
        """Check whether a live bookmark with this id exists."""
        stmt = select(Bookmark.id).where(Bookmark.id == bookmark_id, Bookmark.deleted_at.is_(None))
        async with self._session() as session:
            return (await session.execute(stmt)).scalar_one_or_none() is not None

    async def get_enrichment_status(
        self, bookmark_id: int, user_id: int,
    ) -> EnrichmentStatus | None:
        """Enrichment state for the polling endpoints."""
        stmt = select(Bookmark).where(
            Bookmark.id == bookmark_id,
            Bookmark.user_id == user_id,
            Bookmark.deleted_at.is_(None),
        )
        async with self._session() as session:
            bookmark = (await session.execute(stmt)).scalar_one_or_none()
            if bookmark is None:
                return None
            return EnrichmentStatus(
                bookmark_id=bookmark.id,
                screenshot_status=ScreenshotStatus(bookmark.screenshot_status),
                screenshot_url=bookmark.screenshot_url,
                screenshot_updated_at=bookmark.screenshot_updated_at,
                link_status=LinkStatus(bookmark.link_status),
                http_status=bookmark.http_status,
                last_link_check_at=bookmark.last_link_check_at,
                link_fail_count=bookmark.link_fail_count,
            )


def _live_bookmark_update(bookmark_id: int):  # noqa: ANN202
    """UPDATE restricted to a bookmark that still exists and isn't soft-deleted."""
    return (
        update(Bookmark)
        .where(Bookmark.id == bookmark_id, Bookmark.deleted_at.is_(None))
        .execution_options(synchronize_session=False)
    )
