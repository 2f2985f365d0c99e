"""In-memory collaborators for enrichment scheduler tests."""
import asyncio
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import pytest

from models.bookmark import LinkStatus, ScreenshotStatus
from services.bookmark_store import (
    EnrichmentStatus,
    LinkCheckCandidate,
    LinkStatusUpdate,
    ScreenshotRequest,
    ScreenshotStatusUpdate,
    ScreenshotTarget,
)
from services.exceptions import CaptureError, StoreUnavailableError
from services.link_check_policy import DuePolicy, classify_http_status, is_due_for_link_check
from services.link_checker import LinkCheckResult
from tasks.enrichment_scheduler import EnrichmentScheduler, SchedulerConfig


NOW = datetime(2026, 1, 15, 12, 0, tzinfo=UTC)


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@dataclass
class FakeBookmark:
    """Bookmark row as kept by InMemoryBookmarkStore."""

    id: int
    user_id: int
    url: str
    screenshot_status: ScreenshotStatus = ScreenshotStatus.IDLE
    screenshot_url: str | None = None
    screenshot_updated_at: datetime | None = None
    link_status: LinkStatus = LinkStatus.UNKNOWN
    http_status: int | None = None
    last_link_check_at: datetime | None = None
    link_fail_count: int = 0
    deleted: bool = False


@dataclass
class FakePreferences:
    enabled: bool = False
    interval_minutes: int | None = None
    batch_size: int | None = None


class InMemoryBookmarkStore:
    """BookmarkStore kept in dicts, selecting with the pure due predicate."""

    def __init__(self) -> None:
        self.bookmarks: dict[int, FakeBookmark] = {}
        self.preferences: dict[int, FakePreferences] = {}
        self.unavailable = False
        self.write_errors: dict[int, Exception] = {}
        self.link_writes = 0
        self.screenshot_writes = 0

    def add(self, user_id: int = 1, url: str | None = None, **fields: object) -> FakeBookmark:
        bookmark_id = len(self.bookmarks) + 1
        bookmark = FakeBookmark(
            id=bookmark_id,
            user_id=user_id,
            url=url or f"https://example.com/{bookmark_id}",
            **fields,
        )
        self.bookmarks[bookmark_id] = bookmark
        return bookmark

    def set_preferences(
        self,
        user_id: int,
        enabled: bool = True,
        interval_minutes: int | None = None,
        batch_size: int | None = None,
    ) -> None:
        self.preferences[user_id] = FakePreferences(enabled, interval_minutes, batch_size)

    def delete(self, bookmark_id: int) -> None:
        self.bookmarks[bookmark_id].deleted = True

    def _live(self, bookmark_id: int) -> FakeBookmark | None:
        bookmark = self.bookmarks.get(bookmark_id)
        if bookmark is None or bookmark.deleted:
            return None
        return bookmark

    def _check_available(self) -> None:
        if self.unavailable:
            raise StoreUnavailableError("connection refused")

    def _check_write(self, bookmark_id: int) -> None:
        if bookmark_id in self.write_errors:
            raise self.write_errors[bookmark_id]

    @staticmethod
    def _candidate(bookmark: FakeBookmark) -> LinkCheckCandidate:
        return LinkCheckCandidate(
            id=bookmark.id,
            user_id=bookmark.user_id,
            url=bookmark.url,
            link_status=bookmark.link_status.value,
            last_link_check_at=bookmark.last_link_check_at,
            link_fail_count=bookmark.link_fail_count,
        )

    async def list_due_for_link_check(
        self,
        limit: int,
        *,
        now: datetime,
        policy: DuePolicy,
        user_id: int | None = None,
        per_user_default: int | None = None,
    ) -> list[LinkCheckCandidate]:
        self._check_available()
        due = []
        for bookmark in self.bookmarks.values():
            prefs = self.preferences.get(bookmark.user_id, FakePreferences())
            if bookmark.deleted:
                continue
            if user_id is None and not prefs.enabled:
                continue
            if user_id is not None and bookmark.user_id != user_id:
                continue
            if is_due_for_link_check(
                bookmark.last_link_check_at,
                bookmark.link_fail_count,
                now,
                policy,
                interval_minutes=prefs.interval_minutes,
            ):
                due.append(bookmark)

        due.sort(key=lambda b: (
            b.last_link_check_at is not None, b.last_link_check_at or now, b.id,
        ))
        per_user: dict[int, int] = {}
        selected = []
        for bookmark in due:
            prefs = self.preferences.get(bookmark.user_id, FakePreferences())
            cap = prefs.batch_size or per_user_default or limit
            if per_user.get(bookmark.user_id, 0) >= cap:
                continue
            per_user[bookmark.user_id] = per_user.get(bookmark.user_id, 0) + 1
            selected.append(self._candidate(bookmark))
        return selected[:limit]

    async def get_link_check_candidate(
        self, bookmark_id: int, user_id: int,
    ) -> LinkCheckCandidate | None:
        self._check_available()
        bookmark = self._live(bookmark_id)
        if bookmark is None or bookmark.user_id != user_id:
            return None
        return self._candidate(bookmark)

    async def update_link_status(self, bookmark_id: int, update: LinkStatusUpdate) -> bool:
        self._check_available()
        self._check_write(bookmark_id)
        bookmark = self._live(bookmark_id)
        if bookmark is None:
            return False
        bookmark.link_status = update.status
        bookmark.http_status = update.http_status
        bookmark.last_link_check_at = update.checked_at
        bookmark.link_fail_count = update.fail_count
        self.link_writes += 1
        return True

    async def mark_screenshot_pending(
        self,
        bookmark_id: int,
        user_id: int,
        *,
        now: datetime,
        stale_before: datetime,
    ) -> ScreenshotRequest | None:
        self._check_available()
        bookmark = self._live(bookmark_id)
        if bookmark is None or bookmark.user_id != user_id:
            return None
        target = ScreenshotTarget(id=bookmark.id, user_id=bookmark.user_id, url=bookmark.url)
        fresh_pending = (
            bookmark.screenshot_status is ScreenshotStatus.PENDING
            and bookmark.screenshot_updated_at is not None
            and bookmark.screenshot_updated_at >= stale_before
        )
        if fresh_pending:
            return ScreenshotRequest(
                target=target,
                started=False,
                status=bookmark.screenshot_status,
                updated_at=bookmark.screenshot_updated_at,
            )
        bookmark.screenshot_status = ScreenshotStatus.PENDING
        bookmark.screenshot_updated_at = now
        return ScreenshotRequest(
            target=target, started=True, status=ScreenshotStatus.PENDING, updated_at=now,
        )

    async def requeue_stale_screenshots(
        self,
        *,
        stale_before: datetime,
        now: datetime,
        limit: int,
    ) -> list[ScreenshotTarget]:
        self._check_available()
        targets = []
        for bookmark in self.bookmarks.values():
            if len(targets) >= limit:
                break
            if bookmark.deleted or bookmark.screenshot_status is not ScreenshotStatus.PENDING:
                continue
            updated_at = bookmark.screenshot_updated_at
            if updated_at is not None and updated_at >= stale_before:
                continue
            bookmark.screenshot_updated_at = now
            targets.append(
                ScreenshotTarget(id=bookmark.id, user_id=bookmark.user_id, url=bookmark.url),
            )
        return targets

    async def update_screenshot_status(
        self, bookmark_id: int, update: ScreenshotStatusUpdate,
    ) -> bool:
        self._check_available()
        self._check_write(bookmark_id)
        bookmark = self._live(bookmark_id)
        if bookmark is None:
            return False
        bookmark.screenshot_status = update.status
        bookmark.screenshot_updated_at = update.updated_at
        if update.asset_ref is not None:
            bookmark.screenshot_url = update.asset_ref
        self.screenshot_writes += 1
        return True

    async def exists(self, bookmark_id: int) -> bool:
        self._check_available()
        return self._live(bookmark_id) is not None

    async def get_enrichment_status(
        self, bookmark_id: int, user_id: int,
    ) -> EnrichmentStatus | None:
        self._check_available()
        bookmark = self._live(bookmark_id)
        if bookmark is None or bookmark.user_id != user_id:
            return None
        return EnrichmentStatus(
            bookmark_id=bookmark.id,
            screenshot_status=bookmark.screenshot_status,
            screenshot_url=bookmark.screenshot_url,
            screenshot_updated_at=bookmark.screenshot_updated_at,
            link_status=bookmark.link_status,
            http_status=bookmark.http_status,
            last_link_check_at=bookmark.last_link_check_at,
            link_fail_count=bookmark.link_fail_count,
        )


class FakeLinkChecker:
    """
    Link checker returning canned results, with concurrency instrumentation.

    `responses` maps a URL to an HTTP status code, a LinkCheckResult, or an
    exception to raise. While `release` is set to an unset Event, every check
    blocks on it.
    """

    def __init__(self, default_status: int = 200, delay: float = 0.0) -> None:
        self.responses: dict[str, int | LinkCheckResult | Exception] = {}
        self.default_status = default_status
        self.delay = delay
        self.release: asyncio.Event | None = None
        self.started = asyncio.Event()
        self.calls: list[str] = []
        self.active = 0
        self.peak = 0

    async def check(self, url: str) -> LinkCheckResult:
        self.calls.append(url)
        self.active += 1
        self.peak = max(self.peak, self.active)
        self.started.set()
        try:
            if self.release is not None:
                await self.release.wait()
            elif self.delay:
                await asyncio.sleep(self.delay)
            response = self.responses.get(url, self.default_status)
            if isinstance(response, Exception):
                raise response
            if isinstance(response, LinkCheckResult):
                return response
            return LinkCheckResult(
                status=classify_http_status(response),
                http_status=response,
                final_url=url,
                error=None,
            )
        finally:
            self.active -= 1


class FakeScreenshotService:
    """Screenshot backend that hands out fake asset references."""

    def __init__(self) -> None:
        self.fail = False
        self.release: asyncio.Event | None = None
        self.started = asyncio.Event()
        self.captured: list[str] = []
        self.discarded: list[str] = []
        self.active = 0
        self.peak = 0

    async def capture(self, url: str) -> str:
        self.captured.append(url)
        self.active += 1
        self.peak = max(self.peak, self.active)
        self.started.set()
        try:
            if self.release is not None:
                await self.release.wait()
            if self.fail:
                raise CaptureError("Screenshot service unavailable")
            return f"/screenshots/capture-{len(self.captured)}.png"
        finally:
            self.active -= 1

    async def discard(self, asset_ref: str) -> bool:
        self.discarded.append(asset_ref)
        return True


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryBookmarkStore:
    return InMemoryBookmarkStore()


@pytest.fixture
def link_checker() -> FakeLinkChecker:
    return FakeLinkChecker()


@pytest.fixture
def screenshots() -> FakeScreenshotService:
    return FakeScreenshotService()


@pytest.fixture
def config() -> SchedulerConfig:
    return SchedulerConfig(
        interval_minutes=30,
        batch_size=25,
        max_concurrent=5,
        initial_delay_seconds=0,
    )


@pytest.fixture
async def scheduler(
    store: InMemoryBookmarkStore,
    link_checker: FakeLinkChecker,
    screenshots: FakeScreenshotService,
    config: SchedulerConfig,
    clock: FakeClock,
) -> AsyncGenerator[EnrichmentScheduler]:
    """Scheduler wired to in-memory fakes; drained after the test."""
    scheduler = EnrichmentScheduler(
        store, link_checker, screenshots, config=config, clock=clock,
    )
    yield scheduler
    if link_checker.release is not None:
        link_checker.release.set()
    if screenshots.release is not None:
        screenshots.release.set()
    await scheduler.stop()
