"""
Background enrichment scheduler.

Keeps bookmark enrichment state eventually consistent: a recurring pass
re-validates link health for bookmarks that are due, and screenshots are
captured on demand. Timer passes and user-triggered work share one WorkGate,
so the number of simultaneous outbound operations never exceeds
max_concurrent, whoever asked for them.

Usage:
    python -m tasks.enrichment_scheduler

Each pass:
1. Re-queues screenshots stuck in "pending" for longer than the pending timeout
2. Selects bookmarks due for a link check (see services.link_check_policy)
3. Checks them concurrently through the gate and writes each outcome back

Per-item failures are recorded on the bookmark and never abort a pass. Only
an unreachable bookmark store aborts it; the next tick tries again.

State machine: STOPPED -> RUNNING (start) -> DRAINING (stop) -> STOPPED.
While draining, pass items and on-demand link checks that haven't acquired
the gate are skipped. Work already holding a slot, and every screenshot
capture accepted before the stop, finishes (or times out) and writes back.
"""
import asyncio
import logging
import signal
from collections.abc import AsyncIterator, Callable, Coroutine, Iterable
from contextlib import asynccontextmanager
from dataclasses import asdict, dataclass
from datetime import UTC, datetime, timedelta
from enum import StrEnum
from typing import Any, Protocol

from core.config import Settings, get_settings
from models.bookmark import LinkStatus, ScreenshotStatus
from services.bookmark_store import (
    BookmarkStore,
    LinkCheckCandidate,
    LinkStatusUpdate,
    ScreenshotRequest,
    ScreenshotStatusUpdate,
    ScreenshotTarget,
    SqlAlchemyBookmarkStore,
)
from services.exceptions import (
    BookmarkNotFoundError,
    CaptureError,
    LinkCheckInProgressError,
    PermanentHttpError,
    SchedulerUnavailableError,
    SSRFBlockedError,
    StoreUnavailableError,
    TransientNetworkError,
)
from services.link_check_policy import DuePolicy, next_fail_count
from services.link_checker import LinkChecker, LinkCheckResult
from services.screenshot_service import ScreenshotService

logger = logging.getLogger(__name__)

# Upper bound on bookmarks in one user-scoped pass or bulk request
MAX_ON_DEMAND_BATCH = 500


class SchedulerState(StrEnum):
    """Lifecycle state of an EnrichmentScheduler."""

    STOPPED = "stopped"
    RUNNING = "running"
    DRAINING = "draining"


class ItemOutcome(StrEnum):
    """How a single dispatched item ended, for pass summaries."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class SchedulerConfig:
    """Scheduler pacing and limits."""

    interval_minutes: int = 30
    batch_size: int = 25
    max_concurrent: int = 5
    link_check_enabled: bool = True
    backoff_threshold: int = 3
    max_backoff_minutes: int = 24 * 60
    pending_timeout_seconds: float = 120.0
    initial_delay_seconds: float = 60.0

    def __post_init__(self) -> None:
        for name in (
            "interval_minutes",
            "batch_size",
            "max_concurrent",
            "backoff_threshold",
            "max_backoff_minutes",
        ):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1")
        if self.pending_timeout_seconds <= 0:
            raise ValueError("pending_timeout_seconds must be positive")
        if self.initial_delay_seconds < 0:
            raise ValueError("initial_delay_seconds cannot be negative")

    @classmethod
    def from_settings(cls, settings: Settings) -> "SchedulerConfig":
        """Build a scheduler config from application settings."""
        return cls(
            interval_minutes=settings.link_check_interval_minutes,
            batch_size=settings.link_check_batch_size,
            max_concurrent=settings.link_check_max_concurrent,
            link_check_enabled=settings.link_check_enabled,
            backoff_threshold=settings.link_check_backoff_threshold,
            max_backoff_minutes=settings.link_check_max_backoff_minutes,
            pending_timeout_seconds=float(settings.screenshot_pending_timeout_seconds),
            initial_delay_seconds=settings.link_check_initial_delay_seconds,
        )

    @property
    def due_policy(self) -> DuePolicy:
        """Eligibility parameters passed to the store."""
        return DuePolicy(
            interval_minutes=self.interval_minutes,
            backoff_threshold=self.backoff_threshold,
            max_backoff_minutes=self.max_backoff_minutes,
        )


@dataclass
class PassSummary:
    """
    Result of one enrichment pass or bulk check.

    succeeded: link checked and recorded as ok
    failed: recorded as broken/timeout, or the write-back itself failed
    skipped: not checked (already in flight, scheduler draining) or the
        bookmark disappeared before its result could be recorded
    ran: False when the pass didn't run because another one was active
    """

    scanned: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    requeued_screenshots: int = 0
    ran: bool = True

    def record(self, outcome: ItemOutcome) -> None:
        """Count one item outcome."""
        if outcome is ItemOutcome.SUCCEEDED:
            self.succeeded += 1
        elif outcome is ItemOutcome.FAILED:
            self.failed += 1
        else:
            self.skipped += 1

    def to_dict(self) -> dict[str, int | bool]:
        """Convert to simple dict for logging/return."""
        return asdict(self)


class WorkGate:
    """
    Semaphore shared by every outbound operation of one scheduler.

    `active` and `peak` count operations currently holding a slot and the
    highest simultaneous count seen; peak never exceeds max_concurrent.
    """

    def __init__(self, max_concurrent: int) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.max_concurrent = max_concurrent
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self.active = 0
        self.peak = 0

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        """Hold one slot for the duration of the block."""
        async with self._semaphore:
            self.active += 1
            self.peak = max(self.peak, self.active)
            try:
                yield
            finally:
                self.active -= 1


@dataclass(frozen=True)
class SchedulerStatus:
    """Snapshot of the scheduler for status endpoints and logs."""

    state: SchedulerState
    pass_in_progress: bool
    link_check_enabled: bool
    interval_minutes: int
    max_concurrent: int
    active_operations: int
    peak_operations: int
    last_run_at: datetime | None
    next_run_at: datetime | None
    last_summary: PassSummary | None


class LinkCheckBackend(Protocol):
    """Anything that can classify a URL (LinkChecker in production)."""

    async def check(self, url: str) -> LinkCheckResult:
        """Check one URL."""
        ...


class ScreenshotBackend(Protocol):
    """Anything that can capture and discard screenshot assets (ScreenshotService in production)."""

    async def capture(self, url: str) -> str:
        """Capture a page and return its asset reference."""
        ...

    async def discard(self, asset_ref: str) -> bool:
        """Remove an asset no bookmark references."""
        ...


class EnrichmentScheduler:
    """
    Recurring link-check passes plus on-demand link checks and screenshots.

    Instantiable and injectable: the store, link checker, screenshot backend
    and clock are all passed in, and all state lives on the instance.
    """

    def __init__(
        self,
        store: BookmarkStore,
        link_checker: LinkCheckBackend,
        screenshot_service: ScreenshotBackend,
        *,
        config: SchedulerConfig | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._link_checker = link_checker
        self._screenshots = screenshot_service
        self.config = config or SchedulerConfig()
        self._clock = clock or (lambda: datetime.now(UTC))
        self.gate = WorkGate(self.config.max_concurrent)

        self._state = SchedulerState.STOPPED
        self._stop_event: asyncio.Event | None = None
        self._timer_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()
        self._pass_active = False
        self._links_in_flight: set[int] = set()
        self._screenshots_in_flight: set[int] = set()

        self._last_run_at: datetime | None = None
        self._next_run_at: datetime | None = None
        self._last_summary: PassSummary | None = None

    @property
    def state(self) -> SchedulerState:
        """Current lifecycle state."""
        return self._state

    @property
    def store(self) -> BookmarkStore:
        """The bookmark store this scheduler reads from and writes to."""
        return self._store

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self, config: SchedulerConfig | None = None) -> None:
        """
        Start the recurring cycle. Must be called from a running event loop.

        A no-op while the scheduler is running or draining. The first pass
        runs after config.initial_delay_seconds, then every interval_minutes.
        """
        if self._state is not SchedulerState.STOPPED:
            logger.info("Enrichment scheduler is %s; start ignored", self._state.value)
            return

        if config is not None and config != self.config:
            self.config = config
            self.gate = WorkGate(config.max_concurrent)

        self._state = SchedulerState.RUNNING
        self._stop_event = asyncio.Event()
        self._timer_task = asyncio.create_task(self._timer_loop(), name="enrichment-timer")
        logger.info(
            "Enrichment scheduler started (interval=%d min, batch=%d, max_concurrent=%d, "
            "link checks %s)",
            self.config.interval_minutes,
            self.config.batch_size,
            self.config.max_concurrent,
            "enabled" if self.config.link_check_enabled else "disabled",
        )

    async def stop(self) -> None:
        """
        Stop the timer and wait for outstanding work.

        Moves to DRAINING: queued link checks that haven't acquired a gate slot
        are skipped. Operations already in flight, including every accepted
        screenshot capture, complete or time out on their own and still write
        back. Returns once everything settled.
        """
        if self._state is SchedulerState.DRAINING:
            logger.info("Enrichment scheduler is already draining")
            return

        self._state = SchedulerState.DRAINING
        if self._stop_event is not None:
            self._stop_event.set()
        if self._timer_task is not None:
            await self._timer_task
            self._timer_task = None

        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

        self._next_run_at = None
        self._state = SchedulerState.STOPPED
        logger.info("Enrichment scheduler stopped")

    async def _timer_loop(self) -> None:
        """Fire a pass on a fixed cadence until stop() is requested."""
        delay = self.config.initial_delay_seconds
        while True:
            self._next_run_at = self._clock() + timedelta(seconds=delay)
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
            except TimeoutError:
                self._tick()
            else:
                return
            delay = self.config.interval_minutes * 60

    def _tick(self) -> None:
        if not self._begin_pass():
            logger.warning("Enrichment pass still running; skipping scheduled tick")
            return
        self._spawn(self._scheduled_pass(), name="enrichment-pass")

    async def _scheduled_pass(self) -> None:
        try:
            await self._run_pass(user_id=None)
        except StoreUnavailableError as e:
            logger.error("Enrichment pass aborted, retrying next tick: %s", e)
        except Exception:
            logger.exception("Enrichment pass failed unexpectedly")

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    async def run_once(self, user_id: int | None = None) -> PassSummary:
        """
        Run one pass now.

        Args:
            user_id: Restrict the pass to one user's bookmarks. The user's
                enabled flag is ignored (they asked explicitly) and their
                batch size caps the selection.

        Returns:
            PassSummary; ran=False if another pass was already active.

        Raises:
            StoreUnavailableError: If the bookmark store can't be reached.
            SchedulerUnavailableError: If the scheduler is draining.
        """
        self._ensure_accepting()
        if not self._begin_pass():
            logger.info("Enrichment pass already in progress; run_once skipped")
            return PassSummary(ran=False)
        task = self._spawn(self._run_pass(user_id=user_id), name="enrichment-pass")
        return await asyncio.shield(task)

    def _begin_pass(self) -> bool:
        if self._pass_active:
            return False
        self._pass_active = True
        return True

    async def _run_pass(self, user_id: int | None) -> PassSummary:
        """Body of a pass. The caller has already claimed the pass via _begin_pass."""
        try:
            now = self._clock()
            summary = PassSummary()
            logger.info(
                "Starting enrichment pass%s", f" for user {user_id}" if user_id else "",
            )

            summary.requeued_screenshots = await self._recover_stale_screenshots(now)

            if user_id is None and not self.config.link_check_enabled:
                candidates: list[LinkCheckCandidate] = []
            elif user_id is None:
                candidates = await self._store.list_due_for_link_check(
                    self.config.batch_size,
                    now=now,
                    policy=self.config.due_policy,
                )
            else:
                candidates = await self._store.list_due_for_link_check(
                    MAX_ON_DEMAND_BATCH,
                    now=now,
                    policy=self.config.due_policy,
                    user_id=user_id,
                    per_user_default=self.config.batch_size,
                )
            summary.scanned = len(candidates)

            for outcome in await self._check_candidates(candidates):
                summary.record(outcome)

            self._last_run_at = now
            self._last_summary = summary
            logger.info("Enrichment pass complete: %s", summary.to_dict())
            return summary
        finally:
            self._pass_active = False

    async def _recover_stale_screenshots(self, now: datetime) -> int:
        """Re-dispatch captures left pending past the pending timeout (e.g. by a crash)."""
        targets = await self._store.requeue_stale_screenshots(
            stale_before=now - timedelta(seconds=self.config.pending_timeout_seconds),
            now=now,
            limit=self.config.batch_size,
        )
        for target in targets:
            self._dispatch_capture(target)
        if targets:
            logger.info("Re-queued %d stale pending screenshots", len(targets))
        return len(targets)

    # ------------------------------------------------------------------
    # Link checks
    # ------------------------------------------------------------------

    async def check_link_now(self, bookmark_id: int, user_id: int) -> LinkStatusUpdate:
        """
        Check one bookmark's link immediately, through the shared gate.

        Returns:
            The recorded outcome.

        Raises:
            BookmarkNotFoundError: If the bookmark doesn't exist for this user,
                or was deleted before the result could be recorded.
            LinkCheckInProgressError: If the same bookmark is already being checked.
            SchedulerUnavailableError: If the scheduler is draining.
        """
        self._ensure_accepting()
        candidate = await self._store.get_link_check_candidate(bookmark_id, user_id)
        if candidate is None:
            raise BookmarkNotFoundError(bookmark_id)
        if bookmark_id in self._links_in_flight:
            raise LinkCheckInProgressError(bookmark_id)

        self._links_in_flight.add(bookmark_id)
        task = self._spawn(self._check_one(candidate), name=f"link-check-{bookmark_id}")
        return await asyncio.shield(task)

    async def _check_one(self, candidate: LinkCheckCandidate) -> LinkStatusUpdate:
        """Body of check_link_now; the caller has already claimed the bookmark."""
        try:
            async with self.gate.slot():
                if self._state is SchedulerState.DRAINING:
                    raise SchedulerUnavailableError()
                result = await self._fetch(candidate.url)
            update = self._link_update(candidate, result)
            if not await self._store.update_link_status(candidate.id, update):
                logger.info(
                    "Bookmark %s deleted during its link check; result discarded", candidate.id,
                )
                raise BookmarkNotFoundError(candidate.id)
            return update
        finally:
            self._links_in_flight.discard(candidate.id)

    async def check_links_now(self, bookmark_ids: Iterable[int], user_id: int) -> PassSummary:
        """
        Check several of a user's bookmarks immediately.

        Unknown ids and ids owned by other users count as skipped.
        """
        self._ensure_accepting()
        unique_ids = list(dict.fromkeys(bookmark_ids))
        if len(unique_ids) > MAX_ON_DEMAND_BATCH:
            raise ValueError(f"At most {MAX_ON_DEMAND_BATCH} bookmarks can be checked at once")

        summary = PassSummary(scanned=len(unique_ids))
        candidates = []
        for bookmark_id in unique_ids:
            candidate = await self._store.get_link_check_candidate(bookmark_id, user_id)
            if candidate is None:
                summary.skipped += 1
            else:
                candidates.append(candidate)

        task = self._spawn(self._check_candidates(candidates), name=f"bulk-link-check-{user_id}")
        for outcome in await asyncio.shield(task):
            summary.record(outcome)
        logger.info("Bulk link check for user %s complete: %s", user_id, summary.to_dict())
        return summary

    async def _check_candidates(self, candidates: list[LinkCheckCandidate]) -> list[ItemOutcome]:
        return list(await asyncio.gather(*(self._check_candidate(c) for c in candidates)))

    async def _check_candidate(self, candidate: LinkCheckCandidate) -> ItemOutcome:
        """Check one selected bookmark and record the outcome. Never raises."""
        if candidate.id in self._links_in_flight:
            return ItemOutcome.SKIPPED

        self._links_in_flight.add(candidate.id)
        try:
            async with self.gate.slot():
                if self._state is SchedulerState.DRAINING:
                    return ItemOutcome.SKIPPED
                result = await self._fetch(candidate.url)
            return await self._record_link_result(candidate, result)
        finally:
            self._links_in_flight.discard(candidate.id)

    async def _fetch(self, url: str) -> LinkCheckResult:
        """Run the link checker, converting anything it raises into a classified result."""
        try:
            return await self._link_checker.check(url)
        except TransientNetworkError as e:
            return LinkCheckResult(LinkStatus.TIMEOUT, None, url, str(e))
        except PermanentHttpError as e:
            return LinkCheckResult(LinkStatus.BROKEN, e.status_code, url, str(e))
        except SSRFBlockedError as e:
            return LinkCheckResult(LinkStatus.BROKEN, None, url, str(e))
        except Exception as e:
            logger.exception("Unexpected error checking %s", url)
            return LinkCheckResult(LinkStatus.BROKEN, None, url, str(e))

    def _link_update(
        self, candidate: LinkCheckCandidate, result: LinkCheckResult,
    ) -> LinkStatusUpdate:
        return LinkStatusUpdate(
            status=result.status,
            http_status=result.http_status,
            checked_at=self._clock(),
            fail_count=next_fail_count(candidate.link_fail_count, result.status),
        )

    async def _record_link_result(
        self, candidate: LinkCheckCandidate, result: LinkCheckResult,
    ) -> ItemOutcome:
        update = self._link_update(candidate, result)
        try:
            written = await self._store.update_link_status(candidate.id, update)
        except StoreUnavailableError as e:
            logger.error("Could not record link check for bookmark %s: %s", candidate.id, e)
            return ItemOutcome.FAILED
        except Exception:
            logger.exception("Unexpected error recording link check for bookmark %s", candidate.id)
            return ItemOutcome.FAILED

        if not written:
            logger.info("Bookmark %s deleted during its link check; result discarded", candidate.id)
            return ItemOutcome.SKIPPED
        if result.status is not LinkStatus.OK:
            logger.info(
                "Link check for bookmark %s: %s (http_status=%s, fail_count=%d): %s",
                candidate.id,
                result.status.value,
                result.http_status,
                update.fail_count,
                result.error,
            )
            return ItemOutcome.FAILED
        return ItemOutcome.SUCCEEDED

    # ------------------------------------------------------------------
    # Screenshots
    # ------------------------------------------------------------------

    async def request_screenshot(self, bookmark_id: int, user_id: int) -> ScreenshotRequest:
        """
        Mark a bookmark's screenshot pending and capture it in the background.

        Returns immediately. If a capture is already pending (and not stale)
        nothing new is dispatched and the request reports started=False.

        Raises:
            BookmarkNotFoundError: If the bookmark doesn't exist for this user.
            SchedulerUnavailableError: If the scheduler is draining.
        """
        self._ensure_accepting()
        now = self._clock()
        request = await self._store.mark_screenshot_pending(
            bookmark_id,
            user_id,
            now=now,
            stale_before=now - timedelta(seconds=self.config.pending_timeout_seconds),
        )
        if request is None:
            raise BookmarkNotFoundError(bookmark_id)

        if request.started:
            self._dispatch_capture(request.target)
        else:
            logger.info("Screenshot for bookmark %s is already pending", bookmark_id)
        return request

    def _dispatch_capture(self, target: ScreenshotTarget) -> None:
        if target.id in self._screenshots_in_flight:
            return
        self._screenshots_in_flight.add(target.id)
        self._spawn(self._capture(target), name=f"screenshot-{target.id}")

    async def _capture(self, target: ScreenshotTarget) -> None:
        """Capture one screenshot and record the outcome. Never raises."""
        try:
            # Accepted captures run even while draining
            async with self.gate.slot():
                try:
                    if not await self._store.exists(target.id):
                        logger.info("Bookmark %s deleted before its screenshot; skipped", target.id)
                        return
                except StoreUnavailableError as e:
                    logger.error("Could not start screenshot for bookmark %s: %s", target.id, e)
                    return
                asset_ref = await self._render(target)
            await self._record_capture(target, asset_ref)
        finally:
            self._screenshots_in_flight.discard(target.id)

    async def _render(self, target: ScreenshotTarget) -> str | None:
        try:
            return await self._screenshots.capture(target.url)
        except CaptureError as e:
            logger.warning("Screenshot failed for bookmark %s: %s", target.id, e)
        except Exception:
            logger.exception("Unexpected error capturing screenshot for bookmark %s", target.id)
        return None

    async def _record_capture(self, target: ScreenshotTarget, asset_ref: str | None) -> None:
        if asset_ref is not None:
            update = ScreenshotStatusUpdate(
                status=ScreenshotStatus.DONE, updated_at=self._clock(), asset_ref=asset_ref,
            )
        else:
            update = ScreenshotStatusUpdate(
                status=ScreenshotStatus.FAILED, updated_at=self._clock(),
            )

        try:
            written = await self._store.update_screenshot_status(target.id, update)
        except StoreUnavailableError as e:
            # Row stays pending; the recovery sweep will capture it again
            logger.error("Could not record screenshot for bookmark %s: %s", target.id, e)
            written = False
        except Exception:
            logger.exception("Unexpected error recording screenshot for bookmark %s", target.id)
            written = False
        else:
            if not written:
                logger.info(
                    "Bookmark %s deleted during screenshot capture; result discarded", target.id,
                )

        if not written and asset_ref is not None:
            try:
                await self._screenshots.discard(asset_ref)
            except OSError as e:
                logger.warning("Could not remove orphaned screenshot %s: %s", asset_ref, e)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def status(self) -> SchedulerStatus:
        """Snapshot of the scheduler state and gate counters."""
        return SchedulerStatus(
            state=self._state,
            pass_in_progress=self._pass_active,
            link_check_enabled=self.config.link_check_enabled,
            interval_minutes=self.config.interval_minutes,
            max_concurrent=self.gate.max_concurrent,
            active_operations=self.gate.active,
            peak_operations=self.gate.peak,
            last_run_at=self._last_run_at,
            next_run_at=self._next_run_at,
            last_summary=self._last_summary,
        )

    def _ensure_accepting(self) -> None:
        if self._state is SchedulerState.DRAINING:
            raise SchedulerUnavailableError()

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
        """Run a coroutine as a tracked background task so stop() can wait for it."""
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task


def build_scheduler(settings: Settings | None = None) -> EnrichmentScheduler:
    """Wire an EnrichmentScheduler to the database, link checker and screenshot service."""
    settings = settings or get_settings()
    # Importing db.session creates the engine, so defer it until a scheduler is built
    from db.session import get_session_factory  # noqa: PLC0415

    return EnrichmentScheduler(
        SqlAlchemyBookmarkStore(get_session_factory()),
        LinkChecker.from_settings(settings),
        ScreenshotService.from_settings(settings),
        config=SchedulerConfig.from_settings(settings),
    )


async def run_worker(scheduler: EnrichmentScheduler | None = None) -> None:
    """Run the scheduler until SIGINT/SIGTERM, then drain."""
    scheduler = scheduler or build_scheduler()
    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_requested.set)

    scheduler.start()
    try:
        await stop_requested.wait()
    finally:
        logger.info("Shutdown requested; draining enrichment scheduler")
        await scheduler.stop()


def main() -> None:
    """Entry point for running the scheduler as a standalone worker."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
