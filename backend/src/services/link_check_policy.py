"""
Pure functions deciding when a bookmark's link is due and how outcomes are recorded.

These functions hold no state and perform no I/O. The SQL store mirrors
is_due_for_link_check in its eligibility query, and the in-memory test store
calls it directly, so both select the same bookmarks.

Backoff policy:
    A bookmark is due when it has never been checked, or when its last check
    is older than its effective interval. Below the failure threshold the
    effective interval is the base interval. From the threshold on it doubles
    per additional failure (at most 2**5 times the base interval) and is capped
    at max_backoff_minutes, but never drops below the base interval.

    With interval=30, threshold=3, max_backoff_minutes=1440:
        fail_count 0-2 -> 30 min
        fail_count 3   -> 60 min
        fail_count 4   -> 120 min
        fail_count 7+  -> 960 min (exponent capped at 5)

    With interval=60 the same exponent cap would give 1920 min, so the
    1440 min ceiling applies instead.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta

from models.bookmark import LinkStatus

MAX_BACKOFF_EXPONENT = 5


@dataclass(frozen=True)
class DuePolicy:
    """Parameters of the link-check eligibility predicate."""

    interval_minutes: int
    backoff_threshold: int = 3
    max_backoff_minutes: int = 24 * 60

    def __post_init__(self) -> None:
        if self.interval_minutes < 1:
            raise ValueError("interval_minutes must be at least 1")
        if self.backoff_threshold < 1:
            raise ValueError("backoff_threshold must be at least 1")
        if self.max_backoff_minutes < 1:
            raise ValueError("max_backoff_minutes must be at least 1")


def classify_http_status(status_code: int) -> LinkStatus:
    """
    Map an HTTP status code to a link status.

    2xx and 3xx are ok; everything else (4xx, 5xx and stray 1xx) is broken.
    """
    if 200 <= status_code < 400:
        return LinkStatus.OK
    return LinkStatus.BROKEN


def next_fail_count(previous: int, status: LinkStatus) -> int:
    """Consecutive-failure counter after a check: reset on ok, otherwise incremented."""
    if status is LinkStatus.OK:
        return 0
    return max(previous, 0) + 1


def backoff_exponent(fail_count: int, backoff_threshold: int) -> int:
    """Doubling exponent applied to the base interval for a given failure count."""
    return min(max(fail_count - backoff_threshold + 1, 0), MAX_BACKOFF_EXPONENT)


def effective_interval_minutes(
    interval_minutes: int,
    fail_count: int,
    backoff_threshold: int,
    max_backoff_minutes: int,
) -> int:
    """Minutes that must pass after a check before the bookmark is due again."""
    backed_off = interval_minutes * 2 ** backoff_exponent(fail_count, backoff_threshold)
    return min(backed_off, max(max_backoff_minutes, interval_minutes))


def is_due_for_link_check(
    last_checked_at: datetime | None,
    fail_count: int,
    now: datetime,
    policy: DuePolicy,
    interval_minutes: int | None = None,
) -> bool:
    """
    Decide whether a bookmark should be included in the next link-check pass.

    Args:
        last_checked_at: Time of the previous check, or None if never checked.
        fail_count: Consecutive failures so far.
        now: Current time.
        policy: Default interval and backoff parameters.
        interval_minutes: Per-user interval override; None uses policy.interval_minutes.

    Returns:
        True if the bookmark is due.
    """
    if last_checked_at is None:
        return True
    interval = interval_minutes if interval_minutes is not None else policy.interval_minutes
    minutes = effective_interval_minutes(
        interval, fail_count, policy.backoff_threshold, policy.max_backoff_minutes,
    )
    return last_checked_at + timedelta(minutes=minutes) < now
