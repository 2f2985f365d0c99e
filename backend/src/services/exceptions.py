"""Exceptions raised by the enrichment services and the scheduler."""


class EnrichmentError(Exception):
    """Base class for per-item enrichment failures (link checks and captures)."""

    def __init__(self, message: str) -> None:
        super().__init__(message)


class TransientNetworkError(EnrichmentError):
    """
    Raised for failures that may succeed on a later attempt.

    Covers timeouts, DNS resolution failures, refused and reset connections.
    Recorded as link status "timeout" and retried on the next scheduled pass.
    """


class PermanentHttpError(EnrichmentError):
    """
    Raised when a target answers in a way that will not improve by retrying.

    Examples are an exhausted redirect chain or a protocol violation. Recorded
    as link status "broken" with the last HTTP status code, if any.
    """

    def __init__(self, message: str, status_code: int | None = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class SSRFBlockedError(EnrichmentError):
    """Raised when a URL targets a private/internal network address. No request is sent."""


class CaptureError(EnrichmentError):
    """Raised when the rendering backend could not produce a screenshot."""


class StoreUnavailableError(Exception):
    """
    Raised when the bookmark store cannot be reached.

    This is the only error that aborts a whole enrichment pass; the scheduler
    retries on its next tick.
    """

    def __init__(self, message: str) -> None:
        super().__init__(message)


class BookmarkNotFoundError(Exception):
    """Raised when a bookmark doesn't exist, is deleted, or isn't owned by the user."""

    def __init__(self, bookmark_id: int) -> None:
        self.bookmark_id = bookmark_id
        super().__init__(f"Bookmark not found: {bookmark_id}")


class LinkCheckInProgressError(Exception):
    """Raised when a link check for the same bookmark is already running."""

    def __init__(self, bookmark_id: int) -> None:
        self.bookmark_id = bookmark_id
        super().__init__(f"Link check already in progress for bookmark {bookmark_id}")


class SchedulerUnavailableError(Exception):
    """Raised when on-demand work is requested while the scheduler is draining."""

    def __init__(self) -> None:
        super().__init__("Enrichment scheduler is shutting down")
