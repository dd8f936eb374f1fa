# ABOUTME: Exception hierarchy for the sync pipeline.
# ABOUTME: Distinguishes run-aborting failures from per-feed and per-article ones.


class SyncError(Exception):
    """Base class for sync pipeline errors."""


class QuotaExceeded(SyncError):
    """The daily upstream call budget cannot cover the requested calls."""

    def __init__(self, requested: int, used: int, limit: int, message: str | None = None):
        self.requested = requested
        self.used = used
        self.limit = limit
        super().__init__(
            message or f"Daily quota exceeded: {used}/{limit} used, {requested} requested"
        )


class UpstreamFetchError(SyncError):
    """A read request to the upstream API failed."""

    def __init__(self, message: str, feed_id: str | None = None, status_code: int | None = None):
        self.feed_id = feed_id
        self.status_code = status_code
        super().__init__(message)


class UpstreamSubmitError(SyncError):
    """Submitting state changes upstream failed."""


class StorageWriteError(SyncError):
    """Persisting a single article failed."""

    def __init__(self, message: str, url: str | None = None):
        self.url = url
        super().__init__(message)


class PruneError(SyncError):
    """Retention pruning failed; retried on the next run."""


class SyncCancelled(SyncError):
    """The run was cancelled between upstream calls."""
