from __future__ import annotations


class AuditSyncError(Exception):
    """Base error for auditsync."""


class ConfigError(AuditSyncError):
    """Missing or invalid process configuration."""


class AuthError(AuditSyncError):
    """Token exchange for a tenant failed; aborts that tenant only."""

    def __init__(self, message: str, *, status_code: int | None = None, body: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class UpstreamError(AuditSyncError):
    """Non-2xx, non-429 response from the activity endpoint; aborts one day."""

    def __init__(self, message: str, *, status_code: int | None = None, body: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class RateLimitedError(UpstreamError):
    """Upstream kept answering 429 after the retry budget was spent."""

    def __init__(self, message: str, *, attempts: int, waited_s: float) -> None:
        super().__init__(message, status_code=429)
        self.attempts = attempts
        self.waited_s = waited_s


class MalformedEventError(AuditSyncError):
    """Raw event could not be normalized; the event is skipped."""


class StoreError(AuditSyncError):
    """Persistence failure; the batch was rolled back."""


class StoreUnavailableError(StoreError):
    """The database could not be reached; aborts the whole run."""


class RunInProgressError(AuditSyncError):
    """An extraction run is already active; the trigger was rejected."""
