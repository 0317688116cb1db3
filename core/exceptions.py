# core/exceptions.py
"""
Error taxonomy for the scraping core.

Every error carries a stable ``code`` so callers can tell a stale, cancelled
request apart from a real upstream failure, and a ``retryable`` flag the job
queue uses to decide whether another attempt can help.
"""

from typing import Any, Dict, List, Optional


class ScraperException(Exception):
    """Base class for every error raised by the scraping core."""

    code = "SCRAPER_ERROR"
    status_code = 500
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        error: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "status": self.status_code,
        }
        if self.details:
            error["details"] = self.details
        return {"error": error}


# ----------------------------------------------------------------------
# Resource exhaustion: retryable, never fatal to the process
# ----------------------------------------------------------------------
class ResourceExhaustedError(ScraperException):
    code = "RESOURCE_EXHAUSTED"
    status_code = 503
    retryable = True


class BrowserPoolTimeoutError(ResourceExhaustedError):
    """No browser became available within the acquire window."""

    code = "BROWSER_POOL_TIMEOUT"


class ConnectionPoolOverflowError(ResourceExhaustedError):
    """The connection pool's admission queue is full."""

    code = "CONNECTION_POOL_OVERFLOW"


class PoolClosedError(ScraperException):
    """A pool was used after it had been shut down."""

    code = "POOL_CLOSED"
    status_code = 503


# ----------------------------------------------------------------------
# Upstream failures: retried by the owner of the retry budget
# ----------------------------------------------------------------------
class UpstreamError(ScraperException):
    """The target site answered with a non‑2xx status or the request failed."""

    code = "UPSTREAM_ERROR"
    status_code = 502
    retryable = True

    def __init__(
        self,
        message: str,
        upstream_status: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message, details)
        self.upstream_status = upstream_status
        if upstream_status is not None:
            self.details.setdefault("upstream_status", upstream_status)


class ExtractionError(UpstreamError):
    """The page was fetched but did not contain the expected data."""

    code = "EXTRACTION_FAILED"


# ----------------------------------------------------------------------
# Cancellation: distinct from failure
# ----------------------------------------------------------------------
class JobCancelledError(ScraperException):
    """The job was superseded or cancelled before it could settle."""

    code = "JOB_CANCELLED"
    status_code = 409


# ----------------------------------------------------------------------
# Fatal: retrying will not help
# ----------------------------------------------------------------------
class BrowserLaunchError(ScraperException):
    """The headless browser could not be started (usually an install problem)."""

    code = "BROWSER_LAUNCH_FAILED"
    status_code = 500


# ----------------------------------------------------------------------
# Collaborator / surface errors
# ----------------------------------------------------------------------
class UsageLimitExceededError(ScraperException):
    code = "USAGE_LIMIT_EXCEEDED"
    status_code = 429


class ValidationError(ScraperException):
    """Request payload validation failure (HTTP surface)."""

    code = "VALIDATION_ERROR"
    status_code = 422

    def __init__(self, errors: List[Any]):
        super().__init__("Request validation failed", {"errors": errors})
        self.errors = errors
