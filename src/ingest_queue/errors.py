"""Error taxonomy shared by the queue, worker, driver and HTTP boundary.

Each error carries the HTTP status it maps to at the boundary. Per-job
failures (ProcessingError) are never surfaced over HTTP; they are recorded on
the job by the worker instead.
"""

from typing import Any, Dict, Optional


class IngestQueueError(Exception):
    """Base class for all pipeline errors."""

    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class AuthError(IngestQueueError):
    """Signature or shared-secret mismatch at a boundary. Never retried."""

    status_code = 401


class ValidationError(IngestQueueError):
    """Malformed payload, unsupported file type or bad parameters."""

    status_code = 400


class StoreError(IngestQueueError):
    """Job store unavailable or a query failed."""

    status_code = 500


class InvalidTransition(StoreError):
    """A status update did not match the expected current status."""

    def __init__(self, job_id: int, expected: str, actual: Optional[str]):
        super().__init__(
            f"Job {job_id} is not {expected} (current status: {actual})",
            details={"job_id": job_id, "expected": expected, "actual": actual},
        )
        self.job_id = job_id
        self.expected = expected
        self.actual = actual


class ProcessingError(IngestQueueError):
    """Content processor failure for one job."""


class RateLimitExceeded(IngestQueueError):
    status_code = 429

    def __init__(self, key: str, retry_after_s: int):
        super().__init__(
            "Rate limit exceeded",
            details={"key": key, "retryAfter": retry_after_s},
        )
        self.retry_after_s = retry_after_s
