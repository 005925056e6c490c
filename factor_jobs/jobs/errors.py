"""Error taxonomy for background jobs.

Every error carries a short ``user_message`` that is safe to persist in
``JobRecord.error_message``. The technical detail (the exception text, the
provider payload) stays in the log.
"""

from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from typing import Optional

import httpx


class JobError(Exception):
    """Base class for job-processing errors."""

    retryable: bool = False
    default_user_message: str = "Processing failed. Please try again later."

    def __init__(self, message: str = "", user_message: Optional[str] = None):
        super().__init__(message or self.default_user_message)
        self.user_message = user_message or self.default_user_message


# Transient / retryable

class TransientJobError(JobError):
    retryable = True


class NetworkError(TransientJobError):
    default_user_message = "A network problem interrupted processing."


class UpstreamTimeoutError(TransientJobError):
    default_user_message = "The processing server took too long to respond."


class RateLimitedError(TransientJobError):
    default_user_message = "The processing server is busy. Please try again later."

    def __init__(
        self,
        message: str = "",
        user_message: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        super().__init__(message, user_message)
        self.retry_after = retry_after


class PollTimeoutError(TransientJobError):
    default_user_message = "Processing did not finish in time."


# Permanent

class PermanentJobError(JobError):
    retryable = False


class InvalidInputError(PermanentJobError):
    default_user_message = "The request parameters are invalid."


class ProcessingRejectedError(PermanentJobError):
    default_user_message = "This model could not be processed."


class QuotaExceededError(PermanentJobError):
    default_user_message = "Your usage limit has been reached."


class ProviderFailedError(JobError):
    """The provider reported a failure for the task.

    Permanent by default; a provider adapter may mark it retryable when the
    provider says the failure was on its side.
    """
    default_user_message = "The processing server could not complete this job."

    def __init__(
        self,
        message: str = "",
        user_message: Optional[str] = None,
        retryable: bool = False,
    ):
        super().__init__(message, user_message)
        self.retryable = retryable


# Internal / caller-facing

class InvalidTransitionError(Exception):
    def __init__(self, job_id: str, current: str, target: str):
        super().__init__(f"Job {job_id}: illegal transition {current} -> {target}")
        self.job_id = job_id
        self.current = current
        self.target = target


class JobNotFoundError(KeyError):
    pass


class PreconditionFailedError(Exception):
    """Raised synchronously by the submitter when the caller's precondition refuses."""

    def __init__(self, reason: str = "Submission is not allowed"):
        super().__init__(reason)
        self.reason = reason


class PollCancelledError(Exception):
    """The local observer stopped polling. The provider task keeps running."""


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def error_for_status(response: httpx.Response, context: str = "request") -> JobError:
    """Map a non-success HTTP response from a processor to a JobError."""
    code = response.status_code
    body_preview = (response.text or "").strip().replace("\n", " ")[:240]
    message = f"{context} failed: HTTP {code}: {body_preview}"
    if code == 429:
        return RateLimitedError(
            message, retry_after=_parse_retry_after(response.headers.get("Retry-After"))
        )
    if code == 408 or code == 504:
        return UpstreamTimeoutError(message)
    if code >= 500:
        return NetworkError(message)
    if code in (402, 403):
        return QuotaExceededError(message)
    if code == 422:
        return ProcessingRejectedError(message)
    return InvalidInputError(message)


def classify(exc: BaseException) -> JobError:
    """Return a JobError describing ``exc``; unknown errors are permanent."""
    if isinstance(exc, JobError):
        return exc
    if isinstance(exc, httpx.HTTPStatusError):
        return error_for_status(exc.response)
    if isinstance(exc, httpx.TimeoutException):
        return UpstreamTimeoutError(f"{type(exc).__name__}: {exc}")
    if isinstance(exc, httpx.TransportError):
        return NetworkError(f"{type(exc).__name__}: {exc}")
    if isinstance(exc, (ConnectionError, TimeoutError)):
        return NetworkError(f"{type(exc).__name__}: {exc}")
    if isinstance(exc, (ValueError, TypeError, KeyError)):
        return InvalidInputError(f"{type(exc).__name__}: {exc}")
    return PermanentJobError(f"{type(exc).__name__}: {exc}")
