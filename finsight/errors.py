"""
Error taxonomy for outbound API calls.

Every failure the transport can produce maps onto one of these types, and
the retrier decides what to do based on the type alone:

- TransientError (timeouts, connection resets, 5xx): retryable. Builtin
  TimeoutError and ConnectionError from caller-supplied fetchers count too
- RateLimitedError (429): retryable, delay honours Retry-After
- ClientError (other 4xx): surfaced immediately
- MalformedResponseError: surfaced immediately unless the call is marked
  idempotent-and-flaky

Callers only ever see RequestFailedError, which carries the last underlying
cause and how many attempts were made.
"""
import asyncio
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional, Union


class ApiError(Exception):
    """Base class for all client errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientError(ApiError):
    """Network hiccup or upstream 5xx. Safe to retry."""
    pass


class RequestTimeoutError(TransientError):
    """The per-call timeout elapsed before a response arrived."""
    pass


class RateLimitedError(ApiError):
    """Upstream returned 429."""

    def __init__(
        self,
        message: str = "Rate limited by upstream",
        retry_after: Optional[float] = None,
        status_code: int = 429,
    ):
        super().__init__(message, status_code=status_code)
        self.retry_after = retry_after


class ClientError(ApiError):
    """4xx other than 429. Retrying will not help."""
    pass


class MalformedResponseError(ApiError):
    """Payload could not be decoded or did not have the expected shape."""
    pass


class RequestFailedError(ApiError):
    """
    Terminal failure of one logical call.

    Attributes:
        cause: The last underlying error
        attempts: Number of attempts made (including the first)
        operation: Operation name, if known
    """

    def __init__(self, cause: BaseException, attempts: int, operation: str = ""):
        label = f"{operation} " if operation else ""
        super().__init__(
            f"{label}failed after {attempts} attempt(s): {cause}",
            status_code=getattr(cause, "status_code", None),
        )
        self.cause = cause
        self.attempts = attempts
        self.operation = operation
        self.__cause__ = cause


def is_retryable(error: BaseException, allow_malformed: bool = False) -> bool:
    """Classify an error as retryable or not."""
    if isinstance(error, (TransientError, RateLimitedError)):
        return True
    if isinstance(error, (TimeoutError, asyncio.TimeoutError, ConnectionError)):
        return True
    if isinstance(error, MalformedResponseError):
        return allow_malformed
    return False


def error_code(error: BaseException) -> str:
    """Short code recorded in telemetry for a failed call."""
    if isinstance(error, RequestFailedError):
        return error_code(error.cause)
    if isinstance(error, (RequestTimeoutError, TimeoutError, asyncio.TimeoutError)):
        return "timeout"
    if isinstance(error, MalformedResponseError):
        return "malformed"
    status = getattr(error, "status_code", None)
    if status is not None:
        return str(status)
    return type(error).__name__


def parse_retry_after(value: Optional[Union[str, int, float]]) -> Optional[float]:
    """
    Parse a Retry-After header value into seconds from now.

    Accepts either delta-seconds or an HTTP-date. Returns None when the
    header is absent or unparseable; never returns a negative number.
    """
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return max(0.0, float(value))

    value = value.strip()
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
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    delta = (when - datetime.now(timezone.utc)).total_seconds()
    return max(0.0, delta)
