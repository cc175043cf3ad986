"""Error taxonomy and tagged results for provider-bound work."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Awaitable, Generic, TypeVar, Union

T = TypeVar("T")


class WhaletraceError(Exception):
    """Base class for all whaletrace errors."""


class ConfigurationError(WhaletraceError):
    """Missing or contradictory configuration. Raised before any I/O."""


class RateLimited(WhaletraceError):
    """A provider answered with HTTP 429 or an equivalent throttling signal."""

    def __init__(self, provider: str, retry_after: float = 60.0, message: str | None = None):
        self.provider = provider
        self.retry_after = float(retry_after)
        super().__init__(message or f"Rate limit exceeded: {provider} (retry after {self.retry_after:.0f}s)")


class TransientFetchError(WhaletraceError):
    """Transport, timeout or parse failure. Safe to degrade for non-critical lookups."""

    def __init__(self, message: str, provider: str | None = None):
        self.provider = provider
        super().__init__(message)


class RangeTooLargeError(TransientFetchError):
    """Provider refused a log query because the block range or result set is too large."""


class PersistenceConflict(WhaletraceError):
    """Duplicate key on insert."""


class FatalAnalysisError(WhaletraceError):
    """Unexpected failure while analysing a single wallet."""

    def __init__(self, address: str, cause: BaseException):
        self.address = address
        self.cause = cause
        super().__init__(f"Analysis failed for {address}: {cause}")


# --- Tagged results ---


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Limited:
    provider: str
    retry_after: float


@dataclass(frozen=True)
class Err:
    error: BaseException


Result = Union[Ok[T], Limited, Err]


async def capture(awaitable: Awaitable[T]) -> Result:
    """Await and fold the outcome into ``Ok | Limited | Err``.

    Cancellation and configuration errors are not folded; they end the run.
    """
    try:
        return Ok(await awaitable)
    except RateLimited as exc:
        return Limited(provider=exc.provider, retry_after=exc.retry_after)
    except ConfigurationError:
        raise
    except Exception as exc:
        return Err(error=exc)


def is_rate_limit_message(text: Any) -> bool:
    msg = str(text).lower()
    return "429" in msg or "too many requests" in msg or "rate limit" in msg or "exceeded its compute units" in msg


def is_range_error_message(text: Any) -> bool:
    msg = str(text).lower()
    return any(
        marker in msg
        for marker in (
            "block range",
            "range too large",
            "query returned more than",
            "response size exceeded",
            "log response size",
            "limit exceeded",
            "too many results",
        )
    )


def parse_retry_after(value: Any, default: float) -> float:
    """Seconds from a ``Retry-After`` header value; falls back to ``default``."""
    if value is None:
        return default
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return default
    return seconds if seconds >= 0 else default
