"""Timeout + exponential backoff retry wrapper for volatile async calls.

Every attempt is raced against ``per_attempt_timeout``. Failed attempts are
retried with a delay that starts at ``initial_delay`` and grows by
``multiplier`` up to ``max_delay``. Whether an error is worth retrying is
decided by a pluggable predicate; errors it rejects are raised immediately.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Optional, TypeVar

from advisor.services.cancellation import JobCancelledError
from advisor.services.jobs import utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Lower-cased message fragments that mark an error as transient.
_RETRYABLE_PATTERNS = (
    "timeout",
    "timed out",
    "econnrefused",
    "econnreset",
    "connection refused",
    "connection reset",
    "service unavailable",
    "temporarily unavailable",
    "getaddrinfo",
    "name or service not known",
    "socket hang up",
    "server disconnected",
)


@dataclass(frozen=True)
class RetryConfig:
    """Retry policy. All durations are in seconds."""
    max_attempts: int = 4
    initial_delay: float = 1.0
    max_delay: float = 8.0
    multiplier: float = 2.0
    per_attempt_timeout: float = 30.0

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.per_attempt_timeout <= 0:
            raise ValueError("per_attempt_timeout must be > 0")


DEFAULT_RETRY_CONFIG = RetryConfig()


@dataclass
class RetryAttempt:
    """Diagnostic record emitted after every attempt."""
    timestamp: datetime
    attempt: int
    delay: float
    success: bool
    error: Optional[str] = None
    next_retry_in: Optional[float] = None


class AttemptTimeoutError(TimeoutError):
    """A single attempt exceeded the per-attempt timeout."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"Timeout after {timeout:g}s")


class RetryExhaustedError(Exception):
    """All attempts failed. Wraps the last underlying error."""

    def __init__(self, attempts: int, last_error: BaseException):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Failed after {attempts} attempts. Last error: {last_error}")


def is_retryable_error(exc: BaseException) -> bool:
    """Default predicate: timeouts, connection problems, 429 and 5xx answers."""
    if isinstance(exc, JobCancelledError):
        return False
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError, ConnectionError)):
        return True
    retryable = getattr(exc, "retryable", None)
    if retryable is not None:
        return bool(retryable)
    message = str(exc).lower()
    return any(pattern in message for pattern in _RETRYABLE_PATTERNS)


def next_delay(delay: float, config: RetryConfig) -> float:
    return min(delay * config.multiplier, config.max_delay)


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    config: RetryConfig = DEFAULT_RETRY_CONFIG,
    *,
    is_retryable: Optional[Callable[[BaseException], bool]] = None,
    on_attempt: Optional[Callable[[RetryAttempt], None]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Call ``fn()`` until it succeeds or ``config.max_attempts`` is reached.

    Args:
        fn: zero-argument coroutine factory; called once per attempt.
        config: retry policy.
        is_retryable: predicate for terminal vs transient errors. When it
            returns False the error is raised as-is without further attempts.
            None means every error is retried.
        on_attempt: optional diagnostics hook.
        sleep: injectable sleep (tests pass a no-op).

    Raises:
        RetryExhaustedError: after the last failed attempt.
    """
    delay = config.initial_delay
    last_error: Optional[BaseException] = None

    for attempt in range(1, config.max_attempts + 1):
        try:
            result = await asyncio.wait_for(fn(), timeout=config.per_attempt_timeout)
        except asyncio.TimeoutError:
            last_error = AttemptTimeoutError(config.per_attempt_timeout)
        except (asyncio.CancelledError, JobCancelledError):
            raise
        except Exception as e:
            last_error = e
            if is_retryable is not None and not is_retryable(e):
                _emit(on_attempt, attempt, delay, success=False, error=e)
                raise
        else:
            _emit(on_attempt, attempt, 0, success=True)
            return result

        is_last = attempt == config.max_attempts
        _emit(
            on_attempt, attempt, delay, success=False, error=last_error,
            next_retry_in=None if is_last else delay,
        )
        if is_last:
            break

        logger.warning(
            "Call failed (attempt %d/%d), retrying in %.1fs: %s",
            attempt, config.max_attempts, delay, last_error,
        )
        await sleep(delay)
        delay = next_delay(delay, config)

    raise RetryExhaustedError(config.max_attempts, last_error) from last_error


def _emit(on_attempt, attempt, delay, *, success, error=None, next_retry_in=None):
    if on_attempt is None:
        return
    on_attempt(RetryAttempt(
        timestamp=utc_now(),
        attempt=attempt,
        delay=delay,
        success=success,
        error=str(error) if error is not None else None,
        next_retry_in=next_retry_in,
    ))
