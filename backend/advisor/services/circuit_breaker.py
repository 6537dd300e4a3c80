"""Circuit breaker for calls to a volatile dependency.

closed     -> calls pass; a success heals one failure, a failure adds one.
              Reaching the threshold opens the breaker.
open       -> calls are rejected with CircuitOpenError until reset_timeout
              has passed since the last failure, then the next call is let
              through as a probe (half-open).
half-open  -> one failure reopens; two successes close and clear failures.

Share one instance per logical dependency; per-call breakers never trip.
"""
import logging
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Optional, TypeVar

from advisor.services.cancellation import JobCancelledError
from advisor.services.jobs import utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

TRANSITION_LOG_SIZE = 100
SUCCESSES_TO_CLOSE = 2


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"


class CircuitOpenError(Exception):
    """Raised instead of calling the dependency while the breaker is open."""

    def __init__(self, name: str, retry_in: float):
        self.name = name
        self.retry_in = max(0.0, retry_in)
        super().__init__(
            f"Circuit breaker '{name}' is OPEN. Service is temporarily unavailable. "
            f"Try again in {self.retry_in:.1f}s"
        )


@dataclass
class BreakerTransition:
    timestamp: datetime
    state: BreakerState
    reason: str


class CircuitBreaker:
    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 60.0,
        *,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self.state = BreakerState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.transition_log: deque[BreakerTransition] = deque(maxlen=TRANSITION_LOG_SIZE)

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        """Run ``fn()`` under breaker protection and re-raise its error."""
        self._before_call()
        try:
            result = await fn()
        except JobCancelledError:
            raise
        except Exception:
            self._on_failure()
            raise
        self._on_success()
        return result

    def _before_call(self) -> None:
        if self.state is not BreakerState.OPEN:
            return
        now = self._clock()
        elapsed = now - (self.last_failure_time if self.last_failure_time is not None else now)
        if self.last_failure_time is not None and elapsed > self.reset_timeout:
            self.success_count = 0
            self._transition(BreakerState.HALF_OPEN, "Reset timeout reached")
            return
        raise CircuitOpenError(self.name, self.reset_timeout - elapsed)

    def _on_success(self) -> None:
        if self.state is BreakerState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= SUCCESSES_TO_CLOSE:
                self.failure_count = 0
                self._transition(BreakerState.CLOSED, "Recovered from temporary failure")
        elif self.state is BreakerState.CLOSED:
            self.failure_count = max(0, self.failure_count - 1)

    def _on_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = self._clock()
        if self.state is BreakerState.HALF_OPEN:
            self._transition(BreakerState.OPEN, "Failed while in half-open state")
        elif self.state is BreakerState.CLOSED and self.failure_count >= self.failure_threshold:
            self._transition(
                BreakerState.OPEN, f"Failure threshold ({self.failure_threshold}) reached",
            )

    def _transition(self, state: BreakerState, reason: str) -> None:
        self.state = state
        self.transition_log.append(BreakerTransition(utc_now(), state, reason))
        logger.warning(f"Circuit breaker '{self.name}' -> {state.value}: {reason}")

    def reset(self) -> None:
        """Force the breaker closed and clear counters."""
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time = None
        self._transition(BreakerState.CLOSED, "Manual reset")

    def stats(self) -> dict:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "failure_threshold": self.failure_threshold,
            "reset_timeout": self.reset_timeout,
            "last_failure_age": (
                None if self.last_failure_time is None
                else self._clock() - self.last_failure_time
            ),
            "transitions": [
                {"timestamp": t.timestamp, "state": t.state.value, "reason": t.reason}
                for t in self.transition_log
            ],
        }
