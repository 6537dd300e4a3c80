from __future__ import annotations

import asyncio

import pytest

from advisor.services.cancellation import JobCancelledError
from advisor.services.circuit_breaker import (
    TRANSITION_LOG_SIZE,
    BreakerState,
    CircuitBreaker,
    CircuitOpenError,
)


class Tick:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class Backend:
    def __init__(self) -> None:
        self.calls = 0
        self.healthy = False

    async def __call__(self) -> str:
        self.calls += 1
        if not self.healthy:
            raise ConnectionError("connection refused")
        return "pong"


def _run(breaker: CircuitBreaker, fn) -> object:
    return asyncio.run(breaker.execute(fn))


def _fail_times(breaker: CircuitBreaker, fn, n: int) -> None:
    for _ in range(n):
        with pytest.raises(ConnectionError):
            _run(breaker, fn)


@pytest.fixture()
def tick() -> Tick:
    return Tick()


@pytest.fixture()
def breaker(tick: Tick) -> CircuitBreaker:
    return CircuitBreaker(failure_threshold=3, reset_timeout=60.0, name="ollama", clock=tick)


def test_opens_after_threshold_and_rejects_without_calling(breaker: CircuitBreaker) -> None:
    backend = Backend()
    _fail_times(breaker, backend, 3)
    assert breaker.state is BreakerState.OPEN

    with pytest.raises(CircuitOpenError) as info:
        _run(breaker, backend)
    assert backend.calls == 3
    assert "is OPEN. Service is temporarily unavailable" in str(info.value)


def test_stays_open_until_reset_timeout_passes(breaker: CircuitBreaker, tick: Tick) -> None:
    backend = Backend()
    _fail_times(breaker, backend, 3)
    tick.now += 60.0
    with pytest.raises(CircuitOpenError):
        _run(breaker, backend)
    assert backend.calls == 3


def test_half_open_probe_failure_reopens(breaker: CircuitBreaker, tick: Tick) -> None:
    backend = Backend()
    _fail_times(breaker, backend, 3)
    tick.now += 61.0

    _fail_times(breaker, backend, 1)
    assert backend.calls == 4
    assert breaker.state is BreakerState.OPEN

    with pytest.raises(CircuitOpenError):
        _run(breaker, backend)
    assert backend.calls == 4


def test_two_half_open_successes_close_and_clear_failures(
    breaker: CircuitBreaker, tick: Tick,
) -> None:
    backend = Backend()
    _fail_times(breaker, backend, 3)
    tick.now += 61.0
    backend.healthy = True

    assert _run(breaker, backend) == "pong"
    assert breaker.state is BreakerState.HALF_OPEN
    assert _run(breaker, backend) == "pong"
    assert breaker.state is BreakerState.CLOSED
    assert breaker.failure_count == 0
    states = [t.state for t in breaker.transition_log]
    assert states == [BreakerState.OPEN, BreakerState.HALF_OPEN, BreakerState.CLOSED]


def test_success_while_closed_heals_one_failure(breaker: CircuitBreaker) -> None:
    backend = Backend()
    _fail_times(breaker, backend, 2)
    backend.healthy = True
    _run(breaker, backend)
    assert breaker.failure_count == 1
    _run(breaker, backend)
    _run(breaker, backend)
    assert breaker.failure_count == 0
    assert breaker.state is BreakerState.CLOSED


def test_cancellation_does_not_count_as_failure(breaker: CircuitBreaker) -> None:
    async def _cancelled() -> str:
        raise JobCancelledError("Job was cancelled by user")

    for _ in range(5):
        with pytest.raises(JobCancelledError):
            _run(breaker, _cancelled)
    assert breaker.failure_count == 0
    assert breaker.state is BreakerState.CLOSED


def test_transition_log_is_bounded(tick: Tick) -> None:
    breaker = CircuitBreaker(failure_threshold=1, reset_timeout=1.0, clock=tick)
    backend = Backend()
    for _ in range(TRANSITION_LOG_SIZE):
        with pytest.raises(ConnectionError):
            _run(breaker, backend)
        tick.now += 2.0
    assert len(breaker.transition_log) == TRANSITION_LOG_SIZE


def test_reset_closes_and_clears(breaker: CircuitBreaker) -> None:
    _fail_times(breaker, Backend(), 3)
    breaker.reset()
    stats = breaker.stats()
    assert stats["state"] == "closed"
    assert stats["failure_count"] == 0
    assert stats["last_failure_age"] is None
    assert stats["transitions"][-1]["reason"] == "Manual reset"
