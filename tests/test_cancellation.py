from __future__ import annotations

import asyncio
import inspect

import pytest

from advisor.services.cancellation import CancellationToken, JobCancelledError


def test_guard_returns_work_result_when_not_cancelled() -> None:
    async def scenario() -> str:
        async def _work() -> str:
            await asyncio.sleep(0)
            return "done"

        return await CancellationToken("job-1").guard(_work())

    assert asyncio.run(scenario()) == "done"


def test_guard_on_cancelled_token_closes_unstarted_work() -> None:
    ran: list[str] = []

    async def _work() -> None:
        ran.append("work")

    async def scenario():
        token = CancellationToken("job-1")
        token.cancel()
        work = _work()
        with pytest.raises(JobCancelledError):
            await token.guard(work)
        return work

    work = asyncio.run(scenario())
    assert ran == []
    assert inspect.getcoroutinestate(work) == inspect.CORO_CLOSED


def test_guard_cancels_in_flight_work_when_token_fires() -> None:
    async def scenario() -> list[str]:
        events: list[str] = []
        token = CancellationToken("job-1")

        async def _work() -> None:
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                events.append("work cancelled")
                raise

        guarded = asyncio.create_task(token.guard(_work()))
        await asyncio.sleep(0)
        token.cancel()
        with pytest.raises(JobCancelledError):
            await guarded
        return events

    assert asyncio.run(scenario()) == ["work cancelled"]
