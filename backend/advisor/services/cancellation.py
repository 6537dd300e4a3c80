"""Cooperative cancellation for running jobs.

The scheduler creates one token per promoted job and hands it to the start
handler. Work threads the token into every backend call so in-flight calls
notice cancellation at their next await instead of only gating future calls.
"""
import asyncio
import inspect
from typing import Awaitable, TypeVar

T = TypeVar("T")


class JobCancelledError(Exception):
    """Raised when a job detects it has been cancelled (cooperative cancellation)."""
    pass


class CancellationToken:
    """One-shot cancellation flag that can also be awaited."""

    def __init__(self, job_id: str = ""):
        self.job_id = job_id
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise JobCancelledError("Job was cancelled by user")

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first.

        The losing side is cancelled. Raises JobCancelledError when the
        token wins the race. An un-awaited coroutine handed in after the
        token fired is closed.
        """
        if self.cancelled and inspect.iscoroutine(awaitable):
            awaitable.close()
        self.raise_if_cancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            waiter.cancel()
            raise
        if work in done:
            waiter.cancel()
            return work.result()
        work.cancel()
        await asyncio.gather(work, return_exceptions=True)
        raise JobCancelledError("Job was cancelled by user")
