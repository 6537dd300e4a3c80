"""Shared test fixtures and fakes."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from advisor.services.backend_client import BackendClient
from advisor.services.jobs import Job


class FakeClock:
    """Settable clock for the scheduler (aware datetimes)."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeBackendClient(BackendClient):
    """Answers per target; targets listed in ``failing`` raise.

    ``gate`` (an asyncio.Event) holds every call until it is set.
    """

    def __init__(self, failing: dict[str, Exception] | None = None, gate=None) -> None:
        self.failing = failing or {}
        self.gate = gate
        self.calls: list[tuple[str, dict]] = []
        self.cancelled: list[str] = []

    async def call(self, target, payload, *, token=None):
        self.calls.append((target, payload))

        async def _work():
            try:
                if self.gate is not None:
                    await self.gate.wait()
                else:
                    await asyncio.sleep(0)
            except asyncio.CancelledError:
                self.cancelled.append(target)
                raise
            if target in self.failing:
                raise self.failing[target]
            return f"answer from {target}"

        if token is not None:
            token.raise_if_cancelled()
            return await token.guard(_work())
        return await _work()


class RecordingStore:
    """In-memory JobStore that records every save."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.saved: list[Job] = []
        self.jobs: dict[str, Job] = {}

    async def save_job(self, job: Job) -> None:
        await asyncio.sleep(0)
        if self.fail:
            raise RuntimeError("disk full")
        self.saved.append(job)
        self.jobs[job.id] = job

    async def load_job(self, job_id: str) -> Job | None:
        if self.fail:
            raise RuntimeError("disk full")
        return self.jobs.get(job_id)

    async def list_jobs(self) -> list[Job]:
        if self.fail:
            raise RuntimeError("disk full")
        return list(self.jobs.values())

    async def delete_jobs_older_than(self, hours_old: float) -> int:
        return 0


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Yield to the loop until ``predicate()`` is true."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()
