"""Persistence port for the scheduler, plus the SQLAlchemy implementation.

The scheduler calls save_job on every transition and progress update. The
progress log is append-only, so saving only inserts the entries the table
does not have yet.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol, runtime_checkable

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from advisor.models.job import JobProgressRecord, JobRecord
from advisor.services.jobs import Job, JobStatus, ProgressEntry, utc_now

logger = logging.getLogger(__name__)


@runtime_checkable
class JobStore(Protocol):
    async def save_job(self, job: Job) -> None: ...

    async def load_job(self, job_id: str) -> Optional[Job]: ...

    async def list_jobs(self) -> list[Job]: ...

    async def delete_jobs_older_than(self, hours_old: float) -> int: ...


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _to_job(row: JobRecord) -> Job:
    return Job(
        id=row.id,
        kind=row.job_type,
        input=row.params or {},
        target_count=row.target_count,
        estimated_total_ms=row.estimated_total_ms,
        estimated_remaining_ms=row.estimated_remaining_ms,
        status=JobStatus(row.status),
        progress=row.progress,
        created_at=_aware(row.created_at),
        started_at=_aware(row.started_at),
        completed_at=_aware(row.completed_at),
        result=row.result,
        error=row.error_message,
        progress_log=[
            ProgressEntry(_aware(p.timestamp), p.percentage, p.message)
            for p in row.progress_entries
        ],
    )


class SqlJobStore:
    """JobStore over an async SQLAlchemy session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def save_job(self, job: Job) -> None:
        async with self._session_factory() as db:
            row = await db.get(JobRecord, job.id)
            if row is None:
                row = JobRecord(id=job.id, created_at=job.created_at)
                db.add(row)
            row.job_type = job.kind
            row.status = job.status.value
            row.progress = job.progress
            row.params = job.input
            row.result = job.result
            row.error_message = job.error
            row.target_count = job.target_count
            row.estimated_total_ms = job.estimated_total_ms
            row.estimated_remaining_ms = job.estimated_remaining_ms
            row.started_at = job.started_at
            row.completed_at = job.completed_at

            stored = await db.scalar(
                select(func.count()).select_from(JobProgressRecord)
                .where(JobProgressRecord.job_id == job.id)
            )
            for seq, entry in enumerate(job.progress_log[stored or 0:], start=stored or 0):
                db.add(JobProgressRecord(
                    job_id=job.id,
                    seq=seq,
                    timestamp=entry.timestamp,
                    percentage=entry.percentage,
                    message=entry.message,
                ))
            await db.commit()

    async def load_job(self, job_id: str) -> Optional[Job]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(JobRecord)
                .options(selectinload(JobRecord.progress_entries))
                .where(JobRecord.id == job_id)
            )
            row = result.scalar_one_or_none()
            return _to_job(row) if row else None

    async def list_jobs(self) -> list[Job]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(JobRecord)
                .options(selectinload(JobRecord.progress_entries))
                .order_by(JobRecord.created_at)
            )
            return [_to_job(row) for row in result.scalars().all()]

    async def delete_jobs_older_than(self, hours_old: float = 24) -> int:
        cutoff = utc_now() - timedelta(hours=hours_old)
        terminal = [s.value for s in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)]
        async with self._session_factory() as db:
            old_ids = select(JobRecord.id).where(
                JobRecord.completed_at < cutoff,
                JobRecord.status.in_(terminal),
            )
            await db.execute(
                delete(JobProgressRecord).where(JobProgressRecord.job_id.in_(old_ids))
            )
            result = await db.execute(
                delete(JobRecord).where(
                    JobRecord.completed_at < cutoff,
                    JobRecord.status.in_(terminal),
                )
            )
            await db.commit()
            deleted = result.rowcount or 0
        if deleted:
            logger.info(f"Deleted {deleted} job(s) older than {hours_old}h from store")
        return deleted
