"""Bounded-concurrency job scheduler.

Owns the pending queue, the running map and the finished map. Nothing else
mutates job state; callers get deep copies. Jobs are promoted FIFO whenever a
slot is free, and the single registered start handler is spawned as its own
asyncio task so the scheduler never runs job work inline.

submit(), cancel() and the other mutators may be called from any thread;
task creation is handed to the scheduler's event loop (the running loop at
construction, or the first one it is used on).

Persistence is best-effort: every transition schedules a save on the
configured JobStore, writes are serialized in transition order, and failures
are logged and swallowed.
"""
import asyncio
import copy
import inspect
import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from advisor.services.cancellation import CancellationToken, JobCancelledError
from advisor.services.jobs import (
    Job,
    JobStatus,
    ProgressEntry,
    new_job_id,
    safe_error_message,
    utc_now,
)

logger = logging.getLogger(__name__)

DEFAULT_ESTIMATE_MS = 300_000

StartHandler = Callable[[Job, CancellationToken], Awaitable[None]]
CompletionHandler = Callable[[Job], Any]


class HandlerAlreadyRegisteredError(RuntimeError):
    """Only one start handler and one completion handler may be registered."""

    def __init__(self, kind: str):
        super().__init__(f"A job {kind} handler is already registered")


@dataclass
class QueueStatistics:
    total: int
    pending: int
    running: int
    completed: int
    failed: int
    cancelled: int
    max_concurrent: int

    def to_dict(self) -> dict:
        return asdict(self)


class JobScheduler:
    def __init__(
        self,
        max_concurrent: int = 2,
        *,
        store=None,
        on_job_started: Optional[StartHandler] = None,
        on_job_completed: Optional[CompletionHandler] = None,
        default_estimate_ms: float = DEFAULT_ESTIMATE_MS,
        clock: Callable[[], datetime] = utc_now,
    ):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        self.max_concurrent = max_concurrent
        self.default_estimate_ms = default_estimate_ms
        self._store = store
        self._clock = clock
        self._on_job_started = on_job_started
        self._on_job_completed = on_job_completed

        self._lock = threading.RLock()
        self._pending: deque[Job] = deque()
        self._running: dict[str, Job] = {}
        self._finished: dict[str, Job] = {}
        self._tokens: dict[str, CancellationToken] = {}

        self._job_tasks: set[asyncio.Task] = set()
        self._persist_tasks: set[asyncio.Task] = set()
        self._persist_lock: Optional[asyncio.Lock] = None
        # Loop that owns job and persistence tasks; callers on other threads
        # hand work to it with call_soon_threadsafe.
        self._loop: Optional[asyncio.AbstractEventLoop] = _running_loop()

    # ── Lifecycle notification ───────────────────────────────────

    def register_start_handler(self, handler: StartHandler) -> None:
        if self._on_job_started is not None:
            raise HandlerAlreadyRegisteredError("started")
        self._on_job_started = handler

    def register_completion_handler(self, handler: CompletionHandler) -> None:
        if self._on_job_completed is not None:
            raise HandlerAlreadyRegisteredError("completed")
        self._on_job_completed = handler

    # ── Submission & lookup ──────────────────────────────────────

    def submit(
        self,
        kind: str,
        input: dict,
        target_count: int = 1,
        estimated_total_ms: Optional[float] = None,
    ) -> str:
        """Queue a job and return its id without waiting for any work."""
        if target_count < 0:
            raise ValueError("target_count must be >= 0")
        estimate = estimated_total_ms or self.default_estimate_ms
        job = Job(
            id=new_job_id(),
            kind=kind,
            input=copy.deepcopy(input),
            target_count=target_count,
            estimated_total_ms=estimate,
            estimated_remaining_ms=estimate,
            created_at=self._clock(),
        )
        with self._lock:
            self._pending.append(job)
            self._persist(job)
        logger.info(f"Job {job.id} submitted (type={kind}, targets={target_count})")
        self._process_queue()
        return job.id

    def peek(self, job_id: str) -> Optional[Job]:
        """In-memory snapshot only."""
        with self._lock:
            job = self._find(job_id)
            return job.snapshot() if job else None

    async def get_status(self, job_id: str) -> Optional[Job]:
        """Snapshot from memory, falling back to the store."""
        snapshot = self.peek(job_id)
        if snapshot is not None or self._store is None:
            return snapshot
        try:
            job = await self._store.load_job(job_id)
        except Exception as e:
            logger.error(f"Error loading job {job_id} from store: {e}")
            return None
        if job is None:
            return None
        if job.is_terminal:
            with self._lock:
                self._finished.setdefault(job.id, job)
        return job.snapshot()

    def list_jobs(self, status: Optional[JobStatus] = None) -> list[Job]:
        with self._lock:
            jobs = [*self._pending, *self._running.values(), *self._finished.values()]
            return [j.snapshot() for j in jobs if status is None or j.status is status]

    def jobs_by_status(self, status: JobStatus) -> list[Job]:
        return self.list_jobs(status)

    def statistics(self) -> QueueStatistics:
        with self._lock:
            finished = list(self._finished.values())
            return QueueStatistics(
                total=len(self._pending) + len(self._running) + len(finished),
                pending=len(self._pending),
                running=len(self._running),
                completed=sum(1 for j in finished if j.status is JobStatus.COMPLETED),
                failed=sum(1 for j in finished if j.status is JobStatus.FAILED),
                cancelled=sum(1 for j in finished if j.status is JobStatus.CANCELLED),
                max_concurrent=self.max_concurrent,
            )

    def is_pending(self, job_id: str) -> bool:
        with self._lock:
            return any(j.id == job_id for j in self._pending)

    def is_running(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._running

    # ── Progress & terminal transitions ──────────────────────────

    def update_progress(self, job_id: str, percentage: float, message: str = "") -> None:
        """Record progress for a running job and refresh its time estimate.

        The total estimate only ever grows: once more than 1% is done it
        becomes max(previous estimate, elapsed / fraction done).
        """
        with self._lock:
            job = self._running.get(job_id)
            if job is None or job.status is not JobStatus.RUNNING:
                return
            now = self._clock()
            clamped = min(100, max(0, int(round(percentage))))
            job.progress = max(job.progress, clamped)
            job.progress_log.append(ProgressEntry(now, job.progress, message))

            if job.started_at is not None:
                elapsed_ms = (now - job.started_at).total_seconds() * 1000
                ratio = job.progress / 100
                if ratio > 0.01:
                    job.estimated_total_ms = max(job.estimated_total_ms, elapsed_ms / ratio)
                    job.estimated_remaining_ms = max(0.0, job.estimated_total_ms - elapsed_ms)
            self._persist(job)

    def complete(self, job_id: str, result: Any = None) -> None:
        self._finish(job_id, JobStatus.COMPLETED, result=result)

    def fail(self, job_id: str, error: str) -> None:
        self._finish(job_id, JobStatus.FAILED, error=error)

    def finalize_cancelled(self, job_id: str) -> None:
        """Retire a running job whose work stopped because it was cancelled."""
        self._finish(job_id, JobStatus.CANCELLED)

    def _finish(self, job_id, status, *, result=None, error=None) -> None:
        with self._lock:
            job = self._running.pop(job_id, None)
            if job is None:
                logger.debug(f"Ignoring {status.value} for job {job_id}: not running")
                return
            self._tokens.pop(job_id, None)
            if job.status is JobStatus.CANCELLED:
                logger.info(f"Job {job_id} was cancelled during execution, skipping {status.value} update")
            else:
                job.status = status
                job.completed_at = self._clock()
                job.estimated_remaining_ms = 0.0
                if status is JobStatus.COMPLETED:
                    job.progress = 100
                    job.result = copy.deepcopy(result)
                elif status is JobStatus.FAILED:
                    job.error = error
                logger.info(f"Job {job_id} {status.value}")
            self._finished[job_id] = job
            self._persist(job)
            snapshot = job.snapshot()
        self._notify_completed(snapshot)
        self._process_queue()

    def cancel(self, job_id: str) -> bool:
        """Cancel a pending job, or flag a running one for cooperative stop.

        Returns False when the job is unknown or already terminal.
        """
        token = None
        snapshot = None
        with self._lock:
            job = next((j for j in self._pending if j.id == job_id), None)
            if job is not None:
                self._pending.remove(job)
                job.status = JobStatus.CANCELLED
                job.completed_at = self._clock()
                self._finished[job_id] = job
                self._persist(job)
                snapshot = job.snapshot()
                logger.info(f"Job {job_id} cancelled while pending")
            else:
                job = self._running.get(job_id)
                if job is None or job.status is not JobStatus.RUNNING:
                    return False
                job.status = JobStatus.CANCELLED
                job.completed_at = self._clock()
                self._persist(job)
                token = self._tokens.get(job_id)
                logger.info(f"Job {job_id} cancelled while running")
        if token is not None:
            if not self._call_in_loop(token.cancel):
                token.cancel()
        if snapshot is not None:
            self._notify_completed(snapshot)
        return True

    # ── Promotion ────────────────────────────────────────────────

    def _process_queue(self) -> None:
        started = []
        with self._lock:
            while self._pending and len(self._running) < self.max_concurrent:
                job = self._pending.popleft()
                job.status = JobStatus.RUNNING
                job.started_at = self._clock()
                self._running[job.id] = job
                token = CancellationToken(job.id)
                self._tokens[job.id] = token
                self._persist(job)
                started.append((job.snapshot(), token))
        for snapshot, token in started:
            logger.info(f"Processing job {snapshot.id} (type={snapshot.kind})")
            self._start(snapshot, token)

    def _start(self, job: Job, token: CancellationToken) -> None:
        handler = self._on_job_started
        if handler is None:
            logger.debug(f"No start handler registered; job {job.id} waits for external completion")
            return
        if not self._call_in_loop(self._spawn_handler, handler, job, token):
            logger.error(f"Cannot start job {job.id}: no event loop")
            self.fail(job.id, "No running event loop to execute the job")

    def _spawn_handler(self, handler: StartHandler, job: Job, token: CancellationToken) -> None:
        task = asyncio.get_running_loop().create_task(
            self._run_handler(handler, job, token), name=f"job-{job.id}",
        )
        self._job_tasks.add(task)
        task.add_done_callback(self._job_tasks.discard)

    def _call_in_loop(self, fn: Callable[..., Any], *args: Any) -> bool:
        """Run ``fn(*args)`` on the scheduler's event loop.

        Inline when already on that loop, via call_soon_threadsafe from any
        other thread. The first running loop seen is adopted. Returns False
        when no usable loop is known.
        """
        running = _running_loop()
        if running is not None and (self._loop is None or self._loop.is_closed()):
            self._loop = running
        loop = self._loop
        if loop is None or loop.is_closed():
            return False
        if running is loop:
            fn(*args)
        else:
            loop.call_soon_threadsafe(fn, *args)
        return True

    async def _run_handler(self, handler: StartHandler, job: Job, token: CancellationToken) -> None:
        try:
            await handler(job, token)
        except JobCancelledError:
            self.finalize_cancelled(job.id)
            return
        except asyncio.CancelledError:
            self.finalize_cancelled(job.id)
            raise
        except Exception as e:
            logger.exception(f"Start handler crashed for job {job.id}")
            self.fail(job.id, safe_error_message(e)[:2000])
            return

        with self._lock:
            leftover = self._running.get(job.id)
        if leftover is None:
            return
        if leftover.status is JobStatus.CANCELLED:
            self.finalize_cancelled(job.id)
        else:
            logger.warning(f"Start handler returned without finishing job {job.id}")

    def _find(self, job_id: str) -> Optional[Job]:
        job = self._running.get(job_id) or self._finished.get(job_id)
        if job is not None:
            return job
        return next((j for j in self._pending if j.id == job_id), None)

    # ── Completion notification ──────────────────────────────────

    def _notify_completed(self, job: Job) -> None:
        handler = self._on_job_completed
        if handler is None:
            return
        try:
            outcome = handler(job)
            if inspect.isawaitable(outcome) and not self._call_in_loop(_spawn_notification, outcome):
                logger.error(f"Job completion handler for job {job.id} needs an event loop")
        except Exception as e:
            logger.error(f"Job completion handler failed for job {job.id}: {e}")

    # ── Recovery & housekeeping ──────────────────────────────────

    async def load_finished(self) -> int:
        """Pull terminal jobs from the store into memory after a restart.

        Pending and running records are left to restore_incomplete().
        """
        if self._store is None:
            return 0
        try:
            stored = await self._store.list_jobs()
        except Exception as e:
            logger.error(f"Error loading jobs from store: {e}")
            return 0

        loaded = 0
        with self._lock:
            for job in stored:
                if job.is_terminal and self._find(job.id) is None:
                    self._finished[job.id] = job
                    loaded += 1
        logger.info(f"Loaded {loaded} finished job(s) from store")
        return loaded

    async def restore_incomplete(self) -> dict[str, str]:
        """Resubmit jobs the store still lists as pending or running.

        Each stale record is closed out as cancelled so a later restore does
        not pick it up again. Returns {old_id: new_id}.
        """
        if self._store is None:
            return {}
        try:
            stored = await self._store.list_jobs()
        except Exception as e:
            logger.error(f"Error loading jobs from store: {e}")
            return {}

        restored = {}
        for old in stored:
            if old.status not in (JobStatus.PENDING, JobStatus.RUNNING):
                continue
            with self._lock:
                if self._find(old.id) is not None:
                    continue
            new_id = self.submit(old.kind, old.input, old.target_count)
            old.status = JobStatus.CANCELLED
            old.completed_at = self._clock()
            with self._lock:
                self._persist(old)
            restored[old.id] = new_id
            logger.info(f"Restored job {old.id} -> new ID: {new_id}")
        if restored:
            logger.warning(f"Restored {len(restored)} incomplete job(s) from store")
        return restored

    def evict_finished(self, hours_old: float = 24) -> int:
        """Drop terminal jobs finished more than ``hours_old`` hours ago from memory."""
        cutoff = self._clock() - timedelta(hours=hours_old)
        with self._lock:
            stale = [
                job_id for job_id, job in self._finished.items()
                if job.completed_at is not None and job.completed_at < cutoff
            ]
            for job_id in stale:
                del self._finished[job_id]
        if stale:
            logger.info(f"Evicted {len(stale)} finished job(s) older than {hours_old}h")
        return len(stale)

    async def flush(self) -> None:
        """Wait for all scheduled store writes."""
        while self._persist_tasks:
            await asyncio.gather(*list(self._persist_tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel running job tasks and drain pending writes."""
        for task in list(self._job_tasks):
            task.cancel()
        if self._job_tasks:
            await asyncio.gather(*list(self._job_tasks), return_exceptions=True)
        await self.flush()

    # ── Persistence ──────────────────────────────────────────────

    def _persist(self, job: Job) -> None:
        if self._store is None:
            return
        snapshot = job.snapshot()
        if not self._call_in_loop(self._spawn_save, snapshot):
            logger.debug(f"No event loop; job {job.id} not persisted ({job.status.value})")

    def _spawn_save(self, snapshot: Job) -> None:
        task = asyncio.get_running_loop().create_task(self._save(snapshot))
        self._persist_tasks.add(task)
        task.add_done_callback(self._persist_tasks.discard)

    async def _save(self, job: Job) -> None:
        if self._persist_lock is None:
            self._persist_lock = asyncio.Lock()
        async with self._persist_lock:
            try:
                await self._store.save_job(job)
            except Exception as e:
                logger.error(f"Failed to persist job {job.id} ({job.status.value}): {e}")


def _running_loop() -> Optional[asyncio.AbstractEventLoop]:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


def _spawn_notification(outcome) -> None:
    task = asyncio.ensure_future(outcome)
    task.add_done_callback(_log_handler_failure)


def _log_handler_failure(task: asyncio.Future) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error(f"Job completion handler failed: {exc}")
