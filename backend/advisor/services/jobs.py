"""In-memory job entity used by the scheduler.

These are plain dataclasses owned by the JobScheduler. Anything outside the
scheduler only ever sees deep copies (see JobScheduler.peek / get_status).
Durable copies get written through the JobStore port.
"""
import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

QUERY_MODELS = "query-models"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_job_id() -> str:
    return str(uuid.uuid4())


def safe_error_message(e: BaseException, fallback: str = "Job interrupted") -> str:
    """Human-readable text for job.error.

    Timeouts and cancellation races often stringify to "", in which case the
    exception class name plus ``fallback`` is used.
    """
    msg = str(e).strip()
    if not msg:
        msg = f"{type(e).__name__}: {fallback}"
    return msg


@dataclass
class ProgressEntry:
    """One line of a job's progress log."""
    timestamp: datetime
    percentage: int
    message: str


@dataclass
class Job:
    """A unit of asynchronous, trackable work."""
    id: str
    kind: str
    input: dict
    target_count: int
    estimated_total_ms: float
    estimated_remaining_ms: float
    status: JobStatus = JobStatus.PENDING
    progress: int = 0
    created_at: datetime = field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    result: Any = None
    error: Optional[str] = None
    progress_log: list[ProgressEntry] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def snapshot(self) -> "Job":
        """Detached copy safe to hand to callers."""
        return copy.deepcopy(self)

    def summary(self) -> dict:
        """Short view used by listings (no result payload)."""
        return {
            "id": self.id,
            "kind": self.kind,
            "status": self.status.value,
            "progress": self.progress,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "progress_updates": len(self.progress_log),
            "target_count": self.target_count,
            "error": self.error,
        }
