"""Job worker: the scheduler's single start handler.

Routes each promoted job to the handler registered for its type, then
reports the outcome back to the scheduler. Handlers return a JSON-able
result; raising InvalidJobInputError (or anything else) fails the job,
raising JobCancelledError retires it as cancelled.
"""
import logging
from typing import Any, Awaitable, Callable, Dict

from advisor.services.cancellation import CancellationToken, JobCancelledError
from advisor.services.job_scheduler import JobScheduler
from advisor.services.jobs import Job, safe_error_message

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 2000

ProgressCallback = Callable[[float, str], None]
JobHandler = Callable[[Job, CancellationToken, ProgressCallback], Awaitable[Any]]


class InvalidJobInputError(ValueError):
    """The job input cannot be processed; no backend call was attempted."""
    pass


class JobWorker:
    def __init__(self, scheduler: JobScheduler):
        self.scheduler = scheduler
        self._handlers: Dict[str, JobHandler] = {}
        scheduler.register_start_handler(self.run_job)

    def register(self, job_type: str, handler: JobHandler) -> None:
        self._handlers[job_type] = handler

    def handler(self, job_type: str):
        """Decorator form of register()."""
        def decorator(func):
            self.register(job_type, func)
            return func
        return decorator

    @property
    def job_types(self) -> list[str]:
        return sorted(self._handlers)

    async def run_job(self, job: Job, token: CancellationToken) -> None:
        handler = self._handlers.get(job.kind)
        if handler is None:
            self.scheduler.fail(job.id, f"Unknown job type: {job.kind}")
            return

        def progress(percentage: float, message: str) -> None:
            if not token.cancelled:
                self.scheduler.update_progress(job.id, percentage, message)

        try:
            result = await handler(job, token, progress)
        except JobCancelledError:
            logger.info(f"Job {job.id} stopped after cancellation")
            self.scheduler.finalize_cancelled(job.id)
            return
        except Exception as e:
            logger.error(f"Job {job.id} failed: {e}")
            self.scheduler.fail(job.id, safe_error_message(e)[:MAX_ERROR_LENGTH])
            return

        # complete() keeps the cancelled status if the flag flipped meanwhile
        self.scheduler.complete(job.id, result)
