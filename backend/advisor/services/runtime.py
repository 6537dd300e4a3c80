"""Wires scheduler, worker, backend client and store together.

The FastAPI lifespan builds one Runtime per process; tests build their own
with fakes for the client and store.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from advisor.config import Settings
from advisor.services.backend_client import BackendClient, OllamaClient
from advisor.services.circuit_breaker import CircuitBreaker
from advisor.services.fanout import QueryModelsExecutor
from advisor.services.job_scheduler import JobScheduler
from advisor.services.job_worker import JobWorker
from advisor.services.jobs import QUERY_MODELS, Job, JobStatus

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    settings: Settings
    scheduler: JobScheduler
    worker: JobWorker
    client: BackendClient
    breaker: Optional[CircuitBreaker]
    store: object = None

    def submit_query(self, params: dict, estimated_total_ms: Optional[float] = None) -> tuple[str, int]:
        models = params.get("models") or self.settings.model_list
        job_id = self.scheduler.submit(
            QUERY_MODELS, params, target_count=len(models),
            estimated_total_ms=estimated_total_ms,
        )
        return job_id, len(models)

    async def wait_for_job(self, job_id: str) -> Optional[Job]:
        """Poll until the job is terminal or the wait timeout passes.

        Returns the last snapshot seen, which may still be running.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.JOB_WAIT_TIMEOUT_SECONDS
        while True:
            job = await self.scheduler.get_status(job_id)
            if job is None or job.is_terminal or loop.time() >= deadline:
                return job
            await asyncio.sleep(self.settings.JOB_WAIT_POLL_SECONDS)


def log_job_finished(job: Job) -> None:
    duration = ""
    if job.started_at and job.completed_at:
        duration = f" in {(job.completed_at - job.started_at).total_seconds():.1f}s"
    if job.status is JobStatus.FAILED:
        logger.warning(f"Job {job.id} failed{duration}: {job.error}")
    else:
        logger.info(f"Job {job.id} finished as {job.status.value}{duration}")


def build_runtime(
    cfg: Settings,
    *,
    store=None,
    client: Optional[BackendClient] = None,
) -> Runtime:
    breaker = None
    if client is None:
        breaker = CircuitBreaker(
            cfg.BREAKER_FAILURE_THRESHOLD,
            cfg.BREAKER_RESET_TIMEOUT_MS / 1000,
            name="ollama",
        )
        client = OllamaClient(
            cfg.OLLAMA_API_URL, breaker=breaker, retry_config=cfg.retry_config(),
        )
    else:
        breaker = getattr(client, "breaker", None)

    scheduler = JobScheduler(
        cfg.MAX_CONCURRENT_JOBS,
        store=store,
        on_job_completed=log_job_finished,
        default_estimate_ms=cfg.DEFAULT_JOB_ESTIMATE_MS,
    )
    worker = JobWorker(scheduler)
    worker.register(QUERY_MODELS, QueryModelsExecutor(
        client,
        cfg.model_list,
        system_prompts=cfg.MODEL_SYSTEM_PROMPTS,
        chat_models=cfg.chat_model_list,
    ))
    return Runtime(
        settings=cfg, scheduler=scheduler, worker=worker,
        client=client, breaker=breaker, store=store,
    )


async def cleanup_loop(runtime: Runtime) -> None:
    """Periodically evict old finished jobs from memory and the store."""
    cfg = runtime.settings
    while True:
        await asyncio.sleep(cfg.CLEANUP_INTERVAL_SECONDS)
        try:
            runtime.scheduler.evict_finished(cfg.JOB_RETENTION_HOURS)
            if runtime.store is not None:
                await runtime.store.delete_jobs_older_than(cfg.JOB_RETENTION_HOURS)
        except Exception as e:
            logger.error(f"Job cleanup error: {e}")
