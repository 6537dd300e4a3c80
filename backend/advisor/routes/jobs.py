"""Jobs API - submit, list, check status, fetch results, cancel background jobs."""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response

from advisor.dependencies import get_runtime
from advisor.schemas.job import (
    CancelResponse,
    JobResponse,
    JobSubmitted,
    JobSummary,
    QuerySubmitRequest,
    QueueStatisticsResponse,
)
from advisor.services.jobs import JobStatus
from advisor.services.runtime import Runtime

router = APIRouter(prefix="/api/jobs", tags=["jobs"])


@router.post("/query", response_model=JobSubmitted, status_code=202)
async def submit_query(
    body: QuerySubmitRequest,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    """Submit a query-models job.

    Returns immediately with the job id, unless waitForCompletion is set: then
    the job is polled until it finishes (200 with the result) or the wait
    times out (202 with the current status).
    """
    params = body.model_dump(
        exclude={"estimated_total_ms", "wait_for_completion"}, exclude_none=True,
    )
    job_id, model_count = runtime.submit_query(params, body.estimated_total_ms)
    if body.wait_for_completion:
        job = await runtime.wait_for_job(job_id)
    else:
        job = runtime.scheduler.peek(job_id)
    if job.is_terminal:
        response.status_code = 200
    return JobSubmitted(
        id=job_id,
        status=job.status.value,
        model_count=model_count,
        estimated_total_ms=job.estimated_total_ms,
        progress=job.progress,
        result=job.result,
        error=job.error,
    )


@router.get("", response_model=list[JobSummary])
async def list_jobs(
    status: Optional[JobStatus] = Query(None),
    runtime: Runtime = Depends(get_runtime),
):
    """List in-memory jobs, optionally filtered by status."""
    return [job.summary() for job in runtime.scheduler.list_jobs(status)]


@router.get("/stats", response_model=QueueStatisticsResponse)
async def queue_stats(runtime: Runtime = Depends(get_runtime)):
    """Counts per status and the concurrency cap."""
    return runtime.scheduler.statistics().to_dict()


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(job_id: str, runtime: Runtime = Depends(get_runtime)):
    """Get job status, progress log and time estimates."""
    job = await runtime.scheduler.get_status(job_id)
    if not job:
        raise HTTPException(404, "Job not found")
    return JobResponse.model_validate(job)


@router.get("/{job_id}/result")
async def get_job_result(job_id: str, runtime: Runtime = Depends(get_runtime)):
    """Result payload of a completed job."""
    job = await runtime.scheduler.get_status(job_id)
    if not job:
        raise HTTPException(404, "Job not found")
    if job.status is JobStatus.FAILED:
        raise HTTPException(409, f"Job failed: {job.error}")
    if job.status is not JobStatus.COMPLETED:
        raise HTTPException(409, f"Job is {job.status.value} ({job.progress}%)")
    return job.result


@router.post("/{job_id}/cancel", response_model=CancelResponse)
async def cancel_job(job_id: str, runtime: Runtime = Depends(get_runtime)):
    """Cancel a pending or running job."""
    job = runtime.scheduler.peek(job_id) or await runtime.scheduler.get_status(job_id)
    if not job:
        raise HTTPException(404, "Job not found")
    if job.status is JobStatus.CANCELLED:
        return CancelResponse(id=job_id, status=job.status.value)
    if not runtime.scheduler.cancel(job_id):
        raise HTTPException(400, f"Cannot cancel job in '{job.status.value}' state")
    return CancelResponse(id=job_id, status=JobStatus.CANCELLED.value)
