"""Batch job routes."""

from fastapi import APIRouter, HTTPException, Query

from overseer_credits.batch import BatchJobState, BatchProcessor, JobStatus
from overseer_credits.dependencies import BatchProcessorDep, CurrentUserId
from overseer_credits.schemas import (
    BatchJobListResponse,
    BatchJobResponse,
    CreateBatchJobRequest,
    ItemResultResponse,
    JobResultsResponse,
)

router = APIRouter(prefix="/batch", tags=["batch"])

JOB_NOT_FOUND = "Job not found"


async def _get_owned_job(
    processor: BatchProcessor, job_id: str, user_id: str
) -> BatchJobState:
    """Load a job, hiding other users' jobs behind a 404."""
    job = await processor.get_job_status(job_id)
    if job is None or job.user_id != user_id:
        raise HTTPException(status_code=404, detail=JOB_NOT_FOUND)
    return job


@router.post("/jobs", response_model=BatchJobResponse, status_code=201)
async def create_job(
    data: CreateBatchJobRequest,
    user_id: CurrentUserId,
    processor: BatchProcessorDep,
) -> BatchJobResponse:
    """Submit items for background processing.

    Credits for the whole batch are reserved up front and reconciled as items
    complete.
    """
    job = await processor.create_job(user_id, data.to_job_request())
    if job is None:
        raise HTTPException(
            status_code=400,
            detail="Failed to create job. Insufficient credits or invalid parameters.",
        )
    return BatchJobResponse.model_validate(job)


@router.get("/jobs", response_model=BatchJobListResponse)
async def list_jobs(
    user_id: CurrentUserId,
    processor: BatchProcessorDep,
    status: JobStatus | None = Query(default=None),
    limit: int = Query(default=10, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> BatchJobListResponse:
    """List the user's jobs, newest first."""
    page = await processor.list_jobs(user_id, status=status, limit=limit, offset=offset)
    return BatchJobListResponse(
        jobs=[BatchJobResponse.model_validate(job) for job in page.jobs],
        total=page.total,
    )


@router.get("/jobs/{job_id}", response_model=BatchJobResponse)
async def get_job(
    job_id: str,
    user_id: CurrentUserId,
    processor: BatchProcessorDep,
) -> BatchJobResponse:
    job = await _get_owned_job(processor, job_id, user_id)
    return BatchJobResponse.model_validate(job)


@router.delete("/jobs/{job_id}", response_model=BatchJobResponse)
async def cancel_job(
    job_id: str,
    user_id: CurrentUserId,
    processor: BatchProcessorDep,
) -> BatchJobResponse:
    """Cancel a pending or processing job and release its reservation."""
    await _get_owned_job(processor, job_id, user_id)
    if not await processor.cancel_job(job_id, user_id):
        raise HTTPException(status_code=400, detail="Job cannot be canceled")
    job = await _get_owned_job(processor, job_id, user_id)
    return BatchJobResponse.model_validate(job)


@router.get("/jobs/{job_id}/results", response_model=JobResultsResponse)
async def get_job_results(
    job_id: str,
    user_id: CurrentUserId,
    processor: BatchProcessorDep,
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
) -> JobResultsResponse:
    """Outputs of the job's successful items, in submission order."""
    await _get_owned_job(processor, job_id, user_id)
    page = await processor.get_job_results(job_id, limit=limit, offset=offset)
    return JobResultsResponse(
        results=[ItemResultResponse.model_validate(result) for result in page.results],
        total=page.total,
    )
