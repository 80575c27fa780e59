from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, status

from opscord.core.security import require_job_secret
from opscord.schemas.jobs import (
    JobCreateRequest,
    JobMaintenanceOut,
    JobOut,
    JobProcessOut,
    JobProcessRequest,
    JobResultOut,
    JobStatsOut,
    JobStatusOut,
    ProcessedJobOut,
)
from opscord.services.job_processor import ProcessOutcome, get_job_processor
from opscord.services.repository import RepositoryConflictError, RepositoryUnavailableError

router = APIRouter(dependencies=[Depends(require_job_secret)])


def _processed_job(outcome: ProcessOutcome) -> ProcessedJobOut:
    job = outcome.job or {}
    return ProcessedJobOut(
        id=job["id"],
        job_id=job["job_id"],
        job_type=job["job_type"],
        status=job["status"],
        error=outcome.result.error if outcome.result else None,
    )


@router.post("", response_model=JobOut, status_code=status.HTTP_201_CREATED)
async def create_job(payload: JobCreateRequest, processor=Depends(get_job_processor)) -> JobOut:
    try:
        job = await processor.create_job(
            payload.job_type,
            payload.payload,
            priority=payload.priority,
            max_attempts=payload.max_attempts,
            scheduled_at=payload.scheduled_at,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return JobOut(**job)


@router.post("/process", response_model=JobProcessOut)
async def process_jobs(
    payload: JobProcessRequest | None = None,
    processor=Depends(get_job_processor),
) -> JobProcessOut:
    request = payload or JobProcessRequest()
    try:
        if request.mode == "single":
            outcome = await processor.process_next(request.job_types)
            if not outcome.processed:
                return JobProcessOut(processed=0)
            result = outcome.result
            return JobProcessOut(
                processed=1,
                succeeded=1 if result and result.success else 0,
                failed=0 if result and result.success else 1,
                jobs=[_processed_job(outcome)],
                result=JobResultOut(success=result.success, data=result.data, error=result.error) if result else None,
            )

        batch = await processor.process_batch(max_jobs=request.max_jobs, job_types=request.job_types)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return JobProcessOut(
        processed=batch.processed,
        succeeded=batch.succeeded,
        failed=batch.failed,
        jobs=[_processed_job(outcome) for outcome in batch.results],
    )


@router.post("/reclaim-stale", response_model=JobMaintenanceOut)
async def reclaim_stale_jobs(
    limit: int = Query(default=100, ge=1, le=1000),
    processor=Depends(get_job_processor),
) -> JobMaintenanceOut:
    try:
        affected = await processor.reclaim_stale(limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return JobMaintenanceOut(affected=affected)


@router.post("/retry-failed", response_model=JobMaintenanceOut)
async def retry_failed_jobs(
    limit: int = Query(default=100, ge=1, le=1000),
    max_retries: int | None = Query(default=None, ge=1, le=100),
    processor=Depends(get_job_processor),
) -> JobMaintenanceOut:
    try:
        affected = await processor.retry_failed(max_retries=max_retries, limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return JobMaintenanceOut(affected=affected)


@router.post("/cleanup", response_model=JobMaintenanceOut)
async def cleanup_jobs(
    older_than_days: int = Query(default=30, ge=1, le=365),
    processor=Depends(get_job_processor),
) -> JobMaintenanceOut:
    try:
        affected = await processor.cleanup(older_than_days=older_than_days)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return JobMaintenanceOut(affected=affected)


@router.get("/status", response_model=JobStatusOut | JobOut)
async def job_status(
    id: str | None = Query(default=None),
    job_id: str | None = Query(default=None),
    processor=Depends(get_job_processor),
) -> JobStatusOut | JobOut:
    try:
        if id or job_id:
            job = await processor.get_job(id) if id else await processor.get_job_by_job_id(job_id)
            if job is None:
                raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="job not found")
            return JobOut(**job)

        stats = await processor.stats()
        recent_jobs = await processor.recent_jobs(limit=20)
        recent_failures = await processor.recent_failures(limit=10)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return JobStatusOut(
        queue=JobStatsOut(**stats),
        recent_jobs=[JobOut(**job) for job in recent_jobs],
        recent_failures=[JobOut(**job) for job in recent_failures],
        timestamp=datetime.now(timezone.utc),
    )
