from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, status

from opscord.core.security import require_job_secret
from opscord.schemas.queue import (
    QueueCountsOut,
    QueueDrainOut,
    QueueEnqueueRequest,
    QueueItemOut,
    QueueMaintenanceOut,
    QueueStatusOut,
)
from opscord.services.repository import RepositoryUnavailableError
from opscord.services.retry_queue import get_retry_queue

router = APIRouter(dependencies=[Depends(require_job_secret)])


@router.post("", response_model=QueueItemOut, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_item(payload: QueueEnqueueRequest, retry_queue=Depends(get_retry_queue)) -> QueueItemOut:
    try:
        item = await retry_queue.enqueue(
            payload.organization_id,
            payload.source,
            payload.event_type,
            payload.payload,
        )
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return QueueItemOut(**item)


@router.post("/drain", response_model=QueueDrainOut)
async def drain_queue(
    batch_size: int = Query(default=10, ge=1, le=100),
    retry_queue=Depends(get_retry_queue),
) -> QueueDrainOut:
    try:
        summary = await retry_queue.drain(batch_size)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return QueueDrainOut(
        claimed=summary.claimed,
        completed=summary.completed,
        retried=summary.retried,
        failed=summary.failed,
        skipped=summary.skipped,
    )


@router.post("/reclaim-stale", response_model=QueueMaintenanceOut)
async def reclaim_stale_items(
    limit: int = Query(default=100, ge=1, le=1000),
    retry_queue=Depends(get_retry_queue),
) -> QueueMaintenanceOut:
    try:
        reclaimed = await retry_queue.reclaim_stale(limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return QueueMaintenanceOut(reclaimed=reclaimed)


@router.get("/status", response_model=QueueStatusOut)
async def queue_status(
    failures: int = Query(default=10, ge=0, le=100),
    retry_queue=Depends(get_retry_queue),
) -> QueueStatusOut:
    try:
        counts = await retry_queue.stats()
        recent_failures = await retry_queue.recent_failures(limit=failures) if failures else []
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc
    return QueueStatusOut(
        queue=QueueCountsOut(**counts),
        recent_failures=[QueueItemOut(**item) for item in recent_failures],
        timestamp=datetime.now(timezone.utc),
    )
