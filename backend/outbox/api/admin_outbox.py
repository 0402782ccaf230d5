"""Admin routes for inspecting the outbox and remediating dead jobs."""
from typing import List, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status

from outbox.api.deps import get_job_store
from outbox.models.outbox_job import JobStatus
from outbox.schemas.outbox_job import OutboxJobResponse, OutboxStatsResponse
from outbox.services.job_store import SqlAlchemyJobStore

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.get("", response_model=List[OutboxJobResponse])
async def list_outbox_jobs(
    status_filter: Optional[JobStatus] = Query(None, alias="status"),
    job_type: Optional[str] = None,
    limit: int = Query(100, ge=1, le=200),
    store: SqlAlchemyJobStore = Depends(get_job_store),
):
    """List outbox jobs, newest first, optionally filtered by status and type."""
    return await store.list_jobs(
        status=status_filter.value if status_filter else None,
        job_type=job_type,
        limit=limit,
    )


@router.get("/stats", response_model=OutboxStatsResponse)
async def outbox_stats(store: SqlAlchemyJobStore = Depends(get_job_store)):
    counts = await store.count_by_status()
    known = {s.value: counts.get(s.value, 0) for s in JobStatus}
    return OutboxStatsResponse(**known, total=sum(counts.values()))


@router.get("/{job_id}", response_model=OutboxJobResponse)
async def get_outbox_job(job_id: UUID, store: SqlAlchemyJobStore = Depends(get_job_store)):
    job = await store.get(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return job


@router.post("/{job_id}/retry", response_model=OutboxJobResponse, status_code=status.HTTP_201_CREATED)
async def retry_dead_job(job_id: UUID, store: SqlAlchemyJobStore = Depends(get_job_store)):
    """Re-enqueue a dead job as a fresh pending copy; the dead row is left untouched."""
    job = await store.get(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    if job.status != JobStatus.DEAD.value:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Only dead jobs can be retried (job is {job.status})",
        )

    copy = await store.enqueue(
        job.job_type,
        job.payload,
        max_attempts=job.max_attempts,
        retry_of=job.job_id,
        validate=False,
    )
    logger.info("Dead outbox job re-enqueued", job_id=str(job.job_id), new_job_id=str(copy.job_id))
    return copy
