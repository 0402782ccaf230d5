"""Cron trigger for the outbox worker.

Point the external scheduler at ``POST /api/outbox/run`` with the
``X-Cron-Secret`` header (checked by SharedSecretMiddleware), e.g. every ten
minutes.
"""
import structlog
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from outbox.api.deps import get_outbox_worker
from outbox.errors import OutboxStoreError
from outbox.schemas.outbox_job import OutboxRunResponse
from outbox.services.outbox_worker import OutboxWorker

logger = structlog.get_logger(__name__)

router = APIRouter()


@router.post("/run", response_model=OutboxRunResponse)
async def run_outbox(worker: OutboxWorker = Depends(get_outbox_worker)):
    """Drain the outbox until it is empty or the time budget is spent."""
    logger.info("Starting outbox processing")
    try:
        summary = await worker.drain()
    except OutboxStoreError as e:
        logger.error("Outbox worker failed", error=str(e))
        return JSONResponse(status_code=500, content={"error": "Outbox worker failed"})

    return OutboxRunResponse(
        success=True,
        processed=summary.processed,
        failed=summary.failed,
        duration_ms=summary.duration_ms,
    )
