import logging

from outbox.errors import OutboxStoreError
from outbox.services.outbox_worker import run_outbox_once

logger = logging.getLogger(__name__)


async def drain_outbox_job() -> None:
    """APScheduler entry point; a store outage is logged and retried on the next tick."""
    try:
        await run_outbox_once()
    except OutboxStoreError as e:
        logger.error("Scheduled outbox drain aborted: %s", e)
