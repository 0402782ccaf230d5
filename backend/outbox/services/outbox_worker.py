"""Time-bounded drain of the outbox table.

One invocation claims jobs one at a time, oldest first, runs each job's
handler and records the outcome, until the queue is empty or the time
budget is spent. Invocations may overlap; they coordinate only through the
job store's conditional updates.

Job state machine::

    pending --claim--> processing --ok------------------> completed
                                  --fail, attempts left--> pending
                                  --fail, exhausted------> dead
"""
import enum
import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from outbox.config import Settings, get_settings
from outbox.errors import OutboxStoreError
from outbox.handlers import HandlerRegistry, HandlerResult, JobContext, registry as default_registry
from outbox.metrics import CLAIM_RACE_LOST, DLQ_SIZE, DRAIN_DURATION, JOB_FAILURE, JOB_SUCCESS
from outbox.models.outbox_job import JobStatus, OutboxJob
from outbox.services.job_store import JobStore, SqlAlchemyJobStore, effective_max_attempts, utcnow

logger = logging.getLogger(__name__)


class ClaimStatus(str, enum.Enum):
    CLAIMED = "claimed"
    EMPTY = "empty"
    RACE_LOST = "race_lost"


@dataclass
class ClaimOutcome:
    status: ClaimStatus
    job: Optional[OutboxJob] = None


@dataclass
class DrainSummary:
    processed: int = 0
    failed: int = 0
    dead_lettered: int = 0
    races_lost: int = 0
    outcomes_lost: int = 0
    duration_ms: int = 0
    stopped_reason: str = "empty"

    def as_dict(self) -> dict:
        return asdict(self)


class OutboxWorker:
    def __init__(
        self,
        store: JobStore,
        registry: HandlerRegistry = default_registry,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
        now: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.registry = registry
        self.settings = settings or get_settings()
        self.clock = clock
        self.now = now

    def effective_max_attempts(self, job: OutboxJob) -> int:
        return effective_max_attempts(
            job.max_attempts,
            self.settings.outbox_default_max_attempts,
            self.settings.outbox_hard_max_attempts,
        )

    def retry_at(self, attempts: int) -> Optional[datetime]:
        """When a failed job becomes claimable again; None means immediately."""
        backoff = self.settings.outbox_retry_backoff_seconds
        if backoff <= 0:
            return None
        return self.now() + timedelta(seconds=backoff * 2 ** max(attempts - 1, 0))

    async def claim_next(self) -> ClaimOutcome:
        """Select the oldest claimable job and try to take its lease.

        Store errors propagate; losing the race to another worker does not.
        """
        ref = await self.store.select_next_claimable(now=self.now())
        if ref is None:
            return ClaimOutcome(ClaimStatus.EMPTY)

        job = await self.store.try_claim(ref.job_id, expected_status=ref.status, now=self.now())
        if job is None:
            CLAIM_RACE_LOST.inc()
            logger.info("Lost claim race for outbox job %s", ref.job_id)
            return ClaimOutcome(ClaimStatus.RACE_LOST)

        if ref.status == JobStatus.PROCESSING.value:
            logger.warning(
                "Reclaimed outbox job %s (%s) after its lease expired; attempt %d",
                job.job_id, job.job_type, job.attempts,
            )
        else:
            logger.info("Claimed outbox job %s (%s); attempt %d", job.job_id, job.job_type, job.attempts)
        return ClaimOutcome(ClaimStatus.CLAIMED, job)

    async def process(self, job: OutboxJob) -> Optional[JobStatus]:
        """Run a claimed job's handler, record the outcome and return the job's new status.

        Returns None when the outcome was not written because the job no
        longer belongs to this attempt.
        """
        context = JobContext(job_id=job.job_id, job_type=job.job_type, attempt=job.attempts)
        outcome = await self.registry.dispatch(job.job_type, job.payload, context)
        return await self.apply_outcome(job, outcome)

    async def apply_outcome(self, job: OutboxJob, outcome: HandlerResult) -> Optional[JobStatus]:
        """Move a processing job to completed, back to pending, or to dead."""
        if outcome.ok:
            written = await self.store.mark_completed(
                job.job_id, result=outcome.result, attempt=job.attempts, now=self.now()
            )
            if not written:
                return self._outcome_lost(job, JobStatus.COMPLETED)
            JOB_SUCCESS.labels(job_type=job.job_type).inc()
            logger.info("Outbox job %s (%s) completed", job.job_id, job.job_type)
            return JobStatus.COMPLETED

        error = outcome.error or "unknown error"
        max_attempts = self.effective_max_attempts(job)
        if job.attempts >= max_attempts:
            if not await self.store.mark_dead(job.job_id, error, attempt=job.attempts, now=self.now()):
                return self._outcome_lost(job, JobStatus.DEAD)
            JOB_FAILURE.labels(job_type=job.job_type, outcome="dead").inc()
            logger.error(
                "Outbox job %s (%s) dead-lettered after %d/%d attempts: %s",
                job.job_id, job.job_type, job.attempts, max_attempts, error,
            )
            return JobStatus.DEAD

        retry_at = self.retry_at(job.attempts)
        written = await self.store.mark_retry(
            job.job_id, error, retry_at=retry_at, attempt=job.attempts, now=self.now()
        )
        if not written:
            return self._outcome_lost(job, JobStatus.PENDING)
        JOB_FAILURE.labels(job_type=job.job_type, outcome="retry").inc()
        logger.warning(
            "Outbox job %s (%s) failed attempt %d/%d, will retry%s: %s",
            job.job_id, job.job_type, job.attempts, max_attempts,
            f" after {retry_at.isoformat()}" if retry_at else "", error,
        )
        return JobStatus.PENDING

    def _outcome_lost(self, job: OutboxJob, intended: JobStatus) -> None:
        logger.warning(
            "Outcome %s for outbox job %s (%s) attempt %d not recorded; the job was reclaimed or changed",
            intended.value, job.job_id, job.job_type, job.attempts,
        )
        return None

    async def drain(self, max_duration: Optional[float] = None) -> DrainSummary:
        """Process jobs until the queue is empty or ``max_duration`` seconds have passed.

        The budget is only checked before each claim; a handler that is
        already running is never interrupted.
        """
        budget = self.settings.outbox_max_duration_seconds if max_duration is None else max_duration
        start = self.clock()
        summary = DrainSummary()

        summary.dead_lettered += await self.store.reap_abandoned(now=self.now())

        while True:
            if self.clock() - start >= budget:
                summary.stopped_reason = "budget"
                break

            claim = await self.claim_next()
            if claim.status is ClaimStatus.EMPTY:
                summary.stopped_reason = "empty"
                break
            if claim.status is ClaimStatus.RACE_LOST:
                summary.races_lost += 1
                continue

            new_status = await self.process(claim.job)
            if new_status is None:
                summary.outcomes_lost += 1
            elif new_status is JobStatus.COMPLETED:
                summary.processed += 1
            else:
                summary.failed += 1
                if new_status is JobStatus.DEAD:
                    summary.dead_lettered += 1

        elapsed = self.clock() - start
        summary.duration_ms = int(elapsed * 1000)
        DRAIN_DURATION.labels(stopped_reason=summary.stopped_reason).observe(elapsed)
        await self._refresh_dlq_gauge()

        logger.info(
            "Outbox drain finished (%s): processed=%d failed=%d dead=%d lost=%d duration_ms=%d",
            summary.stopped_reason, summary.processed, summary.failed,
            summary.dead_lettered, summary.outcomes_lost, summary.duration_ms,
        )
        return summary

    async def _refresh_dlq_gauge(self) -> None:
        try:
            counts = await self.store.count_by_status()
        except OutboxStoreError as e:
            logger.warning("Could not refresh dead-letter gauge: %s", e)
            return
        DLQ_SIZE.set(counts.get(JobStatus.DEAD.value, 0))


def build_worker() -> OutboxWorker:
    return OutboxWorker(SqlAlchemyJobStore())


async def run_outbox_once(max_duration: Optional[float] = None) -> DrainSummary:
    """Drain the outbox once with the default store and handlers."""
    return await build_worker().drain(max_duration=max_duration)
