from datetime import datetime, timedelta, timezone

import pytest
from pydantic import BaseModel, ConfigDict

from factories import fetch_job, insert_job, insert_jobs_in_order
from outbox.config import Settings
from outbox.errors import OutboxStoreError
from outbox.handlers import HandlerRegistry
from outbox.models.outbox_job import JobStatus
from outbox.schemas.payloads import JobType
from outbox.services.job_store import ABANDONED_ERROR, SqlAlchemyJobStore
from outbox.services.outbox_worker import ClaimStatus, OutboxWorker


class AnyPayload(BaseModel):
    model_config = ConfigDict(extra="allow")


class TickingClock:
    """Monotonic clock that advances ``step`` seconds every time it is read."""

    def __init__(self, step: float):
        self.step = step
        self.value = 0.0

    def __call__(self) -> float:
        current = self.value
        self.value += self.step
        return current


def make_registry(ok: bool = True, error: str = "SMTP timeout") -> HandlerRegistry:
    registry = HandlerRegistry()
    calls = []

    @registry.register(JobType.SEND_OFFER_EMAIL, AnyPayload)
    async def handler(payload, context):
        calls.append(context)
        if not ok:
            raise RuntimeError(error)
        return {"sent": 1}

    registry.calls = calls
    return registry


def make_worker(store, registry, **overrides) -> OutboxWorker:
    clock = overrides.pop("clock", None)
    settings = Settings(**overrides)
    if clock is None:
        return OutboxWorker(store, registry=registry, settings=settings)
    return OutboxWorker(store, registry=registry, settings=settings, clock=clock)


class TestDrain:
    @pytest.mark.asyncio
    async def test_empty_queue(self, store):
        summary = await make_worker(store, make_registry()).drain()

        assert summary.processed == 0
        assert summary.failed == 0
        assert summary.stopped_reason == "empty"

    @pytest.mark.asyncio
    async def test_successful_job_is_completed(self, store):
        job_id = await insert_job()
        registry = make_registry()

        summary = await make_worker(store, registry).drain()

        assert summary.processed == 1
        assert summary.failed == 0
        job = await fetch_job(job_id)
        assert job.status == "completed"
        assert job.attempts == 1
        assert job.result == {"sent": 1}
        assert job.completed_at is not None
        assert registry.calls[0].job_id == job_id
        assert registry.calls[0].attempt == 1

    @pytest.mark.asyncio
    async def test_jobs_processed_oldest_first(self, store):
        ids = await insert_jobs_in_order(3)
        registry = make_registry()

        summary = await make_worker(store, registry).drain()

        assert summary.processed == 3
        assert [c.job_id for c in registry.calls] == ids

    @pytest.mark.asyncio
    async def test_failing_jobs_exhaust_default_attempts(self, store):
        ids = await insert_jobs_in_order(3)

        summary = await make_worker(store, make_registry(ok=False)).drain()

        assert summary.processed == 0
        assert summary.failed == 9
        assert summary.dead_lettered == 3
        for job_id in ids:
            job = await fetch_job(job_id)
            assert job.status == "dead"
            assert job.attempts == 3
            assert job.last_error == "SMTP timeout"
            assert job.locked_until is None

    @pytest.mark.asyncio
    async def test_unknown_job_type_with_single_attempt_goes_dead(self, store):
        job_id = await insert_job(job_type="foo", payload={}, max_attempts=1)

        summary = await make_worker(store, make_registry()).drain()

        assert summary.failed == 1
        job = await fetch_job(job_id)
        assert job.status == "dead"
        assert job.attempts == 1
        assert job.last_error == "Unknown job type: foo"

    @pytest.mark.asyncio
    async def test_job_dies_exactly_at_its_own_ceiling(self, store):
        job_id = await insert_job(max_attempts=2)

        summary = await make_worker(store, make_registry(ok=False)).drain()

        assert summary.failed == 2
        job = await fetch_job(job_id)
        assert job.status == "dead"
        assert job.attempts == 2

    @pytest.mark.asyncio
    async def test_per_job_ceiling_is_capped_by_hard_ceiling(self, store):
        job_id = await insert_job(max_attempts=10)

        summary = await make_worker(store, make_registry(ok=False)).drain()

        assert summary.failed == 5
        job = await fetch_job(job_id)
        assert job.status == "dead"
        assert job.attempts == 5

    @pytest.mark.asyncio
    async def test_retry_then_success(self, store):
        job_id = await insert_job()
        failures = iter([True, False])
        registry = HandlerRegistry()

        @registry.register(JobType.SEND_OFFER_EMAIL, AnyPayload)
        async def flaky(payload, context):
            if next(failures):
                raise ConnectionError("connection reset")
            return None

        summary = await make_worker(store, registry).drain()

        assert summary.processed == 1
        assert summary.failed == 1
        job = await fetch_job(job_id)
        assert job.status == "completed"
        assert job.attempts == 2
        # The last failure stays on the row for operators
        assert job.last_error == "connection reset"

    @pytest.mark.asyncio
    async def test_zero_budget_claims_nothing(self, store):
        job_id = await insert_job()

        summary = await make_worker(store, make_registry()).drain(max_duration=0)

        assert summary.processed == 0
        assert summary.stopped_reason == "budget"
        assert (await fetch_job(job_id)).status == "pending"

    @pytest.mark.asyncio
    async def test_budget_checked_before_each_claim(self, store):
        ids = await insert_jobs_in_order(3)
        worker = make_worker(store, make_registry(), clock=TickingClock(step=30))

        # Reads: start=0, check=30 (claim), check=60 (stop)
        summary = await worker.drain(max_duration=50)

        assert summary.processed == 1
        assert summary.stopped_reason == "budget"
        assert (await fetch_job(ids[0])).status == "completed"
        assert (await fetch_job(ids[1])).status == "pending"
        assert (await fetch_job(ids[2])).status == "pending"

    @pytest.mark.asyncio
    async def test_lost_race_moves_on_to_next_job(self, outbox_db):
        first, second = await insert_jobs_in_order(2)

        class RivalStore(SqlAlchemyJobStore):
            rival_claimed = False

            async def try_claim(self, job_id, expected_status="pending", now=None):
                if not self.rival_claimed:
                    # Another worker takes the lease between select and claim
                    self.rival_claimed = True
                    await super().try_claim(job_id, expected_status, now)
                return await super().try_claim(job_id, expected_status, now)

        registry = make_registry()
        summary = await make_worker(RivalStore(), registry).drain()

        assert summary.races_lost == 1
        assert summary.processed == 1
        assert [c.job_id for c in registry.calls] == [second]
        job = await fetch_job(first)
        assert job.status == "processing"
        assert job.attempts == 1

    @pytest.mark.asyncio
    async def test_unwritten_completion_is_not_counted(self, store):
        job_id = await insert_job()

        class ReclaimedStore(SqlAlchemyJobStore):
            async def mark_completed(self, job_id, result=None, attempt=None, now=None):
                return False

        summary = await make_worker(ReclaimedStore(), make_registry()).drain()

        assert summary.outcomes_lost == 1
        assert summary.processed == 0
        assert summary.failed == 0
        assert (await fetch_job(job_id)).status == "processing"

    @pytest.mark.asyncio
    async def test_unwritten_retry_is_not_counted(self, store):
        job_id = await insert_job()

        class ReclaimedStore(SqlAlchemyJobStore):
            async def mark_retry(self, job_id, error, retry_at=None, attempt=None, now=None):
                return False

        worker = make_worker(ReclaimedStore(), make_registry(ok=False))
        summary = await worker.drain()

        assert summary.outcomes_lost == 1
        assert summary.failed == 0
        assert summary.dead_lettered == 0
        job = await fetch_job(job_id)
        assert job.status == "processing"
        assert job.last_error is None

    @pytest.mark.asyncio
    async def test_store_outage_aborts_drain(self, store):
        class BrokenStore(SqlAlchemyJobStore):
            async def select_next_claimable(self, now=None):
                raise OutboxStoreError("OperationalError: database is locked")

        with pytest.raises(OutboxStoreError):
            await make_worker(BrokenStore(), make_registry()).drain()

    @pytest.mark.asyncio
    async def test_abandoned_final_attempt_is_dead_lettered(self, store):
        job_id = await insert_job(
            status="processing",
            attempts=3,
            locked_until=datetime.now(timezone.utc) - timedelta(minutes=1),
        )
        registry = make_registry()

        summary = await make_worker(store, registry).drain()

        assert summary.dead_lettered == 1
        assert registry.calls == []
        job = await fetch_job(job_id)
        assert job.status == "dead"
        assert job.last_error == ABANDONED_ERROR

    @pytest.mark.asyncio
    async def test_abandoned_job_with_attempts_left_is_rerun(self, store):
        job_id = await insert_job(
            status="processing",
            attempts=1,
            locked_until=datetime.now(timezone.utc) - timedelta(minutes=1),
        )

        summary = await make_worker(store, make_registry()).drain()

        assert summary.processed == 1
        job = await fetch_job(job_id)
        assert job.status == "completed"
        assert job.attempts == 2


class TestBackoff:
    @pytest.mark.asyncio
    async def test_failed_job_is_held_back(self, store):
        job_id = await insert_job()
        worker = make_worker(store, make_registry(ok=False), outbox_retry_backoff_seconds=60)

        summary = await worker.drain()

        assert summary.failed == 1
        assert summary.stopped_reason == "empty"
        job = await fetch_job(job_id)
        assert job.status == "pending"
        assert job.attempts == 1
        assert job.locked_until is not None

    def test_retry_delay_doubles_per_attempt(self):
        fixed = datetime(2026, 1, 1, tzinfo=timezone.utc)
        worker = OutboxWorker(
            SqlAlchemyJobStore(),
            registry=make_registry(),
            settings=Settings(outbox_retry_backoff_seconds=30),
            now=lambda: fixed,
        )

        assert worker.retry_at(1) == fixed + timedelta(seconds=30)
        assert worker.retry_at(2) == fixed + timedelta(seconds=60)
        assert worker.retry_at(3) == fixed + timedelta(seconds=120)

    def test_no_backoff_by_default(self):
        worker = make_worker(SqlAlchemyJobStore(), make_registry(), outbox_retry_backoff_seconds=0)
        assert worker.retry_at(1) is None


class TestClaimNext:
    @pytest.mark.asyncio
    async def test_empty(self, store):
        outcome = await make_worker(store, make_registry()).claim_next()
        assert outcome.status is ClaimStatus.EMPTY
        assert outcome.job is None

    @pytest.mark.asyncio
    async def test_claimed(self, store):
        job_id = await insert_job()
        outcome = await make_worker(store, make_registry()).claim_next()
        assert outcome.status is ClaimStatus.CLAIMED
        assert outcome.job.job_id == job_id
        assert outcome.job.status == JobStatus.PROCESSING.value
