"""Persistence primitives for the outbox table.

Workers coordinate only through the conditional UPDATEs issued here: a claim
succeeds only if the row still satisfies the predicate it was selected
under, and every outcome write is conditioned on the row still being the
caller's lease (``status = processing`` and, when given, the attempt number
the caller claimed). No other locking is used.
"""
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError

from outbox.config import Settings, get_settings
from outbox.database import AsyncSessionLocal
from outbox.errors import InvalidPayloadError, OutboxStoreError, UnknownJobTypeError
from outbox.models.outbox_job import JobStatus, OutboxJob
from outbox.schemas.payloads import PAYLOAD_MODELS, JobType

logger = logging.getLogger(__name__)

ABANDONED_ERROR = "lease expired after final attempt"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class JobRef:
    """A claimable job as seen by the selection query."""

    job_id: UUID
    job_type: str
    status: str


def effective_max_attempts(max_attempts: Optional[int], default_max: int, hard_max: int) -> int:
    """Attempt ceiling for one job: its own setting (or the default), capped by the global ceiling."""
    return min(max_attempts or default_max, hard_max)


class JobStore(ABC):
    """Operations the worker and the admin routes need from persistence."""

    @abstractmethod
    async def select_next_claimable(self, now: Optional[datetime] = None) -> Optional[JobRef]:
        ...

    @abstractmethod
    async def try_claim(
        self,
        job_id: UUID,
        expected_status: str = JobStatus.PENDING.value,
        now: Optional[datetime] = None,
    ) -> Optional[OutboxJob]:
        ...

    @abstractmethod
    async def mark_completed(
        self,
        job_id: UUID,
        result: Optional[Dict[str, Any]] = None,
        attempt: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        ...

    @abstractmethod
    async def mark_retry(
        self,
        job_id: UUID,
        error: str,
        retry_at: Optional[datetime] = None,
        attempt: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        ...

    @abstractmethod
    async def mark_dead(
        self,
        job_id: UUID,
        error: str,
        attempt: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        ...

    @abstractmethod
    async def reap_abandoned(self, now: Optional[datetime] = None) -> int:
        ...

    @abstractmethod
    async def count_by_status(self) -> Dict[str, int]:
        ...


class SqlAlchemyJobStore(JobStore):
    """Job store backed by the ``outbox`` table."""

    def __init__(self, session_factory=AsyncSessionLocal, settings: Optional[Settings] = None):
        self._session_factory = session_factory
        self.settings = settings or get_settings()

    @property
    def lease_duration(self) -> timedelta:
        return timedelta(minutes=self.settings.outbox_lease_minutes)

    @property
    def default_max_attempts(self) -> int:
        return self.settings.outbox_default_max_attempts

    @property
    def hard_max_attempts(self) -> int:
        return self.settings.outbox_hard_max_attempts

    def effective_max_attempts(self, job: OutboxJob) -> int:
        return effective_max_attempts(job.max_attempts, self.default_max_attempts, self.hard_max_attempts)

    @asynccontextmanager
    async def _session(self):
        try:
            async with self._session_factory() as session:
                yield session
        except (SQLAlchemyError, OSError) as e:
            raise OutboxStoreError(f"{type(e).__name__}: {e}") from e

    def _effective_max_column(self):
        per_job = func.coalesce(OutboxJob.max_attempts, self.default_max_attempts)
        return case((per_job > self.hard_max_attempts, self.hard_max_attempts), else_=per_job)

    def _eligible(self, status: str, now: datetime):
        """Predicate a row must satisfy to be claimed from ``status``."""
        if status == JobStatus.PENDING.value:
            return and_(
                OutboxJob.status == JobStatus.PENDING.value,
                OutboxJob.attempts < self.hard_max_attempts,
                or_(OutboxJob.locked_until.is_(None), OutboxJob.locked_until < now),
            )
        if status == JobStatus.PROCESSING.value:
            # Abandoned lease: the previous claimant never reported back
            return and_(
                OutboxJob.status == JobStatus.PROCESSING.value,
                OutboxJob.locked_until < now,
                OutboxJob.attempts < self._effective_max_column(),
            )
        raise ValueError(f"Jobs cannot be claimed from status {status!r}")

    def _owned(self, job_id: UUID, attempt: Optional[int]):
        conditions = [
            OutboxJob.job_id == job_id,
            OutboxJob.status == JobStatus.PROCESSING.value,
        ]
        if attempt is not None:
            conditions.append(OutboxJob.attempts == attempt)
        return and_(*conditions)

    # ------------------------------------------------------------------
    # Claim protocol
    # ------------------------------------------------------------------

    async def select_next_claimable(self, now: Optional[datetime] = None) -> Optional[JobRef]:
        now = now or utcnow()
        stmt = (
            select(OutboxJob.job_id, OutboxJob.job_type, OutboxJob.status)
            .where(
                or_(
                    self._eligible(JobStatus.PENDING.value, now),
                    self._eligible(JobStatus.PROCESSING.value, now),
                )
            )
            .order_by(OutboxJob.created_at.asc())
            .limit(1)
        )
        async with self._session() as session:
            row = (await session.execute(stmt)).first()
        if row is None:
            return None
        return JobRef(job_id=row.job_id, job_type=row.job_type, status=row.status)

    async def try_claim(
        self,
        job_id: UUID,
        expected_status: str = JobStatus.PENDING.value,
        now: Optional[datetime] = None,
    ) -> Optional[OutboxJob]:
        """Take the lease on a job if it is still claimable from ``expected_status``.

        Returns the claimed row (attempts already incremented) or ``None`` when
        another worker got there first.
        """
        now = now or utcnow()
        stmt = (
            update(OutboxJob)
            .where(OutboxJob.job_id == job_id, self._eligible(expected_status, now))
            .values(
                status=JobStatus.PROCESSING.value,
                attempts=OutboxJob.attempts + 1,
                locked_until=now + self.lease_duration,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            if result.rowcount != 1:
                await session.rollback()
                return None
            await session.commit()
            return await session.get(OutboxJob, job_id)

    # ------------------------------------------------------------------
    # Outcome writes
    # ------------------------------------------------------------------

    async def _write_outcome(self, job_id: UUID, attempt: Optional[int], values: Dict[str, Any]) -> bool:
        stmt = (
            update(OutboxJob)
            .where(self._owned(job_id, attempt))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            updated = result.rowcount
            await session.commit()
        if updated != 1:
            logger.warning(
                "Outbox job %s is no longer held at attempt %s; %s not recorded",
                job_id, attempt, values.get("status"),
            )
            return False
        return True

    async def mark_completed(
        self,
        job_id: UUID,
        result: Optional[Dict[str, Any]] = None,
        attempt: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        now = now or utcnow()
        values: Dict[str, Any] = {
            "status": JobStatus.COMPLETED.value,
            "completed_at": now,
            "locked_until": None,
            "updated_at": now,
        }
        if result is not None:
            values["result"] = result
        return await self._write_outcome(job_id, attempt, values)

    async def mark_retry(
        self,
        job_id: UUID,
        error: str,
        retry_at: Optional[datetime] = None,
        attempt: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        now = now or utcnow()
        return await self._write_outcome(job_id, attempt, {
            "status": JobStatus.PENDING.value,
            "last_error": error,
            # A future value holds the job back from selection until then
            "locked_until": retry_at,
            "updated_at": now,
        })

    async def mark_dead(
        self,
        job_id: UUID,
        error: str,
        attempt: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        now = now or utcnow()
        return await self._write_outcome(job_id, attempt, {
            "status": JobStatus.DEAD.value,
            "last_error": error,
            "locked_until": None,
            "updated_at": now,
        })

    async def reap_abandoned(self, now: Optional[datetime] = None) -> int:
        """Dead-letter processing rows whose lease ran out on their last permitted attempt."""
        now = now or utcnow()
        stmt = (
            update(OutboxJob)
            .where(
                OutboxJob.status == JobStatus.PROCESSING.value,
                OutboxJob.locked_until < now,
                OutboxJob.attempts >= self._effective_max_column(),
            )
            .values(
                status=JobStatus.DEAD.value,
                last_error=ABANDONED_ERROR,
                locked_until=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        async with self._session() as session:
            result = await session.execute(stmt)
            reaped = result.rowcount
            await session.commit()
        if reaped:
            logger.warning("Dead-lettered %s abandoned outbox jobs", reaped)
        return reaped

    # ------------------------------------------------------------------
    # Producers and operators
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        job_type: str,
        payload: Dict[str, Any],
        max_attempts: Optional[int] = None,
        retry_of: Optional[UUID] = None,
        validate: bool = True,
    ) -> OutboxJob:
        """Insert a pending job.

        With ``validate`` the type must be known and the payload must match its
        schema; the payload is stored as given either way.
        """
        if validate:
            try:
                model = PAYLOAD_MODELS[JobType(job_type)]
            except ValueError:
                raise UnknownJobTypeError(job_type)
            try:
                model.model_validate(payload)
            except ValidationError as e:
                raise InvalidPayloadError(f"Invalid {job_type} payload: {e}") from e

        job = OutboxJob(
            job_type=job_type,
            payload=payload,
            status=JobStatus.PENDING.value,
            attempts=0,
            max_attempts=max_attempts,
            retry_of_job_id=retry_of,
        )
        async with self._session() as session:
            session.add(job)
            await session.commit()
            await session.refresh(job)
        logger.info("Enqueued outbox job %s (%s)", job.job_id, job_type)
        return job

    async def get(self, job_id: UUID) -> Optional[OutboxJob]:
        async with self._session() as session:
            return await session.get(OutboxJob, job_id)

    async def list_jobs(
        self,
        status: Optional[str] = None,
        job_type: Optional[str] = None,
        limit: int = 100,
    ) -> List[OutboxJob]:
        query = select(OutboxJob)
        if status:
            query = query.where(OutboxJob.status == status)
        if job_type:
            query = query.where(OutboxJob.job_type == job_type)
        query = query.order_by(OutboxJob.created_at.desc()).limit(limit)
        async with self._session() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def count_by_status(self) -> Dict[str, int]:
        stmt = select(OutboxJob.status, func.count()).group_by(OutboxJob.status)
        async with self._session() as session:
            rows = (await session.execute(stmt)).all()
        return {status: count for status, count in rows}
