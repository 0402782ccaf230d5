"""Dispatch from a job's type to the handler that performs its side effect."""
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional
from uuid import UUID

from pydantic import BaseModel, ValidationError

from outbox.errors import InvalidPayloadError, RegistryError, UnknownJobTypeError
from outbox.metrics import JOB_DURATION
from outbox.schemas.payloads import JobType

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class JobContext:
    job_id: Optional[UUID]
    job_type: str
    attempt: int = 0


@dataclass
class HandlerResult:
    ok: bool
    error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None

    @classmethod
    def success(cls, result: Optional[Dict[str, Any]] = None) -> "HandlerResult":
        return cls(ok=True, result=result)

    @classmethod
    def failure(cls, error: str) -> "HandlerResult":
        return cls(ok=False, error=error)


Handler = Callable[[Any, JobContext], Awaitable[Optional[Dict[str, Any]]]]


@dataclass
class _Registration:
    payload_model: type[BaseModel]
    handler: Handler


@dataclass
class HandlerRegistry:
    """Maps each JobType to its payload model and handler coroutine.

    Handlers return an optional result dict on success and raise on failure.
    They never touch the job row; the worker owns its state.
    """

    _handlers: Dict[str, _Registration] = field(default_factory=dict)

    def register(self, job_type: JobType, payload_model: type[BaseModel]):
        def decorator(func: Handler) -> Handler:
            if job_type.value in self._handlers:
                raise RegistryError(f"Handler already registered for {job_type.value}")
            self._handlers[job_type.value] = _Registration(payload_model, func)
            return func
        return decorator

    def __contains__(self, job_type: str) -> bool:
        return job_type in self._handlers

    def validate(self) -> None:
        """Fail fast if any declared job type has no handler."""
        missing = [jt.value for jt in JobType if jt.value not in self._handlers]
        if missing:
            raise RegistryError(f"No handler registered for job types: {', '.join(missing)}")

    async def dispatch(
        self,
        job_type: str,
        payload: Dict[str, Any],
        context: Optional[JobContext] = None,
    ) -> HandlerResult:
        """Run the handler for ``job_type``; every failure comes back as a result."""
        context = context or JobContext(job_id=None, job_type=job_type)
        start = time.monotonic()
        try:
            registration = self._handlers.get(job_type)
            if registration is None:
                raise UnknownJobTypeError(job_type)
            try:
                parsed = registration.payload_model.model_validate(payload or {})
            except ValidationError as e:
                raise InvalidPayloadError(f"Invalid {job_type} payload: {e}") from e
            result = await registration.handler(parsed, context)
            return HandlerResult.success(result)
        except Exception as e:
            logger.warning("Handler for %s job %s failed: %s", job_type, context.job_id, e)
            return HandlerResult.failure(str(e) or type(e).__name__)
        finally:
            JOB_DURATION.labels(job_type=job_type).observe(time.monotonic() - start)
