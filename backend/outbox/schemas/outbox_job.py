from pydantic import BaseModel, ConfigDict
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import UUID


class OutboxJobResponse(BaseModel):
    job_id: UUID
    job_type: str
    status: str
    payload: Dict[str, Any]
    attempts: int
    max_attempts: Optional[int] = None
    locked_until: Optional[datetime] = None
    last_error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None
    retry_of_job_id: Optional[UUID] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class OutboxStatsResponse(BaseModel):
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    dead: int = 0
    total: int = 0


class OutboxRunResponse(BaseModel):
    success: bool = True
    processed: int
    failed: int
    duration_ms: int
