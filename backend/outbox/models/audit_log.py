from sqlalchemy import Column, DateTime, String, JSON, Index
from sqlalchemy.dialects.postgresql import UUID
from datetime import datetime, timezone
from outbox.database import Base
import uuid


class AuditLog(Base):
    """Append-only record of side effects performed by outbox handlers."""

    __tablename__ = "audit_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    action = Column(String(100), nullable=False, index=True)
    resource_type = Column(String(100), nullable=True, index=True)
    resource_id = Column(String(255), nullable=True, index=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), index=True)

    __table_args__ = (
        Index("ix_audit_logs_resource_action", "resource_type", "resource_id", "action"),
    )
