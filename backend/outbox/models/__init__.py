from outbox.models.outbox_job import OutboxJob, JobStatus
from outbox.models.audit_log import AuditLog
