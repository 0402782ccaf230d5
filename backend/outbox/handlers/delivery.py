"""Shared send-and-record flow for the email handlers."""
import logging
from typing import Any, Callable, Dict, List

from sqlalchemy.exc import SQLAlchemyError

from outbox.database import AsyncSessionLocal
from outbox.handlers.base import JobContext
from outbox.schemas.payloads import Recipient
from outbox.services.audit import record_audit_event
from outbox.services.email_service import email_service

logger = logging.getLogger(__name__)

EMAIL_SENT_ACTION = "email_sent"


async def record_emails_sent(
    context: JobContext,
    company_id: str,
    campaign_key: str | None,
    recipients: List[Recipient],
) -> bool:
    """Append one audit row per delivered email.

    Best effort: the emails are already out, so a failed write is logged and
    the job still counts as done. A retry may add duplicate rows.
    """
    try:
        async with AsyncSessionLocal() as session:
            for recipient in recipients:
                record_audit_event(
                    session,
                    action=EMAIL_SENT_ACTION,
                    resource_type="outbox_job",
                    resource_id=str(context.job_id) if context.job_id else None,
                    metadata={
                        "job_type": context.job_type,
                        "attempt": context.attempt,
                        "company_id": company_id,
                        "contact_id": recipient.contact_id,
                        "campaign_key": campaign_key,
                    },
                )
            await session.commit()
        return True
    except (SQLAlchemyError, OSError) as e:
        logger.error(
            "Outbox job %s delivered %d emails but the audit write failed: %s: %s",
            context.job_id, len(recipients), type(e).__name__, e,
        )
        return False


async def send_to_recipients(
    payload: Any,
    context: JobContext,
    *,
    subject: str,
    template: str,
    build_context: Callable[[Recipient], Dict[str, Any]],
    campaign_key: str | None = None,
) -> Dict[str, Any]:
    """Send ``template`` to every recipient of ``payload``.

    Any delivery failure raises and fails the whole job, so a retry resends
    to recipients that already got the email.
    """
    if not email_service.enabled:
        logger.info(
            "Email disabled - would send %s for job %s to %d recipients",
            template, context.job_id, len(payload.recipients),
        )
        return {"sent": 0, "skipped": "email disabled"}

    delivered: List[Recipient] = []
    for recipient in payload.recipients:
        await email_service.send_templated(
            recipient.email,
            subject,
            template,
            **build_context(recipient),
        )
        delivered.append(recipient)

    audited = await record_emails_sent(context, payload.company_id, campaign_key, delivered)
    return {
        "sent": len(delivered),
        "contact_ids": [r.contact_id for r in delivered],
        "audited": audited,
    }
