"""send_reorder_reminder: nudge companies that have not reordered consumables."""
from typing import Any, Dict

from outbox.handlers.base import JobContext
from outbox.handlers.delivery import send_to_recipients
from outbox.handlers.registry import registry
from outbox.schemas.payloads import JobType, Recipient, ReorderReminderPayload
from outbox.services.email_service import email_service


@registry.register(JobType.SEND_REORDER_REMINDER, ReorderReminderPayload)
async def send_reorder_reminder(payload: ReorderReminderPayload, context: JobContext) -> Dict[str, Any]:
    def build_context(recipient: Recipient) -> Dict[str, Any]:
        return {
            "first_name": recipient.first_name,
            "company_name": payload.company_name,
            "days_since_last_order": payload.days_since_last_order,
            "products": payload.products,
            "reorder_link": email_service.build_link(
                "reorder",
                company=payload.company_id,
                contact=recipient.contact_id,
                campaign=payload.campaign_key,
            ),
            "unsubscribe_link": email_service.build_link("unsubscribe", contact=recipient.contact_id),
        }

    return await send_to_recipients(
        payload,
        context,
        subject="Time to restock your consumables?",
        template="reorder_reminder",
        build_context=build_context,
        campaign_key=payload.campaign_key,
    )
