"""send_trial_email: invitation to trial a machine or tool."""
from typing import Any, Dict

from outbox.handlers.base import JobContext
from outbox.handlers.delivery import send_to_recipients
from outbox.handlers.registry import registry
from outbox.schemas.payloads import JobType, Recipient, TrialEmailPayload
from outbox.services.email_service import email_service


@registry.register(JobType.SEND_TRIAL_EMAIL, TrialEmailPayload)
async def send_trial_email(payload: TrialEmailPayload, context: JobContext) -> Dict[str, Any]:
    def build_context(recipient: Recipient) -> Dict[str, Any]:
        return {
            "first_name": recipient.first_name,
            "machine_name": payload.machine_name,
            "trial_days": payload.trial_days,
            "trial_link": email_service.build_link(
                "trial",
                company=payload.company_id,
                contact=recipient.contact_id,
            ),
            "unsubscribe_link": email_service.build_link("unsubscribe", contact=recipient.contact_id),
        }

    return await send_to_recipients(
        payload,
        context,
        subject=f"Your {payload.trial_days}-day trial of the {payload.machine_name}",
        template="trial_email",
        build_context=build_context,
        campaign_key=payload.campaign_key,
    )
