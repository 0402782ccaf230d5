"""send_offer_email: personalised offer to a company's subscribed contacts."""
from typing import Any, Dict

from outbox.handlers.base import JobContext
from outbox.handlers.delivery import send_to_recipients
from outbox.handlers.registry import registry
from outbox.schemas.payloads import JobType, OfferEmailPayload, Recipient
from outbox.services.email_service import email_service

# Headline and benefit line per reported machine problem
PROBLEM_MESSAGING: Dict[str, Dict[str, str]] = {
    "cracking": {
        "headline": "Eliminate Cracking & Scoring Issues",
        "benefit": "Reduce cracking by up to 90% with proven creasing technology",
    },
    "misregistration": {
        "headline": "Fix Misregistration Problems",
        "benefit": "Achieve perfect registration every time with precision tools",
    },
    "jamming": {
        "headline": "Stop Paper Jamming",
        "benefit": "Increase productivity with smooth, jam-free folding",
    },
    "spine_cracking": {
        "headline": "Eliminate Spine Cracking",
        "benefit": "Produce perfect-bound books with crack-free spines",
    },
    "wire_jam": {
        "headline": "End Wire Jamming Issues",
        "benefit": "Achieve consistent, jam-free stitching operation",
    },
    "default": {
        "headline": "Optimize Your Machine Performance",
        "benefit": "Proven solutions for better quality and productivity",
    },
}


def offer_messaging(problem_slug: str | None) -> Dict[str, str]:
    return PROBLEM_MESSAGING.get(problem_slug or "default", PROBLEM_MESSAGING["default"])


@registry.register(JobType.SEND_OFFER_EMAIL, OfferEmailPayload)
async def send_offer_email(payload: OfferEmailPayload, context: JobContext) -> Dict[str, Any]:
    messaging = offer_messaging(payload.problem_slug)

    def build_context(recipient: Recipient) -> Dict[str, Any]:
        return {
            "first_name": recipient.first_name,
            "company_name": payload.company_name,
            "headline": messaging["headline"],
            "benefit": messaging["benefit"],
            "custom_message": payload.custom_message,
            "offer_link": email_service.build_link(
                f"offers/{payload.offer_key}",
                campaign=payload.campaign_key,
                contact=recipient.contact_id,
            ),
            "unsubscribe_link": email_service.build_link("unsubscribe", contact=recipient.contact_id),
        }

    return await send_to_recipients(
        payload,
        context,
        subject=f"Your Custom Offer: {messaging['headline']}",
        template="offer_email",
        build_context=build_context,
        campaign_key=payload.campaign_key,
    )
