"""Job types and the payload each one carries."""
import enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class JobType(str, enum.Enum):
    SEND_OFFER_EMAIL = "send_offer_email"
    SEND_TRIAL_EMAIL = "send_trial_email"
    SEND_REORDER_REMINDER = "send_reorder_reminder"


class Recipient(BaseModel):
    contact_id: str
    email: EmailStr
    full_name: Optional[str] = None

    @property
    def first_name(self) -> str:
        parts = self.full_name.split() if self.full_name else []
        return parts[0] if parts else "there"


class _Payload(BaseModel):
    # Producers may attach bookkeeping fields; handlers ignore them
    model_config = ConfigDict(extra="ignore")

    company_id: str
    recipients: List[Recipient] = Field(min_length=1)


class OfferEmailPayload(_Payload):
    company_name: Optional[str] = None
    offer_key: str
    campaign_key: str
    custom_message: Optional[str] = None
    problem_slug: Optional[str] = None


class TrialEmailPayload(_Payload):
    campaign_key: Optional[str] = None
    machine_name: str
    trial_days: int = Field(default=30, ge=1)


class ReorderProduct(BaseModel):
    name: str
    product_code: Optional[str] = None


class ReorderReminderPayload(_Payload):
    company_name: Optional[str] = None
    campaign_key: str
    days_since_last_order: int = Field(ge=0)
    products: List[ReorderProduct] = Field(default_factory=list)


PAYLOAD_MODELS: dict[JobType, type[_Payload]] = {
    JobType.SEND_OFFER_EMAIL: OfferEmailPayload,
    JobType.SEND_TRIAL_EMAIL: TrialEmailPayload,
    JobType.SEND_REORDER_REMINDER: ReorderReminderPayload,
}
