"""Payment collaborator payloads."""

from pydantic import BaseModel, Field


class PaymentActivation(BaseModel):
    """Successful payment reported by the payment provider."""

    event_id: str
    user_id: str
    tier_id: str
    discount_code: str | None = None
    discount_percentage: float | None = Field(default=None, ge=0, le=100)


class PaymentCancellation(BaseModel):
    """Subscription ended on the payment provider side."""

    event_id: str
    user_id: str
