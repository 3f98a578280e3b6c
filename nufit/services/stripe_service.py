"""Stripe webhook verification and normalization."""

from typing import Any

import stripe

from nufit.config import StripeConfig
from nufit.models.billing import PaymentActivation, PaymentCancellation

ACTIVATION_EVENTS = {"checkout.session.completed"}
CANCELLATION_EVENTS = {"customer.subscription.deleted"}


def _as_dict(obj: dict | Any) -> dict:
    if isinstance(obj, dict):
        return obj
    return obj.to_dict()


class StripeService:
    """Turns verified Stripe events into lifecycle inputs.

    Checkout sessions are created by the storefront; this service only
    consumes their outcome. The session metadata carries `user_id`, `tier_id`
    and optionally `discount_code` / `discount_percentage`.
    """

    def __init__(self, config: StripeConfig) -> None:
        if not config.webhook_secret:
            raise ValueError("Stripe webhook secret is required")

        self.config = config
        if config.secret_key:
            stripe.api_key = config.secret_key

    def verify_webhook_event(self, payload: bytes, signature: str | None) -> dict:
        if not signature:
            raise ValueError("Missing Stripe-Signature header")

        event = stripe.Webhook.construct_event(
            payload=payload,
            sig_header=signature,
            secret=self.config.webhook_secret,
        )
        return _as_dict(event)

    def activation_from_event(self, event: dict) -> PaymentActivation | None:
        if event.get("type") not in ACTIVATION_EVENTS:
            return None

        session = _as_dict(event.get("data", {}).get("object", {}))
        metadata = session.get("metadata", {}) or {}
        user_id = session.get("client_reference_id") or metadata.get("user_id")
        tier_id = metadata.get("tier_id")
        if not user_id or not tier_id:
            raise ValueError("Checkout session is missing user_id or tier_id metadata")

        percentage = metadata.get("discount_percentage")
        return PaymentActivation(
            event_id=str(event.get("id", "")),
            user_id=str(user_id),
            tier_id=str(tier_id),
            discount_code=metadata.get("discount_code") or None,
            discount_percentage=float(percentage) if percentage not in (None, "") else None,
        )

    def cancellation_from_event(self, event: dict) -> PaymentCancellation | None:
        if event.get("type") not in CANCELLATION_EVENTS:
            return None

        subscription = _as_dict(event.get("data", {}).get("object", {}))
        metadata = subscription.get("metadata", {}) or {}
        user_id = metadata.get("user_id")
        if not user_id:
            raise ValueError("Subscription is missing user_id metadata")

        return PaymentCancellation(event_id=str(event.get("id", "")), user_id=str(user_id))
