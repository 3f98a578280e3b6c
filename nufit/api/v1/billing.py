"""Payment webhook endpoint."""

import structlog
from fastapi import APIRouter, Header, HTTPException, Request
from pydantic import BaseModel

from nufit.api.deps import get_entitlement_service
from nufit.errors import EntitlementError, StoreUnavailable
from nufit.services.stripe_service import StripeService

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


class WebhookResponse(BaseModel):
    """Stripe webhook processing response."""

    received: bool
    processed: bool


def _get_stripe_service(request: Request) -> StripeService:
    service = getattr(request.app.state, "stripe_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Stripe not configured")
    return service


async def _release_event(service, event_id: str) -> None:
    try:
        await service.store.release_webhook_event(event_id)
    except StoreUnavailable as e:
        logger.error("stripe_webhook_release_failed", event_id=event_id, error=str(e))


@router.post("/webhook", response_model=WebhookResponse)
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
) -> WebhookResponse:
    """Activate or cancel paid tiers from verified Stripe events.

    Each event id is processed at most once. Events that cannot be applied
    (already active, malformed metadata) are acknowledged and logged so
    Stripe does not keep redelivering them. A storage outage releases the
    event id and answers 503 so the redelivery is applied.
    """
    service = get_entitlement_service(request)
    stripe_service = _get_stripe_service(request)
    payload = await request.body()

    try:
        event = stripe_service.verify_webhook_event(payload, stripe_signature)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid webhook signature")

    event_id = str(event.get("id", ""))
    if not event_id:
        raise HTTPException(status_code=400, detail="Stripe event has no id")

    is_new = await service.store.mark_webhook_processed(event_id)
    if not is_new:
        logger.info("stripe_webhook_duplicate", event_id=event_id)
        return WebhookResponse(received=True, processed=False)

    event_type = str(event.get("type", ""))
    try:
        activation = stripe_service.activation_from_event(event)
        cancellation = stripe_service.cancellation_from_event(event)
        if activation is not None:
            structlog.contextvars.bind_contextvars(user_id=activation.user_id)
            await service.activate_tier(
                activation.user_id,
                activation.tier_id,
                discount_code=activation.discount_code,
                discount_percentage=activation.discount_percentage,
            )
        elif cancellation is not None:
            structlog.contextvars.bind_contextvars(user_id=cancellation.user_id)
            await service.cancel(cancellation.user_id)
        else:
            logger.info("stripe_webhook_ignored", event_id=event_id, event_type=event_type)
            return WebhookResponse(received=True, processed=False)
    except StoreUnavailable:
        logger.warning("stripe_webhook_store_unavailable", event_id=event_id, event_type=event_type)
        await _release_event(service, event_id)
        raise
    except EntitlementError as e:
        logger.warning(
            "stripe_webhook_rejected",
            event_id=event_id,
            event_type=event_type,
            error=e.code,
            message=e.message,
        )
        return WebhookResponse(received=True, processed=False)
    except ValueError as e:
        logger.warning(
            "stripe_webhook_payload_invalid",
            event_id=event_id,
            event_type=event_type,
            error=str(e),
        )
        return WebhookResponse(received=True, processed=False)

    logger.info("stripe_webhook_processed", event_id=event_id, event_type=event_type)
    return WebhookResponse(received=True, processed=True)
