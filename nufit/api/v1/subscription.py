"""
Subscription API endpoints.

Endpoints:
- GET    /api/v1/subscription/tiers - Public tier catalog
- GET    /api/v1/users/{user_id}/subscription - Entitlement with derived flags
- POST   /api/v1/users/{user_id}/subscription/trial - Start the free trial
- POST   /api/v1/users/{user_id}/subscription/cancel - Cancel the active period
- POST   /api/v1/users/{user_id}/subscription/discount - Attach a discount code
- DELETE /api/v1/users/{user_id}/subscription/discount - Clear the discount
"""

import math
from datetime import datetime

import structlog
from fastapi import APIRouter, Request
from pydantic import BaseModel, Field

from nufit.api.deps import get_entitlement_service
from nufit.auth import CurrentUser, ensure_own_account
from nufit.models.entitlement import (
    Discount,
    Entitlement,
    EntitlementStatus,
    Tier,
    TierDefinition,
)

router = APIRouter(tags=["subscription"])


class TiersResponse(BaseModel):
    """Available subscription tiers."""

    tiers: list[TierDefinition]


class SubscriptionView(BaseModel):
    """Read-only projection of an entitlement for display."""

    user_id: str
    tier: Tier
    status: EntitlementStatus
    start_date: datetime | None = None
    end_date: datetime | None = None
    quota_remaining: int
    quota_total: int
    last_quota_reset_at: datetime | None = None
    has_ever_used_trial: bool
    discount: Discount | None = None
    cancelled_at: datetime | None = None
    last_metered_action_at: datetime | None = None
    total_metered_actions_lifetime: int
    is_in_free_trial: bool
    can_start_free_trial: bool
    has_valid_access: bool
    days_remaining: int | None = None

    @classmethod
    def from_entitlement(cls, entitlement: Entitlement, now: datetime) -> "SubscriptionView":
        in_window = (
            entitlement.status == EntitlementStatus.ACTIVE
            and entitlement.end_date is not None
            and now < entitlement.end_date
        )
        days_remaining = None
        if in_window:
            days_remaining = math.ceil((entitlement.end_date - now).total_seconds() / 86400)

        return cls(
            **entitlement.model_dump(exclude={"version", "created_at", "updated_at"}),
            is_in_free_trial=in_window and entitlement.tier == Tier.FREE_TRIAL,
            can_start_free_trial=not entitlement.has_ever_used_trial,
            has_valid_access=in_window,
            days_remaining=days_remaining,
        )


class DiscountRequest(BaseModel):
    """Discount code application."""

    code: str = Field(min_length=1, max_length=64)
    percentage: float = Field(description="Percentage off, 0-100")


@router.get("/subscription/tiers", response_model=TiersResponse)
async def list_tiers(request: Request) -> TiersResponse:
    """Return the tier catalog (prices in AED)."""
    service = get_entitlement_service(request)
    return TiersResponse(tiers=service.list_tiers())


@router.get("/users/{user_id}/subscription", response_model=SubscriptionView)
async def get_subscription(user_id: str, request: Request, user: CurrentUser) -> SubscriptionView:
    ensure_own_account(user, user_id)
    service = get_entitlement_service(request)
    entitlement = await service.get_entitlement(user_id)
    return SubscriptionView.from_entitlement(entitlement, service.now_provider())


@router.post("/users/{user_id}/subscription/trial", response_model=SubscriptionView)
async def start_trial(user_id: str, request: Request, user: CurrentUser) -> SubscriptionView:
    """Start the one-time 7-day free trial."""
    ensure_own_account(user, user_id)
    structlog.contextvars.bind_contextvars(user_id=user_id)
    service = get_entitlement_service(request)
    entitlement = await service.activate_trial(user_id)
    return SubscriptionView.from_entitlement(entitlement, service.now_provider())


@router.post("/users/{user_id}/subscription/cancel", response_model=SubscriptionView)
async def cancel_subscription(user_id: str, request: Request, user: CurrentUser) -> SubscriptionView:
    ensure_own_account(user, user_id)
    structlog.contextvars.bind_contextvars(user_id=user_id)
    service = get_entitlement_service(request)
    entitlement = await service.cancel(user_id)
    return SubscriptionView.from_entitlement(entitlement, service.now_provider())


@router.post("/users/{user_id}/subscription/discount", response_model=SubscriptionView)
async def apply_discount(
    user_id: str,
    body: DiscountRequest,
    request: Request,
    user: CurrentUser,
) -> SubscriptionView:
    """Attach a discount; it is redeemed by the next paid activation."""
    ensure_own_account(user, user_id)
    structlog.contextvars.bind_contextvars(user_id=user_id)
    service = get_entitlement_service(request)
    entitlement = await service.apply_discount(user_id, body.code, body.percentage)
    return SubscriptionView.from_entitlement(entitlement, service.now_provider())


@router.delete("/users/{user_id}/subscription/discount", response_model=SubscriptionView)
async def clear_discount(user_id: str, request: Request, user: CurrentUser) -> SubscriptionView:
    ensure_own_account(user, user_id)
    structlog.contextvars.bind_contextvars(user_id=user_id)
    service = get_entitlement_service(request)
    entitlement = await service.clear_discount(user_id)
    return SubscriptionView.from_entitlement(entitlement, service.now_provider())
