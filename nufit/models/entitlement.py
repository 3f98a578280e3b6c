"""Entitlement, tier and lifecycle models."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator

from nufit.constants import CURRENCY, PLAN_GENERATION_FEATURE


class Tier(str, Enum):
    """Subscription tiers."""

    NONE = "none"
    FREE_TRIAL = "free-trial"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"


PAID_TIERS = frozenset({Tier.MONTHLY, Tier.QUARTERLY})


class EntitlementStatus(str, Enum):
    """Lifecycle states of an entitlement."""

    INACTIVE = "inactive"
    ACTIVE = "active"
    EXPIRED = "expired"
    CANCELLED = "cancelled"
    PAUSED = "paused"


class Discount(BaseModel):
    """A discount code attached to an entitlement."""

    code: str
    percentage: float = Field(ge=0, le=100)
    applied_at: datetime
    # Set when an activation consumed the discount
    redeemed_at: datetime | None = None


class Entitlement(BaseModel):
    """Persisted subscription/trial/quota state for a user."""

    user_id: str
    tier: Tier = Tier.NONE
    status: EntitlementStatus = EntitlementStatus.INACTIVE
    start_date: datetime | None = None
    end_date: datetime | None = None
    quota_remaining: int = Field(default=0, ge=0)
    quota_total: int = Field(default=0, ge=0)
    last_quota_reset_at: datetime | None = None
    has_ever_used_trial: bool = False
    discount: Discount | None = None
    cancelled_at: datetime | None = None
    last_metered_action_at: datetime | None = None
    total_metered_actions_lifetime: int = Field(default=0, ge=0)
    version: int = Field(default=0, ge=0)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @model_validator(mode="after")
    def _check_quota_bounds(self) -> "Entitlement":
        if self.quota_remaining > self.quota_total:
            raise ValueError("quota_remaining cannot exceed quota_total")
        return self

    @property
    def is_active(self) -> bool:
        return self.status == EntitlementStatus.ACTIVE


class TierDefinition(BaseModel):
    """Immutable catalog entry for a tier."""

    model_config = {"frozen": True}

    id: Tier
    name: str
    price: float = Field(ge=0)
    currency: str = CURRENCY
    duration_days: int = Field(gt=0)
    quota_grant: int = Field(ge=0)
    features: tuple[str, ...] = (PLAN_GENERATION_FEATURE,)


class EligibilityAction(str, Enum):
    """User actions gated by the eligibility evaluator."""

    START_TRIAL = "start_trial"
    ACTIVATE_TIER = "activate_tier"
    APPLY_DISCOUNT = "apply_discount"


class Decision(BaseModel):
    """Outcome of an eligibility check.

    Approved decisions carry a token the transition engine requires; rejected
    ones carry the error that explains why.
    """

    model_config = {"arbitrary_types_allowed": True}

    user_id: str
    action: EligibilityAction
    approved: bool
    version: int
    token: str | None = None
    error: Exception | None = None

    def raise_for_rejection(self) -> None:
        if not self.approved:
            raise self.error


class TransitionKind(str, Enum):
    """Transitions understood by the lifecycle engine."""

    ACTIVATE_TRIAL = "activate_trial"
    ACTIVATE_TIER = "activate_tier"
    CANCEL = "cancel"
    EXPIRE = "expire"
    RESET_QUOTA = "reset_quota"
    ADMIN_RESET_QUOTA = "admin_reset_quota"
    ATTACH_DISCOUNT = "attach_discount"
    CLEAR_DISCOUNT = "clear_discount"
    CONSUME_QUOTA = "consume_quota"


class SideEffectType(str, Enum):
    """Observable consequences of a transition."""

    TRIAL_STARTED = "trial_started"
    TIER_ACTIVATED = "tier_activated"
    QUOTA_GRANTED = "quota_granted"
    QUOTA_REVOKED = "quota_revoked"
    QUOTA_CONSUMED = "quota_consumed"
    DISCOUNT_ATTACHED = "discount_attached"
    DISCOUNT_REDEEMED = "discount_redeemed"
    DISCOUNT_CLEARED = "discount_cleared"
    SUBSCRIPTION_CANCELLED = "subscription_cancelled"
    SUBSCRIPTION_EXPIRED = "subscription_expired"


class SideEffect(BaseModel):
    """A single consequence of a transition, with details for logs/audit."""

    type: SideEffectType
    data: dict[str, Any] = Field(default_factory=dict)


class TransitionResult(BaseModel):
    """New entitlement produced by a transition plus its side effects."""

    kind: TransitionKind
    entitlement: Entitlement
    effects: list[SideEffect] = Field(default_factory=list)


class QuotaAuthorization(BaseModel):
    """Answer of the quota gate before a metered action."""

    allow: bool
    remaining: int
    tier: Tier


class SweepSummary(BaseModel):
    """Result of one scheduled sweep."""

    job: str
    scanned: int = 0
    affected: int = 0
    timestamp: datetime
    pending_user_ids: list[str] = Field(default_factory=list)


class BulkWriteResult(BaseModel):
    """Outcome of a bulk conditional write."""

    committed: list[Entitlement] = Field(default_factory=list)
    failed_user_ids: list[str] = Field(default_factory=list)
