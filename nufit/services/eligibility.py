"""Pure eligibility rules for user-initiated lifecycle actions.

Nothing here touches storage. A Decision is computed against one snapshot of
an entitlement; the transition engine re-checks the same rules when it builds
the new record, because a concurrent writer may have moved the record since.
"""

import uuid

from nufit.errors import (
    DiscountAlreadyApplied,
    EntitlementError,
    InvalidTier,
    SubscriptionActive,
    TrialAlreadyUsed,
)
from nufit.models.entitlement import (
    Decision,
    Discount,
    EligibilityAction,
    Entitlement,
    EntitlementStatus,
    Tier,
)
from nufit.services.tier_catalog import TierCatalog


def can_start_trial(entitlement: Entitlement) -> bool:
    return (
        not entitlement.has_ever_used_trial
        and entitlement.status != EntitlementStatus.ACTIVE
    )


def can_activate_tier(entitlement: Entitlement) -> bool:
    # No mid-subscription switching; expired/cancelled/never-started are all fine.
    return entitlement.status != EntitlementStatus.ACTIVE


def pending_discount(entitlement: Entitlement) -> Discount | None:
    """The attached discount, unless an activation already redeemed it."""
    discount = entitlement.discount
    if discount is None or discount.redeemed_at is not None:
        return None
    return discount


def can_apply_discount(entitlement: Entitlement, code: str) -> bool:
    # Replacement policy is reject: an unredeemed discount must be cleared
    # first, whether or not `code` matches it.
    return pending_discount(entitlement) is None


def _rejection(entitlement: Entitlement, action: EligibilityAction) -> EntitlementError | None:
    if action == EligibilityAction.START_TRIAL:
        if entitlement.has_ever_used_trial:
            return TrialAlreadyUsed()
        if entitlement.status == EntitlementStatus.ACTIVE:
            return SubscriptionActive()
    elif action == EligibilityAction.ACTIVATE_TIER:
        if not can_activate_tier(entitlement):
            return SubscriptionActive(current_tier=entitlement.tier.value)
    elif action == EligibilityAction.APPLY_DISCOUNT:
        pending = pending_discount(entitlement)
        if pending is not None:
            return DiscountAlreadyApplied(current_code=pending.code)
    return None


def evaluate(
    entitlement: Entitlement,
    action: EligibilityAction,
    *,
    catalog: TierCatalog | None = None,
    tier_id: str | Tier | None = None,
) -> Decision:
    """Decide whether `action` may be attempted on `entitlement`."""
    error: EntitlementError | None = None

    if action == EligibilityAction.ACTIVATE_TIER:
        if tier_id is None:
            error = InvalidTier("A tier is required to activate a subscription")
        elif catalog is not None:
            try:
                tier = catalog.resolve(tier_id)
            except InvalidTier as e:
                error = e
            else:
                if tier == Tier.FREE_TRIAL:
                    # The trial has its own transition and its own one-time rule.
                    error = InvalidTier("Use the free trial activation for 'free-trial'")

    if error is None:
        error = _rejection(entitlement, action)

    if error is not None:
        return Decision(
            user_id=entitlement.user_id,
            action=action,
            approved=False,
            version=entitlement.version,
            error=error,
        )

    return Decision(
        user_id=entitlement.user_id,
        action=action,
        approved=True,
        version=entitlement.version,
        token=uuid.uuid4().hex,
    )
