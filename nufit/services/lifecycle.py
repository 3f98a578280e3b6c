"""Lifecycle transition engine.

Every change to an Entitlement goes through TransitionEngine.apply, which
checks the transition's precondition against the record it is given and
returns a new record plus the side effects. The engine never writes; callers
persist the result with a conditional write against the version they read, so
the precondition is always evaluated on the state the write replaces.
"""

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from pydantic import ValidationError

from nufit.config import QuotaResetPolicy, SubscriptionConfig
from nufit.errors import (
    DiscountAlreadyApplied,
    InvalidTransition,
    NoActiveSubscription,
    QuotaExceeded,
)
from nufit.models.entitlement import (
    PAID_TIERS,
    Decision,
    Discount,
    EligibilityAction,
    Entitlement,
    EntitlementStatus,
    SideEffect,
    SideEffectType,
    Tier,
    TransitionKind,
    TransitionResult,
)
from nufit.services.eligibility import can_activate_tier, can_start_trial, pending_discount
from nufit.services.tier_catalog import TierCatalog

_APPROVAL_REQUIRED: dict[TransitionKind, EligibilityAction] = {
    TransitionKind.ACTIVATE_TRIAL: EligibilityAction.START_TRIAL,
    TransitionKind.ACTIVATE_TIER: EligibilityAction.ACTIVATE_TIER,
    TransitionKind.ATTACH_DISCOUNT: EligibilityAction.APPLY_DISCOUNT,
}


class TransitionEngine:
    """Explicit state machine over Entitlement records."""

    def __init__(self, catalog: TierCatalog, config: SubscriptionConfig) -> None:
        self.catalog = catalog
        self.config = config
        self._handlers: dict[TransitionKind, Callable[..., TransitionResult]] = {
            TransitionKind.ACTIVATE_TRIAL: self._activate_trial,
            TransitionKind.ACTIVATE_TIER: self._activate_tier,
            TransitionKind.CANCEL: self._cancel,
            TransitionKind.EXPIRE: self._expire,
            TransitionKind.RESET_QUOTA: self._reset_quota,
            TransitionKind.ADMIN_RESET_QUOTA: self._admin_reset_quota,
            TransitionKind.ATTACH_DISCOUNT: self._attach_discount,
            TransitionKind.CLEAR_DISCOUNT: self._clear_discount,
            TransitionKind.CONSUME_QUOTA: self._consume_quota,
        }

    @property
    def quota_period(self) -> timedelta:
        return timedelta(days=self.config.quota_period_days)

    def apply(
        self,
        entitlement: Entitlement,
        kind: TransitionKind,
        *,
        now: datetime,
        approval: Decision | None = None,
        tier_id: str | Tier | None = None,
        discount: Discount | None = None,
    ) -> TransitionResult:
        """Apply `kind` to `entitlement` at time `now`.

        Raises:
            InvalidTransition: the precondition does not hold for this record.
            NoActiveSubscription, QuotaExceeded: quota consumption refused.
        """
        required = _APPROVAL_REQUIRED.get(kind)
        if required is not None:
            self._check_approval(entitlement, approval, required)

        handler = self._handlers[kind]
        return handler(entitlement, now=now, tier_id=tier_id, discount=discount)

    # ------------------------------------------------------------------
    # Precondition helpers
    # ------------------------------------------------------------------

    def _check_approval(
        self, entitlement: Entitlement, approval: Decision | None, action: EligibilityAction
    ) -> None:
        if approval is None:
            raise InvalidTransition(f"'{action.value}' requires an eligibility decision")
        approval.raise_for_rejection()
        if approval.action != action or approval.user_id != entitlement.user_id:
            raise InvalidTransition("Eligibility decision does not match this transition")

    def _build(
        self,
        kind: TransitionKind,
        entitlement: Entitlement,
        updates: dict[str, Any],
        effects: list[SideEffect],
    ) -> TransitionResult:
        data = entitlement.model_dump()
        data.update(updates)
        try:
            updated = Entitlement.model_validate(data)
        except ValidationError as e:
            raise InvalidTransition(f"'{kind.value}' would break entitlement invariants") from e
        return TransitionResult(kind=kind, entitlement=updated, effects=effects)

    def _period_tranche(self, quota_total: int, duration_days: int) -> int:
        periods = max(1, duration_days // self.config.quota_period_days)
        return max(1, quota_total // periods)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _activate_trial(self, entitlement: Entitlement, *, now: datetime, **_) -> TransitionResult:
        if not can_start_trial(entitlement):
            raise InvalidTransition("Free trial can no longer be started for this user")

        quota = self.config.trial_quota
        return self._build(
            TransitionKind.ACTIVATE_TRIAL,
            entitlement,
            {
                "tier": Tier.FREE_TRIAL,
                "status": EntitlementStatus.ACTIVE,
                "start_date": now,
                "end_date": now + timedelta(days=self.config.trial_duration_days),
                "quota_total": quota,
                "quota_remaining": quota,
                "last_quota_reset_at": now,
                "has_ever_used_trial": True,
                "cancelled_at": None,
            },
            [
                SideEffect(type=SideEffectType.TRIAL_STARTED, data={"days": self.config.trial_duration_days}),
                SideEffect(type=SideEffectType.QUOTA_GRANTED, data={"amount": quota, "remaining": quota}),
            ],
        )

    def _activate_tier(
        self,
        entitlement: Entitlement,
        *,
        now: datetime,
        tier_id: str | Tier | None = None,
        discount: Discount | None = None,
    ) -> TransitionResult:
        if not can_activate_tier(entitlement):
            raise InvalidTransition("A subscription became active before this activation")
        if tier_id is None:
            raise InvalidTransition("activate_tier requires a tier")

        definition = self.catalog.get(tier_id)
        effects: list[SideEffect] = [
            SideEffect(
                type=SideEffectType.TIER_ACTIVATED,
                data={"tier": definition.id.value, "duration_days": definition.duration_days},
            )
        ]

        attached = pending_discount(entitlement)
        if discount is not None and attached is not None and attached.code != discount.code:
            raise DiscountAlreadyApplied(current_code=attached.code)
        effective = attached or discount

        grant = definition.quota_grant
        if effective is not None:
            effective = effective.model_copy(update={"redeemed_at": now})
            if self.config.discount_scales_quota:
                grant = int(grant * (100 - effective.percentage) / 100)
            effects.append(
                SideEffect(
                    type=SideEffectType.DISCOUNT_REDEEMED,
                    data={"code": effective.code, "percentage": effective.percentage},
                )
            )

        effects.append(SideEffect(type=SideEffectType.QUOTA_GRANTED, data={"amount": grant, "remaining": grant}))

        return self._build(
            TransitionKind.ACTIVATE_TIER,
            entitlement,
            {
                "tier": definition.id,
                "status": EntitlementStatus.ACTIVE,
                "start_date": now,
                "end_date": now + timedelta(days=definition.duration_days),
                "quota_total": grant,
                "quota_remaining": grant,
                "last_quota_reset_at": now,
                # A previously redeemed discount stays on the record for audit
                "discount": effective.model_dump() if effective else entitlement.discount,
                "cancelled_at": None,
            },
            effects,
        )

    def _cancel(self, entitlement: Entitlement, *, now: datetime, **_) -> TransitionResult:
        if entitlement.status != EntitlementStatus.ACTIVE:
            raise InvalidTransition("Only an active subscription can be cancelled")

        # end_date is kept for audit
        return self._build(
            TransitionKind.CANCEL,
            entitlement,
            {
                "status": EntitlementStatus.CANCELLED,
                "quota_remaining": 0,
                "cancelled_at": now,
            },
            [
                SideEffect(type=SideEffectType.SUBSCRIPTION_CANCELLED, data={"tier": entitlement.tier.value}),
                SideEffect(type=SideEffectType.QUOTA_REVOKED, data={"amount": entitlement.quota_remaining}),
            ],
        )

    def _expire(self, entitlement: Entitlement, *, now: datetime, **_) -> TransitionResult:
        if entitlement.status != EntitlementStatus.ACTIVE:
            raise InvalidTransition("Only an active subscription can expire")
        if entitlement.end_date is None or now < entitlement.end_date:
            raise InvalidTransition("Subscription has not reached its end date")

        return self._build(
            TransitionKind.EXPIRE,
            entitlement,
            {
                "status": EntitlementStatus.EXPIRED,
                "quota_remaining": 0,
            },
            [
                SideEffect(
                    type=SideEffectType.SUBSCRIPTION_EXPIRED,
                    data={"tier": entitlement.tier.value, "end_date": entitlement.end_date.isoformat()},
                ),
                SideEffect(type=SideEffectType.QUOTA_REVOKED, data={"amount": entitlement.quota_remaining}),
            ],
        )

    def is_reset_due(self, entitlement: Entitlement, now: datetime) -> bool:
        return (
            entitlement.status == EntitlementStatus.ACTIVE
            and entitlement.tier in PAID_TIERS
            and entitlement.last_quota_reset_at is not None
            and now - entitlement.last_quota_reset_at >= self.quota_period
        )

    def _reset_quota(self, entitlement: Entitlement, *, now: datetime, **_) -> TransitionResult:
        if not self.is_reset_due(entitlement, now):
            raise InvalidTransition("Quota reset is not due")

        definition = self.catalog.get(entitlement.tier)
        cap = entitlement.quota_total
        if self.config.quota_reset_policy == QuotaResetPolicy.FULL_GRANT:
            remaining = cap
        else:
            tranche = self._period_tranche(cap, definition.duration_days)
            remaining = min(cap, entitlement.quota_remaining + tranche)

        return self._build(
            TransitionKind.RESET_QUOTA,
            entitlement,
            {
                "quota_remaining": remaining,
                "last_quota_reset_at": now,
            },
            [
                SideEffect(
                    type=SideEffectType.QUOTA_GRANTED,
                    data={
                        "amount": remaining - entitlement.quota_remaining,
                        "remaining": remaining,
                        "policy": self.config.quota_reset_policy.value,
                    },
                )
            ],
        )

    def _admin_reset_quota(self, entitlement: Entitlement, *, now: datetime, **_) -> TransitionResult:
        if entitlement.status != EntitlementStatus.ACTIVE or entitlement.tier == Tier.NONE:
            raise InvalidTransition("Quota can only be reset on an active subscription")

        remaining = entitlement.quota_total
        return self._build(
            TransitionKind.ADMIN_RESET_QUOTA,
            entitlement,
            {
                "quota_remaining": remaining,
                "last_quota_reset_at": now,
            },
            [
                SideEffect(
                    type=SideEffectType.QUOTA_GRANTED,
                    data={"amount": remaining - entitlement.quota_remaining, "remaining": remaining},
                )
            ],
        )

    def _attach_discount(
        self, entitlement: Entitlement, *, now: datetime, discount: Discount | None = None, **_
    ) -> TransitionResult:
        if discount is None:
            raise InvalidTransition("attach_discount requires a discount")
        if pending_discount(entitlement) is not None:
            raise InvalidTransition("A discount was attached concurrently")

        attached = discount.model_copy(update={"applied_at": now, "redeemed_at": None})
        return self._build(
            TransitionKind.ATTACH_DISCOUNT,
            entitlement,
            {"discount": attached.model_dump()},
            [
                SideEffect(
                    type=SideEffectType.DISCOUNT_ATTACHED,
                    data={"code": attached.code, "percentage": attached.percentage},
                )
            ],
        )

    def _clear_discount(self, entitlement: Entitlement, **_) -> TransitionResult:
        if entitlement.discount is None:
            raise InvalidTransition("No discount is attached")

        return self._build(
            TransitionKind.CLEAR_DISCOUNT,
            entitlement,
            {"discount": None},
            [SideEffect(type=SideEffectType.DISCOUNT_CLEARED, data={"code": entitlement.discount.code})],
        )

    def _consume_quota(self, entitlement: Entitlement, *, now: datetime, **_) -> TransitionResult:
        if entitlement.status != EntitlementStatus.ACTIVE:
            raise NoActiveSubscription(status=entitlement.status.value)
        if entitlement.end_date is not None and now >= entitlement.end_date:
            raise NoActiveSubscription("Your subscription has expired", status="expired")
        if entitlement.quota_remaining <= 0:
            raise QuotaExceeded(tier=entitlement.tier.value, remaining=0)

        remaining = entitlement.quota_remaining - 1
        return self._build(
            TransitionKind.CONSUME_QUOTA,
            entitlement,
            {
                "quota_remaining": remaining,
                "last_metered_action_at": now,
                "total_metered_actions_lifetime": entitlement.total_metered_actions_lifetime + 1,
            },
            [SideEffect(type=SideEffectType.QUOTA_CONSUMED, data={"remaining": remaining})],
        )
