"""Unit tests for the lifecycle transition engine."""

from datetime import UTC, datetime, timedelta

import pytest

from nufit.config import QuotaResetPolicy, SubscriptionConfig
from nufit.errors import (
    DiscountAlreadyApplied,
    InvalidTransition,
    NoActiveSubscription,
    QuotaExceeded,
    TrialAlreadyUsed,
)
from nufit.models.entitlement import (
    Decision,
    Discount,
    EligibilityAction,
    Entitlement,
    EntitlementStatus,
    SideEffectType,
    Tier,
    TransitionKind,
)
from nufit.services.eligibility import evaluate
from nufit.services.lifecycle import TransitionEngine
from nufit.services.tier_catalog import TierCatalog

NOW = datetime(2026, 1, 1, tzinfo=UTC)


def make_engine(**config) -> TransitionEngine:
    return TransitionEngine(TierCatalog(), SubscriptionConfig(**config))


def activate(engine: TransitionEngine, entitlement: Entitlement, tier: str, now=NOW) -> Entitlement:
    decision = evaluate(
        entitlement, EligibilityAction.ACTIVATE_TIER, catalog=engine.catalog, tier_id=tier
    )
    result = engine.apply(
        entitlement, TransitionKind.ACTIVATE_TIER, now=now, approval=decision, tier_id=tier
    )
    return result.entitlement


class TestActivateTrial:
    def test_trial_grants_one_plan_for_seven_days(self):
        engine = make_engine()
        entitlement = Entitlement(user_id="u1")
        decision = evaluate(entitlement, EligibilityAction.START_TRIAL)

        result = engine.apply(entitlement, TransitionKind.ACTIVATE_TRIAL, now=NOW, approval=decision)
        trial = result.entitlement

        assert trial.tier == Tier.FREE_TRIAL
        assert trial.status == EntitlementStatus.ACTIVE
        assert trial.end_date == NOW + timedelta(days=7)
        assert trial.quota_total == 1
        assert trial.quota_remaining == 1
        assert trial.has_ever_used_trial is True
        assert trial.last_quota_reset_at == NOW
        assert [e.type for e in result.effects] == [
            SideEffectType.TRIAL_STARTED,
            SideEffectType.QUOTA_GRANTED,
        ]

    def test_requires_approval(self):
        with pytest.raises(InvalidTransition):
            make_engine().apply(Entitlement(user_id="u1"), TransitionKind.ACTIVATE_TRIAL, now=NOW)

    def test_rejected_decision_raises_its_error(self):
        used = Entitlement(user_id="u1", has_ever_used_trial=True)
        decision = evaluate(used, EligibilityAction.START_TRIAL)

        with pytest.raises(TrialAlreadyUsed):
            make_engine().apply(used, TransitionKind.ACTIVATE_TRIAL, now=NOW, approval=decision)

    def test_decision_for_another_user_is_refused(self):
        decision = evaluate(Entitlement(user_id="u2"), EligibilityAction.START_TRIAL)

        with pytest.raises(InvalidTransition):
            make_engine().apply(
                Entitlement(user_id="u1"), TransitionKind.ACTIVATE_TRIAL, now=NOW, approval=decision
            )

    def test_stale_approval_is_rechecked(self):
        # Approved against an unused record, applied to one that has since used the trial
        decision = evaluate(Entitlement(user_id="u1"), EligibilityAction.START_TRIAL)
        moved = Entitlement(user_id="u1", has_ever_used_trial=True, status=EntitlementStatus.EXPIRED)

        with pytest.raises(InvalidTransition):
            make_engine().apply(moved, TransitionKind.ACTIVATE_TRIAL, now=NOW, approval=decision)


class TestActivateTier:
    def test_monthly_activation(self):
        entitlement = activate(make_engine(), Entitlement(user_id="u1"), "monthly")

        assert entitlement.tier == Tier.MONTHLY
        assert entitlement.start_date == NOW
        assert entitlement.end_date == NOW + timedelta(days=30)
        assert entitlement.quota_total == 4
        assert entitlement.quota_remaining == 4

    def test_quarterly_activation_ends_on_april_first(self):
        entitlement = activate(make_engine(), Entitlement(user_id="u1"), "quarterly")

        assert entitlement.end_date == datetime(2026, 4, 1, tzinfo=UTC)
        assert entitlement.quota_remaining == 12

    def test_reactivation_after_expiry_clears_cancellation(self):
        cancelled = Entitlement(
            user_id="u1",
            tier=Tier.MONTHLY,
            status=EntitlementStatus.CANCELLED,
            cancelled_at=NOW,
        )

        entitlement = activate(make_engine(), cancelled, "quarterly", now=NOW + timedelta(days=3))

        assert entitlement.status == EntitlementStatus.ACTIVE
        assert entitlement.cancelled_at is None

    def test_attached_discount_is_redeemed_and_kept(self):
        engine = make_engine()
        entitlement = Entitlement(
            user_id="u1",
            discount=Discount(code="SAVE20", percentage=20, applied_at=NOW),
        )

        activated = activate(engine, entitlement, "monthly", now=NOW + timedelta(hours=1))

        assert activated.discount.percentage == 20
        assert activated.discount.redeemed_at == NOW + timedelta(hours=1)
        # int(4 * 0.8)
        assert activated.quota_total == 3

    def test_discount_scales_quota(self):
        engine = make_engine()
        entitlement = Entitlement(
            user_id="u1",
            discount=Discount(code="HALF", percentage=50, applied_at=NOW),
        )

        activated = activate(engine, entitlement, "quarterly")

        assert activated.quota_total == 6
        assert activated.quota_remaining == 6

    def test_quota_unscaled_when_scaling_disabled(self):
        engine = make_engine(discount_scales_quota=False)
        entitlement = Entitlement(
            user_id="u1",
            discount=Discount(code="HALF", percentage=50, applied_at=NOW),
        )

        activated = activate(engine, entitlement, "quarterly")

        assert activated.quota_total == 12
        assert activated.discount.redeemed_at == NOW

    def test_redeemed_discount_does_not_block_checkout_discount(self):
        engine = make_engine()
        redeemed_at = NOW - timedelta(days=40)
        entitlement = Entitlement(
            user_id="u1",
            status=EntitlementStatus.EXPIRED,
            discount=Discount(code="SAVE20", percentage=20, applied_at=redeemed_at, redeemed_at=redeemed_at),
        )
        decision = evaluate(
            entitlement, EligibilityAction.ACTIVATE_TIER, catalog=engine.catalog, tier_id="monthly"
        )

        result = engine.apply(
            entitlement,
            TransitionKind.ACTIVATE_TIER,
            now=NOW,
            approval=decision,
            tier_id="monthly",
            discount=Discount(code="checkout", percentage=50, applied_at=NOW),
        )

        assert result.entitlement.discount.code == "checkout"
        assert result.entitlement.discount.redeemed_at == NOW
        assert result.entitlement.quota_total == 2

    def test_redeemed_discount_is_not_redeemed_twice(self):
        engine = make_engine()
        redeemed_at = NOW - timedelta(days=40)
        entitlement = Entitlement(
            user_id="u1",
            status=EntitlementStatus.EXPIRED,
            discount=Discount(code="SAVE20", percentage=20, applied_at=redeemed_at, redeemed_at=redeemed_at),
        )
        decision = evaluate(
            entitlement, EligibilityAction.ACTIVATE_TIER, catalog=engine.catalog, tier_id="monthly"
        )

        result = engine.apply(
            entitlement, TransitionKind.ACTIVATE_TIER, now=NOW, approval=decision, tier_id="monthly"
        )

        assert result.entitlement.discount.redeemed_at == redeemed_at
        assert SideEffectType.DISCOUNT_REDEEMED not in [e.type for e in result.effects]

    def test_conflicting_checkout_discount_is_rejected(self):
        engine = make_engine()
        entitlement = Entitlement(
            user_id="u1",
            discount=Discount(code="SAVE20", percentage=20, applied_at=NOW),
        )
        decision = evaluate(
            entitlement, EligibilityAction.ACTIVATE_TIER, catalog=engine.catalog, tier_id="monthly"
        )

        with pytest.raises(DiscountAlreadyApplied):
            engine.apply(
                entitlement,
                TransitionKind.ACTIVATE_TIER,
                now=NOW,
                approval=decision,
                tier_id="monthly",
                discount=Discount(code="OTHER", percentage=10, applied_at=NOW),
            )

    def test_approval_for_another_action_is_refused(self):
        entitlement = Entitlement(user_id="u1")
        decision = evaluate(entitlement, EligibilityAction.START_TRIAL)

        with pytest.raises(InvalidTransition):
            make_engine().apply(
                entitlement, TransitionKind.ACTIVATE_TIER, now=NOW, approval=decision, tier_id="monthly"
            )


class TestCancelAndExpire:
    def test_cancel_zeroes_quota_and_keeps_end_date(self):
        engine = make_engine()
        active = activate(engine, Entitlement(user_id="u1"), "monthly")

        result = engine.apply(active, TransitionKind.CANCEL, now=NOW + timedelta(days=5))

        assert result.entitlement.status == EntitlementStatus.CANCELLED
        assert result.entitlement.quota_remaining == 0
        assert result.entitlement.end_date == active.end_date
        assert result.entitlement.cancelled_at == NOW + timedelta(days=5)

    def test_cancel_requires_active(self):
        with pytest.raises(InvalidTransition):
            make_engine().apply(Entitlement(user_id="u1"), TransitionKind.CANCEL, now=NOW)

    def test_expire_at_end_date(self):
        engine = make_engine()
        active = activate(engine, Entitlement(user_id="u1"), "monthly")

        result = engine.apply(active, TransitionKind.EXPIRE, now=active.end_date)

        assert result.entitlement.status == EntitlementStatus.EXPIRED
        assert result.entitlement.quota_remaining == 0
        assert result.entitlement.tier == Tier.MONTHLY

    def test_expire_before_end_date_is_refused(self):
        engine = make_engine()
        active = activate(engine, Entitlement(user_id="u1"), "monthly")

        with pytest.raises(InvalidTransition):
            engine.apply(active, TransitionKind.EXPIRE, now=NOW + timedelta(days=29))

    def test_expired_record_is_not_expired_again(self):
        engine = make_engine()
        active = activate(engine, Entitlement(user_id="u1"), "monthly")
        expired = engine.apply(active, TransitionKind.EXPIRE, now=active.end_date).entitlement

        with pytest.raises(InvalidTransition):
            engine.apply(expired, TransitionKind.EXPIRE, now=active.end_date + timedelta(days=1))


class TestQuotaReset:
    def _drained(self, engine: TransitionEngine, tier: str) -> Entitlement:
        entitlement = activate(engine, Entitlement(user_id="u1"), tier)
        return entitlement.model_copy(update={"quota_remaining": 0})

    def test_monthly_restores_full_grant_after_thirty_days(self):
        engine = make_engine()
        drained = self._drained(engine, "monthly")

        result = engine.apply(drained, TransitionKind.RESET_QUOTA, now=NOW + timedelta(days=30))

        assert result.entitlement.quota_remaining == 4
        assert result.entitlement.last_quota_reset_at == NOW + timedelta(days=30)

    def test_reset_not_due_before_thirty_days(self):
        engine = make_engine()
        drained = self._drained(engine, "monthly")

        assert engine.is_reset_due(drained, NOW + timedelta(days=15)) is False
        with pytest.raises(InvalidTransition):
            engine.apply(drained, TransitionKind.RESET_QUOTA, now=NOW + timedelta(days=15))

    def test_quarterly_adds_four_per_period(self):
        engine = make_engine()
        drained = self._drained(engine, "quarterly")

        result = engine.apply(drained, TransitionKind.RESET_QUOTA, now=NOW + timedelta(days=30))

        assert result.entitlement.quota_remaining == 4

    def test_quarterly_tranche_is_capped_at_total(self):
        engine = make_engine()
        full = activate(engine, Entitlement(user_id="u1"), "quarterly")

        result = engine.apply(full, TransitionKind.RESET_QUOTA, now=NOW + timedelta(days=30))

        assert result.entitlement.quota_remaining == 12

    def test_full_grant_policy_restores_total(self):
        engine = make_engine(quota_reset_policy=QuotaResetPolicy.FULL_GRANT)
        drained = self._drained(engine, "quarterly")

        result = engine.apply(drained, TransitionKind.RESET_QUOTA, now=NOW + timedelta(days=30))

        assert result.entitlement.quota_remaining == 12

    def test_trial_is_never_reset(self):
        engine = make_engine()
        entitlement = Entitlement(user_id="u1")
        decision = evaluate(entitlement, EligibilityAction.START_TRIAL)
        trial = engine.apply(entitlement, TransitionKind.ACTIVATE_TRIAL, now=NOW, approval=decision).entitlement

        assert engine.is_reset_due(trial, NOW + timedelta(days=30)) is False

    def test_admin_reset_restores_total_immediately(self):
        engine = make_engine()
        drained = self._drained(engine, "quarterly")

        result = engine.apply(drained, TransitionKind.ADMIN_RESET_QUOTA, now=NOW + timedelta(days=1))

        assert result.entitlement.quota_remaining == 12

    def test_admin_reset_requires_active(self):
        with pytest.raises(InvalidTransition):
            make_engine().apply(Entitlement(user_id="u1"), TransitionKind.ADMIN_RESET_QUOTA, now=NOW)


class TestDiscountTransitions:
    def test_attach_requires_approval(self):
        with pytest.raises(InvalidTransition):
            make_engine().apply(
                Entitlement(user_id="u1"),
                TransitionKind.ATTACH_DISCOUNT,
                now=NOW,
                discount=Discount(code="X", percentage=5, applied_at=NOW),
            )

    def test_attach_then_clear(self):
        engine = make_engine()
        entitlement = Entitlement(user_id="u1")
        decision = evaluate(entitlement, EligibilityAction.APPLY_DISCOUNT)

        attached = engine.apply(
            entitlement,
            TransitionKind.ATTACH_DISCOUNT,
            now=NOW,
            approval=decision,
            discount=Discount(code="SPRING", percentage=15, applied_at=NOW - timedelta(days=1)),
        ).entitlement
        cleared = engine.apply(attached, TransitionKind.CLEAR_DISCOUNT, now=NOW).entitlement

        assert attached.discount.code == "SPRING"
        assert attached.discount.applied_at == NOW
        assert cleared.discount is None

    def test_clear_without_discount_is_refused(self):
        with pytest.raises(InvalidTransition):
            make_engine().apply(Entitlement(user_id="u1"), TransitionKind.CLEAR_DISCOUNT, now=NOW)


class TestConsumeQuota:
    def test_consume_decrements_and_counts(self):
        engine = make_engine()
        active = activate(engine, Entitlement(user_id="u1"), "monthly")

        result = engine.apply(active, TransitionKind.CONSUME_QUOTA, now=NOW + timedelta(hours=2))

        assert result.entitlement.quota_remaining == 3
        assert result.entitlement.total_metered_actions_lifetime == 1
        assert result.entitlement.last_metered_action_at == NOW + timedelta(hours=2)

    def test_consume_at_zero_raises_quota_exceeded(self):
        engine = make_engine()
        active = activate(engine, Entitlement(user_id="u1"), "monthly")
        drained = active.model_copy(update={"quota_remaining": 0})

        with pytest.raises(QuotaExceeded):
            engine.apply(drained, TransitionKind.CONSUME_QUOTA, now=NOW)

    def test_consume_without_subscription_raises(self):
        with pytest.raises(NoActiveSubscription):
            make_engine().apply(Entitlement(user_id="u1"), TransitionKind.CONSUME_QUOTA, now=NOW)

    def test_consume_after_end_date_raises(self):
        engine = make_engine()
        active = activate(engine, Entitlement(user_id="u1"), "monthly")

        with pytest.raises(NoActiveSubscription):
            engine.apply(active, TransitionKind.CONSUME_QUOTA, now=active.end_date)


def test_rejected_decision_raises_stored_error():
    decision = Decision(
        user_id="u1",
        action=EligibilityAction.START_TRIAL,
        approved=False,
        version=0,
        error=TrialAlreadyUsed(),
    )

    with pytest.raises(TrialAlreadyUsed):
        decision.raise_for_rejection()
