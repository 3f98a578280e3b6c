"""Entitlement operations exposed to request handlers and collaborators."""

from datetime import UTC, datetime

import structlog

from nufit.config import SubscriptionConfig
from nufit.errors import (
    DiscountAlreadyApplied,
    InvalidDiscount,
    InvalidTier,
    InvalidTransition,
    VersionConflict,
)
from nufit.models.entitlement import (
    Decision,
    Discount,
    EligibilityAction,
    Entitlement,
    EntitlementStatus,
    Tier,
    TierDefinition,
    TransitionKind,
    TransitionResult,
)
from nufit.services.eligibility import evaluate, pending_discount
from nufit.services.entitlement_store import EntitlementStore
from nufit.services.lifecycle import TransitionEngine
from nufit.services.tier_catalog import TierCatalog

logger = structlog.get_logger(__name__)

# Code recorded when the payment collaborator reports a percentage without one
CHECKOUT_DISCOUNT_CODE = "checkout"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _validated_percentage(percentage: float | int | str | None) -> float:
    try:
        value = float(percentage)
    except (TypeError, ValueError):
        raise InvalidDiscount(received=percentage) from None
    if not 0 <= value <= 100:
        raise InvalidDiscount(received=percentage)
    return value


class EntitlementService:
    """Runs lifecycle transitions as conditional read-modify-write cycles."""

    def __init__(
        self,
        store: EntitlementStore,
        engine: TransitionEngine,
        catalog: TierCatalog,
        config: SubscriptionConfig,
        now_provider=_utcnow,
    ) -> None:
        self.store = store
        self.engine = engine
        self.catalog = catalog
        self.config = config
        self.now_provider = now_provider

    async def _load(self, user_id: str) -> Entitlement:
        entitlement = await self.store.get(user_id)
        if entitlement is None:
            # Created implicitly with the account; persisted on first transition.
            entitlement = Entitlement(user_id=user_id)
        return entitlement

    def _log_transition(self, result: TransitionResult, stored: Entitlement) -> None:
        logger.info(
            "entitlement_transition_applied",
            user_id=stored.user_id,
            transition=result.kind.value,
            version=stored.version,
            status=stored.status.value,
            tier=stored.tier.value,
            quota_remaining=stored.quota_remaining,
            effects=[effect.type.value for effect in result.effects],
        )

    async def run_transition(
        self,
        user_id: str,
        kind: TransitionKind,
        *,
        approval: Decision | None = None,
        tier_id: str | Tier | None = None,
        discount: Discount | None = None,
        current: Entitlement | None = None,
    ) -> Entitlement:
        """Apply a transition and persist it against the version it was computed from.

        On a version conflict the record is re-read and the transition is
        recomputed, so its precondition is re-checked against the newer state.
        """
        entitlement = current if current is not None else await self._load(user_id)
        attempts = self.config.max_write_attempts

        for attempt in range(1, attempts + 1):
            result = self.engine.apply(
                entitlement,
                kind,
                now=self.now_provider(),
                approval=approval,
                tier_id=tier_id,
                discount=discount,
            )
            try:
                stored = await self.store.compare_and_set(result.entitlement, entitlement.version)
            except VersionConflict:
                logger.info(
                    "entitlement_write_conflict",
                    user_id=user_id,
                    transition=kind.value,
                    attempt=attempt,
                )
                entitlement = await self._load(user_id)
                continue

            self._log_transition(result, stored)
            return stored

        raise InvalidTransition(
            "The entitlement kept changing; re-fetch the current state and retry",
            transition=kind.value,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_entitlement(self, user_id: str) -> Entitlement:
        return await self._load(user_id)

    def list_tiers(self) -> list[TierDefinition]:
        return self.catalog.list_tiers()

    async def refresh(self, user_id: str) -> Entitlement:
        """Apply any expiry or anniversary reset that is already due.

        The scheduled sweeps do the same work in bulk; whichever runs first
        wins and the other finds the precondition no longer holds.
        """
        entitlement = await self._load(user_id)
        if entitlement.status != EntitlementStatus.ACTIVE:
            return entitlement

        now = self.now_provider()
        if entitlement.end_date is not None and now >= entitlement.end_date:
            kind = TransitionKind.EXPIRE
        elif self.engine.is_reset_due(entitlement, now):
            kind = TransitionKind.RESET_QUOTA
        else:
            return entitlement

        try:
            return await self.run_transition(user_id, kind, current=entitlement)
        except InvalidTransition:
            return await self._load(user_id)

    # ------------------------------------------------------------------
    # User actions
    # ------------------------------------------------------------------

    async def activate_trial(self, user_id: str) -> Entitlement:
        entitlement = await self.refresh(user_id)
        decision = evaluate(entitlement, EligibilityAction.START_TRIAL)
        decision.raise_for_rejection()
        return await self.run_transition(
            user_id,
            TransitionKind.ACTIVATE_TRIAL,
            approval=decision,
            current=entitlement,
        )

    async def activate_tier(
        self,
        user_id: str,
        tier_id: str | Tier,
        discount_code: str | None = None,
        discount_percentage: float | None = None,
    ) -> Entitlement:
        """Start a paid period, typically after the payment webhook confirms it."""
        tier = self.catalog.resolve(tier_id)
        # A period that ended before the expiry sweep ran must not block renewal
        entitlement = await self.refresh(user_id)
        decision = evaluate(
            entitlement,
            EligibilityAction.ACTIVATE_TIER,
            catalog=self.catalog,
            tier_id=tier,
        )
        decision.raise_for_rejection()

        attached = pending_discount(entitlement)
        discount: Discount | None = None
        if discount_percentage is not None:
            discount = Discount(
                code=discount_code or CHECKOUT_DISCOUNT_CODE,
                percentage=_validated_percentage(discount_percentage),
                applied_at=self.now_provider(),
            )
            if attached is not None and attached.code != discount.code:
                raise DiscountAlreadyApplied(current_code=attached.code)
        elif discount_code:
            if attached is None:
                raise InvalidDiscount(
                    f"Discount '{discount_code}' is not attached to this account",
                    code=discount_code,
                )
            if attached.code != discount_code:
                raise DiscountAlreadyApplied(current_code=attached.code)

        return await self.run_transition(
            user_id,
            TransitionKind.ACTIVATE_TIER,
            approval=decision,
            tier_id=tier,
            discount=discount,
            current=entitlement,
        )

    async def cancel(self, user_id: str) -> Entitlement:
        return await self.run_transition(user_id, TransitionKind.CANCEL)

    async def apply_discount(self, user_id: str, code: str, percentage: float) -> Entitlement:
        code = (code or "").strip()
        if not code:
            raise InvalidDiscount("A discount code is required")
        discount = Discount(
            code=code,
            percentage=_validated_percentage(percentage),
            applied_at=self.now_provider(),
        )

        entitlement = await self._load(user_id)
        decision = evaluate(entitlement, EligibilityAction.APPLY_DISCOUNT)
        decision.raise_for_rejection()
        return await self.run_transition(
            user_id,
            TransitionKind.ATTACH_DISCOUNT,
            approval=decision,
            discount=discount,
            current=entitlement,
        )

    async def clear_discount(self, user_id: str) -> Entitlement:
        return await self.run_transition(user_id, TransitionKind.CLEAR_DISCOUNT)

    async def admin_reset_quota(self, user_id: str, tier: str | Tier | None = None) -> Entitlement:
        """Restore a single user's quota to the period grant (support tooling)."""
        entitlement = await self._load(user_id)
        if tier is not None:
            expected = self.catalog.resolve(tier)
            if entitlement.tier != expected:
                raise InvalidTier(
                    f"User has tier '{entitlement.tier.value}' but reset requested for '{expected.value}'",
                    tier_id=expected.value,
                )
        return await self.run_transition(
            user_id, TransitionKind.ADMIN_RESET_QUOTA, current=entitlement
        )
