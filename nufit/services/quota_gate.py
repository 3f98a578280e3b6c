"""Quota gate for metered actions (plan generation)."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog

from nufit.errors import NoActiveSubscription, QuotaExceeded
from nufit.models.entitlement import EntitlementStatus, QuotaAuthorization, TransitionKind
from nufit.services.entitlement_service import EntitlementService

logger = structlog.get_logger(__name__)


class QuotaGate:
    """Authorizes metered actions and consumes quota after they succeed."""

    def __init__(self, service: EntitlementService) -> None:
        self.service = service

    async def authorize(self, user_id: str) -> QuotaAuthorization:
        """
        Check that `user_id` may start a metered action.

        Due expiry and anniversary resets are applied first, so a user whose
        period rolled over before the daily sweep is judged on the new state.

        Raises:
            NoActiveSubscription: status is not active (or just expired).
            QuotaExceeded: no quota left in the current period.
        """
        entitlement = await self.service.refresh(user_id)

        if entitlement.status != EntitlementStatus.ACTIVE:
            raise NoActiveSubscription(
                status=entitlement.status.value,
                can_start_free_trial=not entitlement.has_ever_used_trial,
            )
        if entitlement.quota_remaining <= 0:
            raise QuotaExceeded(tier=entitlement.tier.value, remaining=0)

        return QuotaAuthorization(
            allow=True,
            remaining=entitlement.quota_remaining,
            tier=entitlement.tier,
        )

    async def consume(self, user_id: str) -> int:
        """Atomically take one unit of quota; returns what is left.

        The guard is evaluated against the stored record at write time, not
        against the earlier authorize() read.
        """
        stored = await self.service.run_transition(user_id, TransitionKind.CONSUME_QUOTA)
        logger.info(
            "quota_consumed",
            user_id=user_id,
            remaining=stored.quota_remaining,
            lifetime=stored.total_metered_actions_lifetime,
        )
        return stored.quota_remaining

    @asynccontextmanager
    async def metered(self, user_id: str) -> AsyncIterator[QuotaAuthorization]:
        """Authorize on enter; consume only if the body finishes without raising."""
        authorization = await self.authorize(user_id)
        yield authorization
        await self.consume(user_id)
