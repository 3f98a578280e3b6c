"""Static catalog of subscription tiers."""

from nufit.errors import InvalidTier
from nufit.models.entitlement import Tier, TierDefinition

DEFAULT_TIERS: tuple[TierDefinition, ...] = (
    TierDefinition(
        id=Tier.FREE_TRIAL,
        name="Free Trial",
        price=0,
        duration_days=7,
        quota_grant=1,
    ),
    TierDefinition(
        id=Tier.MONTHLY,
        name="Monthly",
        price=300,
        duration_days=30,
        quota_grant=4,
    ),
    TierDefinition(
        id=Tier.QUARTERLY,
        name="Quarterly",
        price=750,
        duration_days=90,
        quota_grant=12,
    ),
)

# Identifiers used by older clients and payment metadata
LEGACY_TIER_IDS: dict[str, Tier] = {
    "trial": Tier.FREE_TRIAL,
    "one-month": Tier.MONTHLY,
    "three-month": Tier.QUARTERLY,
}


class TierCatalog:
    """Read-only lookup of tier definitions."""

    def __init__(self, tiers: tuple[TierDefinition, ...] = DEFAULT_TIERS) -> None:
        self._tiers: dict[Tier, TierDefinition] = {t.id: t for t in tiers}

    def resolve(self, tier_id: str | Tier) -> Tier:
        """Normalize a tier id (including legacy aliases) to a catalog key."""
        if isinstance(tier_id, Tier):
            tier = tier_id
        else:
            key = str(tier_id).strip().lower()
            tier = LEGACY_TIER_IDS.get(key)
            if tier is None:
                try:
                    tier = Tier(key)
                except ValueError:
                    raise InvalidTier(
                        f"Unknown tier '{tier_id}'", tier_id=str(tier_id)
                    ) from None
        if tier not in self._tiers:
            raise InvalidTier(f"Unknown tier '{tier_id}'", tier_id=str(tier_id))
        return tier

    def get(self, tier_id: str | Tier) -> TierDefinition:
        return self._tiers[self.resolve(tier_id)]

    def list_tiers(self) -> list[TierDefinition]:
        return list(self._tiers.values())

    def discounted_price(self, tier_id: str | Tier, percentage: float | None) -> float:
        """Price after a percentage discount, for the payment collaborator."""
        price = self.get(tier_id).price
        if not percentage:
            return price
        return round(price * (1 - percentage / 100), 2)
