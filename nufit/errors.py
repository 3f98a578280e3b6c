"""Typed failures raised by the entitlement lifecycle."""


class EntitlementError(Exception):
    """Recoverable lifecycle failure, translated into a denial at the HTTP edge."""

    code = "entitlement_error"
    status_code = 400

    def __init__(self, message: str | None = None, **details) -> None:
        self.message = message or self.__doc__ or self.code
        self.details = details
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message, **self.details}


class InvalidTier(EntitlementError):
    """Unknown subscription tier."""

    code = "invalid_tier"
    status_code = 400


class TrialAlreadyUsed(EntitlementError):
    """This user has already used their free trial."""

    code = "trial_already_used"
    status_code = 409


class SubscriptionActive(EntitlementError):
    """A subscription is already active; cancel it before switching tiers."""

    code = "subscription_active"
    status_code = 409


class DiscountAlreadyApplied(EntitlementError):
    """A discount is already attached; clear it before applying another."""

    code = "discount_already_applied"
    status_code = 409


class InvalidDiscount(EntitlementError):
    """Discount must be a percentage between 0 and 100."""

    code = "invalid_discount"
    status_code = 400


class InvalidTransition(EntitlementError):
    """The entitlement changed; re-fetch the current state and retry."""

    code = "invalid_transition"
    status_code = 409


class NoActiveSubscription(EntitlementError):
    """This feature requires an active subscription."""

    code = "no_active_subscription"
    status_code = 402


class QuotaExceeded(EntitlementError):
    """Plan generation quota exhausted for the current period."""

    code = "quota_exceeded"
    status_code = 402


class StoreUnavailable(Exception):
    """The entitlement store cannot be read or written. Retry with backoff."""


class VersionConflict(Exception):
    """Conditional write lost against a concurrent writer."""

    def __init__(self, user_id: str, expected_version: int) -> None:
        self.user_id = user_id
        self.expected_version = expected_version
        super().__init__(f"version conflict for {user_id} (expected {expected_version})")
