"""
Application constants.

These values are stable across environments and do not need env-var
overrides. Lifecycle policy parameters that may vary per deployment live in
config.py (SubscriptionConfig).
"""

API_TITLE = "NuFit Entitlements API"
API_VERSION = "1.0.0"

SERVICE_NAME = "nufit-entitlements"

# Currency for every catalog price
CURRENCY = "AED"

# Feature unlocked by an active entitlement
PLAN_GENERATION_FEATURE = "plan_generation"
