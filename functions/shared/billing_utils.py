"""Shared billing utilities: price configuration, status/tier mapping and secrets."""

import json
import logging
import os
import time
from datetime import datetime, timezone
from typing import Optional

from botocore.exceptions import ClientError

from shared.aws_clients import get_secretsmanager
from shared.constants import ACCESS_GRANTING_STATUSES
from shared.types import (
    BillingPlan,
    BillingStatus,
    CoachingPlan,
    CoachingStatus,
    MembershipTier,
    ProviderSubscriptionStatus,
)

logger = logging.getLogger(__name__)

STRIPE_SECRET_ARN = os.environ.get("STRIPE_SECRET_ARN")
STRIPE_WEBHOOK_SECRET_ARN = os.environ.get("STRIPE_WEBHOOK_SECRET_ARN")
CLERK_SECRET_ARN = os.environ.get("CLERK_SECRET_ARN")

# Membership prices (configured via environment)
# Use `or` to handle empty string env vars (CDK fallback sets "" when not configured)
MEMBERSHIP_PRICE_IDS = {
    # $9.99/week, converts to standard monthly after one iteration
    "trial_weekly": os.environ.get("STRIPE_TRIAL_WEEKLY_PRICE_ID") or "price_trial_weekly",
    "standard_monthly": os.environ.get("STRIPE_STANDARD_MONTHLY_PRICE_ID") or "price_standard_monthly",
    "premium_monthly": os.environ.get("STRIPE_PREMIUM_MONTHLY_PRICE_ID") or "price_premium_monthly",
}

# Optional second premium price (e.g. half-year billing); no fallback
PREMIUM_ALT_PRICE_ID = os.environ.get("STRIPE_PREMIUM_ALT_PRICE_ID") or None

PRICE_TO_TIER = {
    MEMBERSHIP_PRICE_IDS["trial_weekly"]: MembershipTier.STANDARD,
    MEMBERSHIP_PRICE_IDS["standard_monthly"]: MembershipTier.STANDARD,
    MEMBERSHIP_PRICE_IDS["premium_monthly"]: MembershipTier.PREMIUM,
}
if PREMIUM_ALT_PRICE_ID:
    PRICE_TO_TIER[PREMIUM_ALT_PRICE_ID] = MembershipTier.PREMIUM

# 1:1 coaching add-on product, billed separately from membership
COACHING_PRODUCT_ID = os.environ.get("STRIPE_COACHING_PRODUCT_ID") or "prod_coaching"

COACHING_PRICE_TO_PLAN = {
    (os.environ.get("STRIPE_COACHING_MONTHLY_PRICE_ID") or "price_coaching_monthly"): CoachingPlan.MONTHLY,
    (os.environ.get("STRIPE_COACHING_QUARTERLY_PRICE_ID") or "price_coaching_quarterly"): CoachingPlan.QUARTERLY,
}

_MEMBERSHIP_STATUS_MAP = {
    ProviderSubscriptionStatus.ACTIVE: BillingStatus.ACTIVE,
    ProviderSubscriptionStatus.PAST_DUE: BillingStatus.PAST_DUE,
    ProviderSubscriptionStatus.CANCELED: BillingStatus.CANCELED,
    ProviderSubscriptionStatus.UNPAID: BillingStatus.CANCELED,
    ProviderSubscriptionStatus.INCOMPLETE_EXPIRED: BillingStatus.CANCELED,
    ProviderSubscriptionStatus.TRIALING: BillingStatus.TRIALING,
}

_COACHING_STATUS_MAP = {
    ProviderSubscriptionStatus.ACTIVE: CoachingStatus.ACTIVE,
    ProviderSubscriptionStatus.TRIALING: CoachingStatus.ACTIVE,
    ProviderSubscriptionStatus.PAST_DUE: CoachingStatus.PAST_DUE,
    ProviderSubscriptionStatus.CANCELED: CoachingStatus.CANCELED,
    ProviderSubscriptionStatus.UNPAID: CoachingStatus.CANCELED,
    ProviderSubscriptionStatus.INCOMPLETE_EXPIRED: CoachingStatus.CANCELED,
}


def map_membership_status(provider_status: Optional[str]) -> BillingStatus:
    """Map a Stripe subscription status onto membership billing status.

    Statuses without an explicit mapping (incomplete, paused, anything new)
    default to active.
    """
    status = ProviderSubscriptionStatus.parse(provider_status)
    return _MEMBERSHIP_STATUS_MAP.get(status, BillingStatus.ACTIVE)


def map_coaching_status(provider_status: Optional[str]) -> CoachingStatus:
    """Map a Stripe subscription status onto coaching status (default none)."""
    status = ProviderSubscriptionStatus.parse(provider_status)
    return _COACHING_STATUS_MAP.get(status, CoachingStatus.NONE)


def derive_membership_tier(
    price_id: Optional[str],
    status: BillingStatus,
    metadata: Optional[dict] = None,
) -> tuple[BillingPlan, MembershipTier]:
    """Derive (plan, tier) for a membership subscription.

    Known prices win; an unrecognised price falls back to the
    `effectiveTier` hint in subscription metadata. Any status that does not
    grant access forces the tier to free, whatever the price.
    """
    tier = PRICE_TO_TIER.get(price_id) if price_id else None
    if tier is None:
        hint = (metadata or {}).get("effectiveTier")
        tier = MembershipTier.PREMIUM if hint == "premium" else MembershipTier.STANDARD

    plan = BillingPlan.PREMIUM if tier == MembershipTier.PREMIUM else BillingPlan.STANDARD

    if status.value not in ACCESS_GRANTING_STATUSES:
        tier = MembershipTier.FREE

    return plan, tier


def get_coaching_plan(subscription: dict) -> Optional[CoachingPlan]:
    """Return the coaching plan if any line item belongs to the coaching product.

    Returns None for membership subscriptions. A coaching item with an
    unrecognised price is treated as monthly.
    """
    for item in subscription.get("items", {}).get("data", []):
        price = item.get("price") or {}
        product = price.get("product")
        product_id = product.get("id") if isinstance(product, dict) else product
        if product_id == COACHING_PRODUCT_ID:
            return COACHING_PRICE_TO_PLAN.get(price.get("id"), CoachingPlan.MONTHLY)
    return None


def subscription_price_id(subscription: dict) -> Optional[str]:
    """Price id of the first line item, if any."""
    items = subscription.get("items", {}).get("data", [])
    if not items:
        return None
    return (items[0].get("price") or {}).get("id")


def subscription_period_end(subscription: dict) -> Optional[str]:
    """Current period end as an ISO timestamp.

    Newer API versions carry the period on the subscription item rather
    than the subscription itself, so both are checked.
    """
    period_end = subscription.get("current_period_end")
    if not period_end:
        items = subscription.get("items", {}).get("data", [])
        if items:
            period_end = items[0].get("current_period_end")
    return epoch_to_iso(period_end)


def customer_id_of(obj: dict) -> Optional[str]:
    """Customer id from a Stripe object whose `customer` may be expanded."""
    customer = obj.get("customer")
    if isinstance(customer, dict):
        return customer.get("id")
    return customer or None


def epoch_to_iso(value) -> Optional[str]:
    if not value:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc).isoformat()


# ===========================================
# Secrets
# ===========================================

# Cached Stripe secrets with TTL
_stripe_secrets_cache: tuple[Optional[str], Optional[str]] = (None, None)
_stripe_secrets_cache_time = 0.0
_clerk_secret_cache: Optional[str] = None
_clerk_secret_cache_time = 0.0
SECRETS_CACHE_TTL = 300  # 5 minutes


def _read_secret(arn: str, json_key: str) -> Optional[str]:
    """Read a secret that is either a bare string or JSON with `json_key`."""
    try:
        response = get_secretsmanager().get_secret_value(SecretId=arn)
    except ClientError as e:
        logger.error(f"Failed to retrieve secret {arn}: {e}")
        return None

    secret_value = response.get("SecretString", "")
    try:
        secret_json = json.loads(secret_value)
    except json.JSONDecodeError:
        return secret_value
    if isinstance(secret_json, dict):
        return secret_json.get(json_key) or secret_value
    return secret_value


def get_stripe_secrets() -> tuple[Optional[str], Optional[str]]:
    """Retrieve Stripe API key and webhook secret (cached with TTL).

    Secrets Manager ARNs take precedence; STRIPE_SECRET_KEY and
    STRIPE_WEBHOOK_SECRET are read directly for local runs.
    """
    global _stripe_secrets_cache, _stripe_secrets_cache_time

    if _stripe_secrets_cache[0] and (time.time() - _stripe_secrets_cache_time) < SECRETS_CACHE_TTL:
        return _stripe_secrets_cache

    api_key = os.environ.get("STRIPE_SECRET_KEY") or None
    webhook_secret = os.environ.get("STRIPE_WEBHOOK_SECRET") or None

    if STRIPE_SECRET_ARN:
        api_key = _read_secret(STRIPE_SECRET_ARN, "key") or api_key
    if STRIPE_WEBHOOK_SECRET_ARN:
        webhook_secret = _read_secret(STRIPE_WEBHOOK_SECRET_ARN, "secret") or webhook_secret

    _stripe_secrets_cache = (api_key, webhook_secret)
    _stripe_secrets_cache_time = time.time()
    return api_key, webhook_secret


def get_clerk_secret_key() -> Optional[str]:
    """Retrieve the Clerk Backend API secret key (cached with TTL)."""
    global _clerk_secret_cache, _clerk_secret_cache_time

    if _clerk_secret_cache and (time.time() - _clerk_secret_cache_time) < SECRETS_CACHE_TTL:
        return _clerk_secret_cache

    secret_key = os.environ.get("CLERK_SECRET_KEY") or None
    if CLERK_SECRET_ARN:
        secret_key = _read_secret(CLERK_SECRET_ARN, "key") or secret_key

    _clerk_secret_cache = secret_key
    _clerk_secret_cache_time = time.time()
    return secret_key


def reset_secrets_cache():
    """Drop cached secrets. Used in tests."""
    global _stripe_secrets_cache, _stripe_secrets_cache_time, _clerk_secret_cache, _clerk_secret_cache_time
    _stripe_secrets_cache = (None, None)
    _stripe_secrets_cache_time = 0.0
    _clerk_secret_cache = None
    _clerk_secret_cache_time = 0.0
