"""
Subscription reconciler: customer.subscription.created/updated/deleted.

A subscription is either platform membership billing (standard/premium
tiers) or the 1:1 coaching add-on. The two product lines are written to
disjoint attributes on the user record; coaching never changes `tier`.
"""

import logging
from typing import Optional

from billing.propagation import propagate_membership_tier, run_step
from shared import dynamo
from shared.billing_utils import (
    customer_id_of,
    derive_membership_tier,
    get_coaching_plan,
    map_coaching_status,
    map_membership_status,
    subscription_period_end,
    subscription_price_id,
)
from shared.constants import OWNED_SUBSCRIPTION_TYPES
from shared.types import (
    BillingState,
    BillingStatus,
    CoachingPlan,
    CoachingState,
    CoachingStatus,
    MembershipTier,
)

logger = logging.getLogger(__name__)


def classify_subscription(subscription: dict) -> Optional[CoachingPlan]:
    """Coaching plan for coaching subscriptions, None for membership."""
    return get_coaching_plan(subscription)


def resolve_subscription_user(subscription: dict, coaching_plan: Optional[CoachingPlan]) -> Optional[str]:
    """Find the user a subscription belongs to.

    Order: metadata userId, then the billing customer id on file, then (for
    coaching only) the coaching subscription id on file.
    """
    user_id = (subscription.get("metadata") or {}).get("userId")
    if user_id:
        return user_id

    customer_id = customer_id_of(subscription)
    if customer_id:
        user_id = dynamo.find_user_id_by_customer(customer_id)
        if user_id:
            return user_id

    if coaching_plan is not None and subscription.get("id"):
        return dynamo.find_user_id_by_coaching_subscription(subscription["id"])

    return None


def is_owned_subscription(subscription: dict) -> bool:
    """False for coach platform, squad and program subscriptions."""
    subscription_type = (subscription.get("metadata") or {}).get("type")
    if subscription_type in OWNED_SUBSCRIPTION_TYPES:
        return True
    logger.info(f"Subscription {subscription.get('id')} has type={subscription_type}, not ours, skipping")
    return False


def handle_subscription_updated(subscription: dict, services, event_created: Optional[int] = None):
    """Handle subscription created/updated for either product line."""
    if not is_owned_subscription(subscription):
        return

    coaching_plan = classify_subscription(subscription)
    user_id = resolve_subscription_user(subscription, coaching_plan)

    if not user_id:
        logger.warning(f"No user found for subscription {subscription.get('id')}")
        return

    if coaching_plan is not None:
        update_coaching_status(user_id, subscription, coaching_plan, services, event_created)
    else:
        update_membership_billing(user_id, subscription, services, event_created)


def update_membership_billing(
    user_id: str,
    subscription: dict,
    services,
    event_created: Optional[int] = None,
):
    """Persist BillingState + tier, then fan out and sync to Clerk."""
    status = map_membership_status(subscription.get("status"))
    price_id = subscription_price_id(subscription)
    plan, tier = derive_membership_tier(price_id, status, subscription.get("metadata"))
    current_period_end = subscription_period_end(subscription)
    cancel_at_period_end = bool(subscription.get("cancel_at_period_end", False))

    logger.info(
        f"Membership subscription {subscription.get('id')} for user {user_id}: "
        f"price={price_id}, status={status.value}, plan={plan.value}, tier={tier.value}"
    )

    billing: BillingState = {
        "billing_plan": plan.value,
        "stripe_customer_id": customer_id_of(subscription),
        "stripe_subscription_id": subscription.get("id"),
        "billing_status": status.value,
        "current_period_end": current_period_end,
        "cancel_at_period_end": cancel_at_period_end,
    }

    written = dynamo.update_user(
        user_id,
        {**billing, "tier": tier.value},
        watermark_attr="billing_event_at",
        event_created=event_created,
    )
    if not written:
        return

    propagate_membership_tier(services, user_id, status.value, current_period_end, tier.value)


def update_coaching_status(
    user_id: str,
    subscription: dict,
    coaching_plan: CoachingPlan,
    services,
    event_created: Optional[int] = None,
):
    """Persist CoachingState only. Membership tier and billing are untouched."""
    status = map_coaching_status(subscription.get("status"))
    ends_at = subscription_period_end(subscription)

    coaching: CoachingState = {
        "coaching_status": status.value,
        "coaching_plan": coaching_plan.value,
        "coaching_subscription_id": subscription.get("id"),
        "coaching_ends_at": ends_at,
    }

    written = dynamo.update_user(
        user_id,
        coaching,
        watermark_attr="coaching_event_at",
        event_created=event_created,
    )
    if not written:
        return

    logger.info(f"Updated coaching for user {user_id}: status={status.value}, plan={coaching_plan.value}")

    run_step(
        services,
        "identity_coaching",
        user_id=user_id,
        status=status.value,
        plan=coaching_plan.value,
        period_end=ends_at,
    )


def handle_subscription_deleted(subscription: dict, services, event_created: Optional[int] = None):
    """Handle final cancellation.

    Fires at period end when cancel_at_period_end was set, or immediately
    for an outright cancellation. Stripe is the source of truth either way.
    """
    if not is_owned_subscription(subscription):
        return

    coaching_plan = classify_subscription(subscription)
    user_id = resolve_subscription_user(subscription, coaching_plan)

    if not user_id:
        logger.warning(f"No user found for deleted subscription {subscription.get('id')}")
        return

    period_end = subscription_period_end(subscription)

    if coaching_plan is not None:
        _coaching_subscription_deleted(user_id, period_end, services, event_created)
    else:
        _membership_subscription_deleted(user_id, period_end, services, event_created)


def _membership_subscription_deleted(user_id: str, period_end, services, event_created):
    written = dynamo.update_user(
        user_id,
        {
            "billing_status": BillingStatus.CANCELED.value,
            "current_period_end": period_end,
            # No longer pending, the cancellation is final
            "cancel_at_period_end": False,
            "tier": MembershipTier.FREE.value,
        },
        watermark_attr="billing_event_at",
        event_created=event_created,
    )
    if not written:
        return

    logger.info(f"Membership subscription deleted for user {user_id}, access ended {period_end}")
    propagate_membership_tier(
        services, user_id, BillingStatus.CANCELED.value, period_end, MembershipTier.FREE.value
    )


def _coaching_subscription_deleted(user_id: str, period_end, services, event_created):
    written = dynamo.update_user(
        user_id,
        {
            "coaching_status": CoachingStatus.CANCELED.value,
            "coaching_ends_at": period_end,
        },
        watermark_attr="coaching_event_at",
        event_created=event_created,
    )
    if not written:
        return

    logger.info(f"Coaching subscription deleted for user {user_id}, access ends {period_end}")
    run_step(
        services,
        "identity_coaching",
        user_id=user_id,
        status=CoachingStatus.CANCELED.value,
        plan=None,
        period_end=period_end,
    )
