"""
Membership checkout completion (checkout.session.completed).

Writes the initial BillingState for a user who just paid, and for weekly
trials attaches a subscription schedule so Stripe itself rolls the trial
into standard monthly billing.
"""

import logging
from typing import Optional

import stripe

from billing.propagation import propagate_membership_tier, run_step
from shared import dynamo
from shared.aws_clients import get_ses
from shared.billing_utils import (
    customer_id_of,
    map_membership_status,
    subscription_period_end,
)
from shared.constants import ACCESS_GRANTING_STATUSES
from shared.types import BillingPlan, BillingStatus, MembershipTier

logger = logging.getLogger(__name__)

MEMBERSHIP_CHECKOUT_TYPES = (None, "", "membership")


def handle_checkout_completed(session: dict, services, event_created: Optional[int] = None):
    """Handle a completed membership checkout."""
    metadata = session.get("metadata") or {}
    checkout_type = metadata.get("type")

    if checkout_type not in MEMBERSHIP_CHECKOUT_TYPES:
        logger.info(f"Checkout {session.get('id')} has type={checkout_type}, not a membership checkout, skipping")
        return

    user_id = metadata.get("userId")
    if not user_id:
        logger.error(f"No userId in metadata of checkout session {session.get('id')}")
        return

    plan = metadata.get("plan")
    is_trial = metadata.get("isTrial") == "true"
    effective_tier = metadata.get("effectiveTier")
    customer_id = customer_id_of(session)

    subscription_id = session.get("subscription")
    if isinstance(subscription_id, dict):
        subscription_id = subscription_id.get("id")

    logger.info(f"Checkout completed for user {user_id}, plan={plan}, isTrial={is_trial}")

    subscription = None
    if subscription_id:
        try:
            subscription = services.stripe.retrieve_subscription(subscription_id)
        except stripe.StripeError as e:
            logger.error(f"Error fetching subscription {subscription_id}: {e}")

    status = map_membership_status(subscription.get("status")) if subscription else BillingStatus.ACTIVE
    current_period_end = subscription_period_end(subscription) if subscription else None

    billing_plan = BillingPlan.PREMIUM if plan == "premium" else BillingPlan.STANDARD
    if effective_tier in (MembershipTier.STANDARD.value, MembershipTier.PREMIUM.value):
        tier = MembershipTier(effective_tier)
    else:
        tier = MembershipTier.PREMIUM if billing_plan == BillingPlan.PREMIUM else MembershipTier.STANDARD
    if status.value not in ACCESS_GRANTING_STATUSES:
        tier = MembershipTier.FREE

    user = dynamo.get_user(user_id) or {}
    now = dynamo.utc_now_iso()

    written = dynamo.update_user(
        user_id,
        {
            "billing_plan": billing_plan.value,
            "stripe_customer_id": customer_id,
            "stripe_subscription_id": subscription_id,
            "billing_status": status.value,
            "current_period_end": current_period_end,
            "cancel_at_period_end": False,
            "started_with_trial": is_trial,
            "tier": tier.value,
            "onboarding_status": "completed",
            "converted_to_member": True,
            "converted_at": now,
        },
        set_if_missing={"created_at": now},
        watermark_attr="billing_event_at",
        event_created=event_created,
    )

    if written:
        logger.info(
            f"Updated billing for user {user_id}: plan={billing_plan.value}, tier={tier.value}, "
            f"status={status.value}, period ends {current_period_end}"
        )
        propagate_membership_tier(services, user_id, status.value, current_period_end, tier.value)

    if is_trial and subscription_id:
        # Without the schedule the user keeps access; the trial just won't auto-convert
        run_step(services, "trial_schedule", user_id=user_id, subscription_id=subscription_id)

    email = user.get("email") or session.get("customer_email") or (session.get("customer_details") or {}).get("email")
    if user.get("welcome_email_sent"):
        logger.info(f"Skipping welcome email for user {user_id} - already sent")
    elif email:
        _send_welcome_email(services, user_id, email, user.get("first_name"))


def _send_welcome_email(services, user_id: str, email: str, first_name: Optional[str]) -> None:
    """Send the one-time welcome email via SES (best-effort)."""
    if not services.email_sender:
        return

    greeting = f"Hi {first_name}," if first_name else "Hi there,"
    try:
        get_ses().send_email(
            Source=services.email_sender,
            Destination={"ToAddresses": [email]},
            Message={
                "Subject": {"Data": "Welcome aboard - your membership is active", "Charset": "UTF-8"},
                "Body": {
                    "Text": {
                        "Data": (
                            f"{greeting}\n\n"
                            "Your membership is active. Log in any time to pick up your program, "
                            "join your squad and book calls with your coach.\n"
                        ),
                        "Charset": "UTF-8",
                    },
                },
            },
        )
        dynamo.update_user(user_id, {"welcome_email_sent": True, "welcome_email_sent_at": dynamo.utc_now_iso()})
        logger.info(f"Welcome email sent to user {user_id}")
    except Exception as e:
        logger.error(f"Failed to send welcome email to user {user_id}: {e}")
