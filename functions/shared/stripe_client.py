"""
Stripe access for the billing reconcilers.

The API key is bound to a client instance and passed on every request
instead of being assigned to the `stripe.api_key` module global, so
handlers never depend on hidden process state.
"""

import json
from typing import Any

import stripe

from shared.billing_utils import MEMBERSHIP_PRICE_IDS

# Seconds a signed webhook timestamp may lag behind our clock
WEBHOOK_TOLERANCE_SECONDS = 300


def _plain(obj: Any) -> dict:
    """Convert a StripeObject (or a plain mapping) into plain dicts."""
    for attr in ("to_dict", "to_dict_recursive"):
        converter = getattr(obj, attr, None)
        if callable(converter):
            return converter()
    return dict(obj)


class StripeBillingClient:
    """Thin wrapper around the Stripe SDK calls the reconcilers need."""

    def __init__(self, api_key: str, webhook_secret: str):
        self.api_key = api_key
        self.webhook_secret = webhook_secret

    def construct_event(self, payload: str, sig_header: str) -> dict:
        """Verify a webhook signature and decode the event envelope.

        Raises:
            stripe.SignatureVerificationError: signature does not verify
            ValueError: payload is not a JSON event object
        """
        stripe.WebhookSignature.verify_header(
            payload, sig_header, self.webhook_secret, WEBHOOK_TOLERANCE_SECONDS
        )
        event = json.loads(payload)
        if not isinstance(event, dict) or "type" not in event or "data" not in event:
            raise ValueError("Webhook payload is not an event object")
        return event

    def retrieve_subscription(self, subscription_id: str) -> dict:
        subscription = stripe.Subscription.retrieve(subscription_id, api_key=self.api_key)
        return _plain(subscription)

    def create_trial_schedule(self, subscription_id: str) -> str:
        """Attach a schedule converting a weekly trial into monthly billing.

        Phase 1 bills one iteration of the trial price, phase 2 the standard
        monthly price with no end. `release` hands the subscription back to
        normal auto-renewal once the schedule finishes.

        A subscription takes at most one schedule, so when a previous attempt
        already created it (redelivered checkout, or a failed modify being
        retried) that schedule is modified instead.

        Returns:
            The subscription schedule id.
        """
        subscription = self.retrieve_subscription(subscription_id)
        schedule_id = subscription.get("schedule")
        if isinstance(schedule_id, dict):
            schedule_id = schedule_id.get("id")

        if not schedule_id:
            schedule = stripe.SubscriptionSchedule.create(
                from_subscription=subscription_id,
                api_key=self.api_key,
            )
            schedule_id = schedule["id"]

        stripe.SubscriptionSchedule.modify(
            schedule_id,
            end_behavior="release",
            phases=trial_schedule_phases(),
            api_key=self.api_key,
        )
        return schedule_id


def trial_schedule_phases() -> list[dict]:
    return [
        {
            "items": [{"price": MEMBERSHIP_PRICE_IDS["trial_weekly"], "quantity": 1}],
            "iterations": 1,
        },
        {
            "items": [{"price": MEMBERSHIP_PRICE_IDS["standard_monthly"], "quantity": 1}],
        },
    ]
