"""
Stripe Webhook Endpoint - POST /webhooks/stripe

Verifies the Stripe signature, then routes the event to its reconciler.
Uses Stripe signature verification instead of API key auth.

Responses:
- 200 {"received": true}: handled, or an event type we ignore
- 400: missing/invalid signature or unusable payload (Stripe won't retry)
- 500: a reconciler raised (Stripe redelivers with backoff)
"""

import logging
import os
from datetime import datetime, timedelta, timezone

import stripe

from billing.checkout import handle_checkout_completed
from billing.failures import handle_payment_failed
from billing.payments import handle_payment_intent_succeeded
from billing.services import BillingServices
from billing.subscriptions import handle_subscription_deleted, handle_subscription_updated
from shared.aws_clients import get_dynamodb
from shared.billing_utils import customer_id_of
from shared.constants import BILLING_EVENT_TTL_DAYS
from shared.errors import (
    APIError,
    ConfigurationError,
    InvalidPayloadError,
    InvalidSignatureError,
    MissingSignatureError,
)
from shared.logging_utils import (
    clear_event_context,
    configure_structured_logging,
    set_event_context,
    set_request_id,
)
from shared.response_utils import json_response, success_response
from shared.types import StripeEventType

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

BILLING_EVENTS_TABLE = os.environ.get("COACHPAY_BILLING_EVENTS_TABLE", "coachpay-billing-events")

# Handlers for subscription/invoice events accept the event timestamp for ordering
EVENT_HANDLERS = {
    StripeEventType.CHECKOUT_SESSION_COMPLETED: handle_checkout_completed,
    StripeEventType.SUBSCRIPTION_CREATED: handle_subscription_updated,
    StripeEventType.SUBSCRIPTION_UPDATED: handle_subscription_updated,
    StripeEventType.SUBSCRIPTION_DELETED: handle_subscription_deleted,
    StripeEventType.INVOICE_PAYMENT_FAILED: handle_payment_failed,
}

_services = None


def _get_services() -> BillingServices:
    """Build services once per container (secrets are cached with a TTL)."""
    global _services
    if _services is None:
        _services = BillingServices.from_environment()
    return _services


def _record_billing_event(event: dict, status: str, error: str = None):
    """Record webhook event for audit trail (best-effort).

    Uses event_id as PK (some events lack customer_id).
    Failures are logged but do not affect webhook response.

    Args:
        event: Stripe event object
        status: "success", "ignored" or "failed"
        error: Error message if status is "failed"
    """
    try:
        table = get_dynamodb().Table(BILLING_EVENTS_TABLE)
        now = datetime.now(timezone.utc)
        data_object = (event.get("data") or {}).get("object") or {}

        table.put_item(
            Item={
                "pk": event["id"],
                "sk": event["type"],
                "customer_id": customer_id_of(data_object) or "unknown",
                "processed_at": now.isoformat(),
                "event_created_at": event.get("created"),  # Stripe's event timestamp
                "livemode": event.get("livemode"),  # Distinguish test vs production
                "status": status,
                "error": error,
                "ttl": int((now + timedelta(days=BILLING_EVENT_TTL_DAYS)).timestamp()),
            }
        )
    except Exception as e:
        logger.error(f"Failed to record billing event {event.get('id')}: {e}")


def _verify_event(event: dict, services: BillingServices) -> dict:
    """Extract and verify the signed Stripe event from an API Gateway request.

    Raises:
        MissingSignatureError, InvalidSignatureError, InvalidPayloadError
    """
    payload = event.get("body") or ""
    headers = event.get("headers") or {}
    sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")

    if not sig_header:
        logger.warning("Missing Stripe signature")
        raise MissingSignatureError()

    try:
        return services.stripe.construct_event(payload, sig_header)
    except stripe.SignatureVerificationError as e:
        logger.warning(f"Invalid Stripe signature: {e}")
        raise InvalidSignatureError()
    except Exception as e:
        logger.error(f"Webhook error: {e}")
        raise InvalidPayloadError()


def handler(event, context, services: BillingServices = None):
    """
    Lambda handler for Stripe webhooks.

    Handles:
    - checkout.session.completed: membership checkout, trial schedule
    - customer.subscription.created/updated: membership tier or coaching status
    - customer.subscription.deleted: downgrade to free / end coaching
    - invoice.payment_failed: revoke membership access
    - payment_intent.succeeded: content purchases and funnel enrollments
    """
    configure_structured_logging()
    set_request_id(event)

    try:
        if services is None:
            services = _get_services()
    except ConfigurationError as e:
        logger.error("Stripe secrets not configured")
        return e.to_response()

    try:
        stripe_event = _verify_event(event, services)
    except APIError as e:
        return e.to_response()

    event_type = StripeEventType.parse(stripe_event.get("type"))
    data = (stripe_event.get("data") or {}).get("object") or {}
    event_created = stripe_event.get("created")

    set_event_context(stripe_event.get("id"), stripe_event.get("type"))
    logger.info(f"Processing Stripe event: {stripe_event.get('type')} (id={stripe_event.get('id')})")

    try:
        if event_type in EVENT_HANDLERS:
            EVENT_HANDLERS[event_type](data, services, event_created)
        elif event_type == StripeEventType.PAYMENT_INTENT_SUCCEEDED:
            handle_payment_intent_succeeded(data, services)
        else:
            logger.info(f"Unhandled event type: {stripe_event.get('type')}")
            _record_billing_event(stripe_event, "ignored")
            return success_response({"received": True})

        _record_billing_event(stripe_event, "success")

    except Exception as e:
        # Non-2xx makes Stripe redeliver the event
        _record_billing_event(stripe_event, "failed", str(e))
        logger.error(f"Error handling {stripe_event.get('type')}: {e}", exc_info=True)
        return json_response(500, {"error": "Webhook processing failed", "message": str(e)})
    finally:
        clear_event_context()

    return success_response({"received": True})
