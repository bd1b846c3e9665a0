"""
One-time payment reconciler (payment_intent.succeeded).

Content purchases and funnel (program enrollment) payments both create a
record exactly once per payment intent: the record store is queried on
`stripe_payment_intent_id` before anything is inserted, so Stripe's
at-least-once delivery cannot double-enroll or double-charge access.
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from billing.propagation import run_step
from shared import dynamo
from shared.constants import FUNNEL_PROFILE_FIELDS
from shared.types import EnrollmentStatus, PaymentIntentType

logger = logging.getLogger(__name__)


def handle_payment_intent_succeeded(payment_intent: dict, services):
    """Route a succeeded payment intent by its metadata `type`."""
    metadata = payment_intent.get("metadata") or {}
    intent_type = PaymentIntentType.parse(metadata.get("type"))

    if intent_type == PaymentIntentType.CONTENT_PURCHASE:
        handle_content_purchase(payment_intent, services)
    elif intent_type == PaymentIntentType.FUNNEL_PAYMENT:
        handle_funnel_payment(payment_intent, services)
    else:
        logger.info(
            f"Payment intent {payment_intent.get('id')} has type={metadata.get('type')} "
            f"(not a funnel or content payment), skipping"
        )


def handle_content_purchase(payment_intent: dict, services):
    """Record a one-off purchase of an article/course/video/download/link."""
    payment_intent_id = payment_intent["id"]
    metadata = payment_intent.get("metadata") or {}
    user_id = metadata.get("userId")
    content_type = metadata.get("contentType")
    content_id = metadata.get("contentId")

    if not user_id or not content_type or not content_id:
        logger.error(
            f"Content purchase {payment_intent_id} missing required metadata: "
            f"userId={user_id}, contentType={content_type}, contentId={content_id}"
        )
        return

    if dynamo.find_purchase_by_payment_intent(payment_intent_id):
        logger.info(f"Content purchase already exists for payment {payment_intent_id}, skipping")
        return

    now = dynamo.utc_now_iso()
    purchase_id = dynamo.create_content_purchase({
        "user_id": user_id,
        "content_type": content_type,
        "content_id": content_id,
        "organization_id": metadata.get("organizationId") or "",
        "amount_paid": payment_intent.get("amount") or 0,
        "currency": payment_intent.get("currency") or "usd",
        "stripe_payment_intent_id": payment_intent_id,
        "purchased_at": now,
        "created_at": now,
    })

    logger.info(f"Content purchase {purchase_id}: user {user_id} bought {content_type}/{content_id}")
    _record_order_bumps(services, payment_intent, user_id, metadata.get("organizationId") or "", now)


def handle_funnel_payment(payment_intent: dict, services):
    """Enroll the payer in the program their funnel session was selling."""
    payment_intent_id = payment_intent["id"]
    metadata = payment_intent.get("metadata") or {}
    flow_session_id = metadata.get("flowSessionId")
    user_id = metadata.get("userId")

    if not flow_session_id:
        # Other integrations emit payment intents we don't own
        logger.info(f"Funnel payment {payment_intent_id} has no flowSessionId, skipping")
        return

    if not user_id:
        logger.error(f"Funnel payment {payment_intent_id} has no userId")
        return

    flow_session = dynamo.get_flow_session(flow_session_id)
    if not flow_session:
        logger.error(f"Flow session {flow_session_id} not found for payment {payment_intent_id}")
        return

    if flow_session.get("completed_at"):
        logger.info(f"Flow session {flow_session_id} already completed, skipping")
        return

    if dynamo.find_enrollment_by_payment_intent(payment_intent_id):
        logger.info(f"Enrollment already exists for payment {payment_intent_id}, marking session complete")
        dynamo.complete_flow_session(flow_session_id)
        return

    program_id = flow_session.get("program_id")
    if not program_id:
        logger.error(f"Flow session {flow_session_id} has no program_id - may be a squad funnel")
        return

    program = dynamo.get_program(program_id)
    if not program:
        logger.error(f"Program {program_id} not found for flow session {flow_session_id}")
        return

    session_data = dict(flow_session.get("data") or {})
    session_data["stripePaymentIntentId"] = payment_intent_id
    list_amount = payment_intent.get("amount") or program.get("price_in_cents") or 0
    organization_id = flow_session.get("organization_id") or metadata.get("organizationId")

    # Already enrolled through another path (e.g. client-side payment verification)
    existing = dynamo.find_live_enrollment(user_id, program_id)
    if existing:
        dynamo.attach_payment_to_enrollment(existing["pk"], payment_intent_id, list_amount)
        dynamo.complete_flow_session(flow_session_id, session_data)
        logger.info(f"User {user_id} already enrolled in {program_id}, attached payment to {existing['pk']}")
        _record_order_bumps(services, payment_intent, user_id, organization_id, dynamo.utc_now_iso())
        return

    invite = None
    squad_id = None
    cohort_id = None
    invite_id = flow_session.get("invite_id")
    if invite_id:
        invite = dynamo.get_invite(invite_id)
        if invite:
            squad_id = invite.get("target_squad_id")
            cohort_id = invite.get("target_cohort_id")
            dynamo.record_invite_use(invite_id, user_id)

    if program.get("type") == "group" and not cohort_id:
        cohort = dynamo.find_open_cohort(program_id)
        if cohort:
            cohort_id = cohort["pk"]
            dynamo.increment_cohort_enrollment(cohort_id)

    status, started_at = _enrollment_start(cohort_id)

    now = dynamo.utc_now_iso()
    amount_paid = 0 if invite and invite.get("payment_status") == "pre_paid" else list_amount

    enrollment_id = dynamo.create_enrollment({
        "user_id": user_id,
        "program_id": program_id,
        "organization_id": organization_id,
        "cohort_id": cohort_id,
        "squad_id": squad_id,
        "stripe_payment_intent_id": payment_intent_id,
        "paid_at": now,
        "amount_paid": amount_paid,
        "status": status.value,
        "started_at": started_at,
        "last_assigned_day_index": 0,
        "created_at": now,
        "updated_at": now,
    })

    dynamo.complete_flow_session(flow_session_id, session_data)

    dynamo.update_user(
        user_id,
        {
            "organization_id": organization_id,
            "current_program_enrollment_id": enrollment_id,
            "current_program_id": program_id,
            **extract_profile_fields(flow_session.get("data") or {}),
        },
        set_if_missing={"created_at": now},
    )

    if squad_id:
        run_step(services, "squad_archive", user_id=user_id, squad_id=squad_id)

    logger.info(
        f"Funnel payment processed: user {user_id} enrolled in program {program_id}, "
        f"enrollment {enrollment_id} ({status.value})"
    )

    _record_order_bumps(services, payment_intent, user_id, organization_id, now)


def _enrollment_start(cohort_id: Optional[str]) -> tuple[EnrollmentStatus, str]:
    """Upcoming (starting at the cohort start) if the cohort hasn't begun."""
    now = datetime.now(timezone.utc)
    if cohort_id:
        cohort = dynamo.get_cohort(cohort_id)
        start_date = (cohort or {}).get("start_date")
        if start_date and _parse_iso(start_date) > now:
            return EnrollmentStatus.UPCOMING, start_date
    return EnrollmentStatus.ACTIVE, now.isoformat()


def _parse_iso(value: str) -> datetime:
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def extract_profile_fields(data: dict) -> dict:
    """Funnel answers worth keeping on the user profile (allow-listed)."""
    return {
        attribute: data[key]
        for key, attribute in FUNNEL_PROFILE_FIELDS.items()
        if data.get(key)
    }


def _record_order_bumps(services, payment_intent: dict, user_id: str, organization_id: Optional[str], now: str):
    order_bumps = (payment_intent.get("metadata") or {}).get("orderBumps")
    if not order_bumps:
        return
    # The primary record is already written; bumps must not fail the payment
    run_step(
        services,
        "order_bumps",
        user_id=user_id,
        organization_id=organization_id or "",
        payment_intent_id=payment_intent["id"],
        order_bumps=order_bumps,
        currency=payment_intent.get("currency") or "usd",
        purchased_at=now,
    )
