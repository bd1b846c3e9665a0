"""
Order bumps: add-on products paid for in the same payment intent as a
content purchase or funnel enrollment.

The intent carries them as a JSON list in `metadata.orderBumps`. Each bump
becomes its own record and is created at most once, so the whole step can
be replayed from the propagation queue.
"""

import json
import logging
from typing import Optional

from shared import dynamo
from shared.types import EnrollmentStatus, OrderBumpProductType

logger = logging.getLogger(__name__)


def parse_order_bumps(raw) -> list[dict]:
    """Decode `orderBumps` metadata. Unusable input yields no bumps."""
    if not raw:
        return []
    try:
        bumps = json.loads(raw) if isinstance(raw, str) else raw
    except ValueError as e:
        logger.error(f"Unparseable orderBumps metadata: {e}")
        return []
    if not isinstance(bumps, list):
        logger.error(f"orderBumps metadata is not a list: {type(bumps).__name__}")
        return []
    return [bump for bump in bumps if isinstance(bump, dict)]


def process_order_bumps(
    services,
    user_id: str,
    organization_id: str,
    payment_intent_id: str,
    order_bumps,
    currency: str = "usd",
    purchased_at: Optional[str] = None,
) -> int:
    """Record every bump in `order_bumps`.

    Returns:
        Number of records created (bumps already on file are skipped).
    """
    bumps = parse_order_bumps(order_bumps)
    if not bumps:
        return 0

    now = purchased_at or dynamo.utc_now_iso()
    created = 0
    logger.info(f"Processing {len(bumps)} order bumps for payment {payment_intent_id}")

    for bump in bumps:
        product_type = OrderBumpProductType.parse(bump.get("productType"))
        product_id = bump.get("productId")
        amount = int(bump.get("finalPriceCents") or 0)

        if not product_id:
            logger.warning(f"Order bump without productId on payment {payment_intent_id}: {bump}")
            continue

        if product_type == OrderBumpProductType.CONTENT:
            created += _record_content_bump(
                user_id, organization_id, payment_intent_id, bump.get("contentType"), product_id, amount, currency, now
            )
        elif product_type == OrderBumpProductType.PROGRAM:
            created += _record_program_bump(user_id, organization_id, payment_intent_id, product_id, amount, now)
        elif product_type == OrderBumpProductType.SQUAD:
            created += _record_squad_bump(user_id, organization_id, payment_intent_id, product_id, amount, now)
        else:
            logger.warning(f"Unknown order bump productType={bump.get('productType')} on payment {payment_intent_id}")

    logger.info(f"Order bumps for payment {payment_intent_id}: {created} of {len(bumps)} recorded")
    return created


def _record_content_bump(user_id, organization_id, payment_intent_id, content_type, content_id, amount, currency, now):
    if not content_type:
        logger.warning(f"Content order bump {content_id} has no contentType, skipping")
        return 0
    if dynamo.find_content_purchase(user_id, content_type, content_id):
        logger.info(f"User {user_id} already owns {content_type}/{content_id}, skipping order bump")
        return 0

    dynamo.create_content_purchase({
        "user_id": user_id,
        "content_type": content_type,
        "content_id": content_id,
        "organization_id": organization_id or "",
        "amount_paid": amount,
        "currency": currency,
        "stripe_payment_intent_id": payment_intent_id,
        "is_order_bump": True,
        "purchased_at": now,
        "created_at": now,
    })
    logger.info(f"Order bump: user {user_id} bought {content_type}/{content_id} for {amount} cents")
    return 1


def _record_program_bump(user_id, organization_id, payment_intent_id, program_id, amount, now):
    if dynamo.find_user_enrollment(user_id, program_id):
        logger.info(f"User {user_id} already has an enrollment in {program_id}, skipping order bump")
        return 0

    enrollment_id = dynamo.create_enrollment({
        "user_id": user_id,
        "program_id": program_id,
        "organization_id": organization_id,
        "status": EnrollmentStatus.PENDING_ACTIVATION.value,
        "amount_paid": amount,
        "stripe_payment_intent_id": payment_intent_id,
        "is_order_bump": True,
        "created_at": now,
        "updated_at": now,
    })
    logger.info(f"Order bump: pending enrollment {enrollment_id} for user {user_id} in program {program_id}")
    return 1


def _record_squad_bump(user_id, organization_id, payment_intent_id, squad_id, amount, now):
    created = dynamo.create_squad_purchase({
        "pk": f"sqp_{payment_intent_id}_{squad_id}",
        "user_id": user_id,
        "squad_id": squad_id,
        "organization_id": organization_id,
        "amount_paid": amount,
        "stripe_payment_intent_id": payment_intent_id,
        "is_order_bump": True,
        "status": EnrollmentStatus.PENDING_ACTIVATION.value,
        "created_at": now,
        "updated_at": now,
    })
    if created:
        logger.info(f"Order bump: squad {squad_id} purchased by user {user_id}")
    return 1 if created else 0
