"""
Failed renewal handling (invoice.payment_failed).

Access is revoked immediately: billing goes past_due and the tier drops to
free until a later subscription update restores it.
"""

import logging
from typing import Optional

from billing.propagation import propagate_membership_tier
from shared import dynamo
from shared.billing_utils import customer_id_of
from shared.types import BillingStatus, MembershipTier

logger = logging.getLogger(__name__)


def handle_payment_failed(invoice: dict, services, event_created: Optional[int] = None):
    customer_id = customer_id_of(invoice)
    if not customer_id:
        logger.warning(f"Invoice {invoice.get('id')} has no customer, skipping")
        return

    user_id = dynamo.find_user_id_by_customer(customer_id)
    if not user_id:
        logger.error(f"No user found for customer {customer_id}")
        return

    written = dynamo.update_user(
        user_id,
        {
            "billing_status": BillingStatus.PAST_DUE.value,
            "tier": MembershipTier.FREE.value,
        },
        watermark_attr="billing_event_at",
        event_created=event_created,
    )
    if not written:
        return

    logger.warning(f"Payment failed for user {user_id}, access revoked (invoice {invoice.get('id')})")
    propagate_membership_tier(
        services, user_id, BillingStatus.PAST_DUE.value, None, MembershipTier.FREE.value
    )
