"""
Best-effort propagation of billing state after the record store write.

The primary record is the durability boundary. Everything downstream of
it (OrgMembership tier copies, Clerk metadata, the trial schedule, squad
cleanup, order bump records) runs as a named step: a failing step is
logged, never re-raised, never rolls back the primary write, and never
stops the steps after it.
When COACHPAY_PROPAGATION_QUEUE_URL is configured, the failed step is
queued to SQS and replayed by billing.retry_processor.
"""

import json
import logging

from billing.order_bumps import process_order_bumps
from shared import dynamo
from shared.aws_clients import get_sqs

logger = logging.getLogger(__name__)


def propagate_org_tier(services, user_id: str, tier: str) -> None:
    """Copy the user's tier onto every active platform-billing OrgMembership."""
    memberships = dynamo.get_platform_billing_memberships(user_id)
    for membership in memberships:
        dynamo.set_membership_tier(user_id, membership["sk"], tier)
    if memberships:
        logger.info(f"Updated {len(memberships)} org memberships with tier={tier} for user {user_id}")


def sync_identity_billing(services, user_id: str, status: str, period_end=None, tier=None) -> None:
    if services.identity is None:
        logger.info(f"Identity sync disabled, skipping billing metadata for {user_id}")
        return
    services.identity.update_user_billing(user_id, status, period_end, tier)


def sync_identity_coaching(services, user_id: str, status: str, plan=None, period_end=None) -> None:
    if services.identity is None:
        logger.info(f"Identity sync disabled, skipping coaching metadata for {user_id}")
        return
    services.identity.update_user_coaching(user_id, status, plan, period_end)


def create_trial_schedule(services, user_id: str, subscription_id: str) -> None:
    schedule_id = services.stripe.create_trial_schedule(subscription_id)
    logger.info(f"Subscription schedule {schedule_id} created for trial user {user_id}")


def archive_old_squads(services, user_id: str, squad_id: str) -> None:
    archived = dynamo.archive_other_squad_memberships(user_id, squad_id)
    if archived:
        logger.info(f"Archived {len(archived)} old squad memberships for user {user_id}")


STEPS = {
    "org_membership_tier": propagate_org_tier,
    "identity_billing": sync_identity_billing,
    "identity_coaching": sync_identity_coaching,
    "trial_schedule": create_trial_schedule,
    "squad_archive": archive_old_squads,
    "order_bumps": process_order_bumps,
}


# Step argument -> user record attribute, for steps that mirror user state
STATE_FIELDS = {
    "org_membership_tier": {"tier": "tier"},
    "identity_billing": {"status": "billing_status", "period_end": "current_period_end", "tier": "tier"},
    "identity_coaching": {"status": "coaching_status", "period_end": "coaching_ends_at"},
}


def refresh_payload(step: str, payload: dict) -> dict:
    """Swap queued state for what the user record holds now.

    A queued step may be replayed after a newer event already rewrote the
    user, and the record is authoritative. Attributes missing from the
    record keep their queued value.
    """
    fields = STATE_FIELDS.get(step)
    user_id = payload.get("user_id")
    if not fields or not user_id:
        return payload

    user = dynamo.get_user(user_id, consistent_read=True)
    if not user:
        return payload

    refreshed = dict(payload)
    for argument, attribute in fields.items():
        if attribute in user:
            refreshed[argument] = user[attribute]
    if refreshed != payload:
        logger.info(f"Replaying {step} for user {user_id} with current state instead of queued state")
    return refreshed


def run_step(services, step: str, **payload) -> bool:
    """Run one propagation step, swallowing (and queueing) any failure.

    Returns:
        True if the step succeeded.
    """
    try:
        STEPS[step](services, **payload)
        return True
    except Exception as e:
        logger.error(
            f"Propagation step {step} failed for user {payload.get('user_id')}: {e}",
            exc_info=True,
            extra={"propagation_step": step},
        )
        enqueue_retry(services, step, payload)
        return False


def enqueue_retry(services, step: str, payload: dict, attempt: int = 1) -> None:
    if not services.retry_queue_url:
        logger.warning(f"No propagation retry queue configured, dropping failed step {step}")
        return
    try:
        get_sqs().send_message(
            QueueUrl=services.retry_queue_url,
            MessageBody=json.dumps({"step": step, "payload": payload, "attempt": attempt}),
        )
        logger.info(f"Queued propagation step {step} for retry (attempt {attempt})")
    except Exception as e:
        logger.error(f"Failed to queue propagation step {step}: {e}")


def propagate_membership_tier(services, user_id: str, status: str, period_end, tier: str) -> None:
    """Fan the tier out to org memberships, then mirror billing into Clerk."""
    run_step(services, "org_membership_tier", user_id=user_id, tier=tier)
    run_step(services, "identity_billing", user_id=user_id, status=status, period_end=period_end, tier=tier)
