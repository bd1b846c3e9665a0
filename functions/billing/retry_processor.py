"""
Propagation Retry Processor - replays failed propagation steps from SQS.

Each message is one step queued by billing.propagation.run_step. Steps that
mirror user state are re-run with the user record as it is now, not as it
was when queued. A failure surfaces as a batch item failure and SQS
redelivers it; after MAX_PROPAGATION_ATTEMPTS receives the message is
dropped with an error log (the queue's redrive policy may still move it to
a DLQ first).
"""

import json
import logging
import os

from billing.propagation import STEPS, refresh_payload
from billing.services import BillingServices
from shared.logging_utils import configure_structured_logging, request_id_var

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

MAX_PROPAGATION_ATTEMPTS = int(os.environ.get("MAX_PROPAGATION_ATTEMPTS", "5"))

_services = None


def _get_services() -> BillingServices:
    global _services
    if _services is None:
        _services = BillingServices.from_environment()
    return _services


def handler(event, context, services: BillingServices = None):
    """
    Lambda handler for the propagation retry queue.

    Returns batchItemFailures so only the failed records are redelivered.
    """
    configure_structured_logging()
    request_id_var.set(getattr(context, "aws_request_id", "unknown"))

    services = services or _get_services()

    successes = 0
    dropped = 0
    failed_message_ids = []

    for record in event.get("Records", []):
        message_id = record.get("messageId")
        try:
            body = json.loads(record["body"])
            step = body["step"]
            payload = body.get("payload") or {}
        except (KeyError, TypeError, ValueError) as e:
            # Malformed messages will never succeed
            logger.error(f"Dropping malformed propagation message {message_id}: {e}")
            dropped += 1
            continue

        if step not in STEPS:
            logger.error(f"Dropping propagation message {message_id} with unknown step {step}")
            dropped += 1
            continue

        receive_count = int((record.get("attributes") or {}).get("ApproximateReceiveCount", "1"))
        attempt = body.get("attempt", 1) + receive_count - 1

        try:
            STEPS[step](services, **refresh_payload(step, payload))
            successes += 1
            logger.info(f"Replayed propagation step {step} for user {payload.get('user_id')}")
        except Exception as e:
            if attempt >= MAX_PROPAGATION_ATTEMPTS:
                logger.error(
                    f"Propagation step {step} failed permanently after {attempt} attempts: {e}",
                    exc_info=True,
                    extra={"propagation_step": step, "attempt": attempt},
                )
                dropped += 1
                continue
            logger.warning(
                f"Propagation step {step} failed (attempt {attempt}): {e}",
                extra={"propagation_step": step, "attempt": attempt},
            )
            if message_id:
                failed_message_ids.append(message_id)

    logger.info(
        f"Propagation retry complete: {successes} succeeded, {len(failed_message_ids)} to retry, {dropped} dropped",
        extra={
            "successes": successes,
            "failures": len(failed_message_ids),
            "dropped": dropped,
        },
    )

    return {
        "batchItemFailures": [{"itemIdentifier": message_id} for message_id in failed_message_ids],
    }
