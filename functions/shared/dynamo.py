"""
DynamoDB helpers for the tenant record store.

One table per collection; every table is keyed on `pk` (plus `sk` for the
per-user membership tables). Attribute values of None are never written,
so a None argument means "leave unchanged".
"""

import logging
import os
import random
import time
import uuid
from datetime import datetime, timezone
from typing import Optional

from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from .aws_clients import get_dynamodb
from .constants import (
    ENROLLABLE_COHORT_STATUSES,
    LIVE_ENROLLMENT_STATUSES,
    PLATFORM_BILLING_SOURCE,
    THROTTLING_ERRORS,
)
from .types import ContentPurchaseRecord, FlowSession, ProgramEnrollment, SquadPurchaseRecord

logger = logging.getLogger(__name__)

USERS_TABLE = os.environ.get("COACHPAY_USERS_TABLE", "coachpay-users")
ORG_MEMBERSHIPS_TABLE = os.environ.get("COACHPAY_ORG_MEMBERSHIPS_TABLE", "coachpay-org-memberships")
FLOW_SESSIONS_TABLE = os.environ.get("COACHPAY_FLOW_SESSIONS_TABLE", "coachpay-flow-sessions")
PROGRAMS_TABLE = os.environ.get("COACHPAY_PROGRAMS_TABLE", "coachpay-programs")
PROGRAM_INVITES_TABLE = os.environ.get("COACHPAY_PROGRAM_INVITES_TABLE", "coachpay-program-invites")
PROGRAM_COHORTS_TABLE = os.environ.get("COACHPAY_PROGRAM_COHORTS_TABLE", "coachpay-program-cohorts")
PROGRAM_ENROLLMENTS_TABLE = os.environ.get("COACHPAY_PROGRAM_ENROLLMENTS_TABLE", "coachpay-program-enrollments")
CONTENT_PURCHASES_TABLE = os.environ.get("COACHPAY_CONTENT_PURCHASES_TABLE", "coachpay-content-purchases")
SQUAD_MEMBERS_TABLE = os.environ.get("COACHPAY_SQUAD_MEMBERS_TABLE", "coachpay-squad-members")
SQUAD_PURCHASES_TABLE = os.environ.get("COACHPAY_SQUAD_PURCHASES_TABLE", "coachpay-squad-purchases")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _table(name: str):
    return get_dynamodb().Table(name)


def _get_item(
    table_name: str, key: dict, max_retries: int = 3, consistent_read: bool = False
) -> Optional[dict]:
    """
    Get an item with retry for throttling.

    Non-throttling errors propagate so the webhook returns 500 and Stripe
    redelivers.
    """
    table = _table(table_name)

    for attempt in range(max_retries):
        try:
            return table.get_item(Key=key, ConsistentRead=consistent_read).get("Item")
        except ClientError as e:
            error_code = e.response.get("Error", {}).get("Code", "")
            if error_code in THROTTLING_ERRORS and attempt < max_retries - 1:
                # Exponential backoff with jitter to prevent thundering herd
                base_delay = min(0.1 * (2 ** attempt), 2.0)
                delay = base_delay + random.uniform(0, base_delay * 0.5)
                logger.warning(
                    f"DynamoDB throttled reading {table_name}, "
                    f"retry {attempt + 1}/{max_retries} in {delay:.2f}s"
                )
                time.sleep(delay)
                continue
            raise
    return None


def _query_all(table_name: str, **kwargs) -> list[dict]:
    """Run a query and follow pagination (filters apply per page)."""
    table = _table(table_name)
    items = []
    while True:
        response = table.query(**kwargs)
        items.extend(response.get("Items", []))
        last_key = response.get("LastEvaluatedKey")
        if not last_key:
            return items
        kwargs["ExclusiveStartKey"] = last_key


def _first_by_index(table_name: str, index_name: str, attribute: str, value: str) -> Optional[dict]:
    response = _table(table_name).query(
        IndexName=index_name,
        KeyConditionExpression=Key(attribute).eq(value),
        Limit=1,
    )
    items = response.get("Items", [])
    return items[0] if items else None


def _clean(item: dict) -> dict:
    """Remove None values (DynamoDB rejects None in GSI key attributes)."""
    return {k: v for k, v in item.items() if v is not None}


# ===========================================
# Users
# ===========================================


def get_user(user_id: str, consistent_read: bool = False) -> Optional[dict]:
    return _get_item(USERS_TABLE, {"pk": user_id}, consistent_read=consistent_read)


def find_user_id_by_customer(customer_id: str) -> Optional[str]:
    """Look up user_id by Stripe customer ID using GSI."""
    item = _first_by_index(USERS_TABLE, "stripe-customer-index", "stripe_customer_id", customer_id)
    return item.get("pk") if item else None


def find_user_id_by_coaching_subscription(subscription_id: str) -> Optional[str]:
    """Look up user_id by the coaching subscription already on file."""
    item = _first_by_index(
        USERS_TABLE, "coaching-subscription-index", "coaching_subscription_id", subscription_id
    )
    return item.get("pk") if item else None


def update_user(
    user_id: str,
    fields: dict,
    *,
    set_if_missing: Optional[dict] = None,
    watermark_attr: Optional[str] = None,
    event_created: Optional[int] = None,
) -> bool:
    """Upsert attributes on a user record (field-level, last write wins).

    When `watermark_attr` and `event_created` are both given, the write only
    applies if the stored watermark is not newer than `event_created`, and
    the watermark is advanced with it. This keeps a late redelivery of an
    older subscription event from overwriting newer state.

    Returns:
        True if written, False if rejected as stale.
    """
    fields = _clean({**fields, "updated_at": utc_now_iso()})

    names = {}
    values = {}
    set_parts = []
    for i, (attr, value) in enumerate(fields.items()):
        names[f"#f{i}"] = attr
        values[f":v{i}"] = value
        set_parts.append(f"#f{i} = :v{i}")

    for i, (attr, value) in enumerate(_clean(set_if_missing or {}).items()):
        names[f"#m{i}"] = attr
        values[f":m{i}"] = value
        set_parts.append(f"#m{i} = if_not_exists(#m{i}, :m{i})")

    kwargs = {}
    if watermark_attr and event_created is not None:
        names["#wm"] = watermark_attr
        values[":created"] = int(event_created)
        set_parts.append("#wm = :created")
        kwargs["ConditionExpression"] = "attribute_not_exists(#wm) OR #wm <= :created"

    try:
        _table(USERS_TABLE).update_item(
            Key={"pk": user_id},
            UpdateExpression="SET " + ", ".join(set_parts),
            ExpressionAttributeNames=names,
            ExpressionAttributeValues=values,
            **kwargs,
        )
    except ClientError as e:
        if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
            logger.warning(
                f"Skipping stale update for {user_id}: {watermark_attr} is newer than event created={event_created}"
            )
            return False
        raise
    return True


# ===========================================
# Org memberships
# ===========================================


def get_platform_billing_memberships(user_id: str) -> list[dict]:
    """Active memberships whose tier mirrors the user's platform billing."""
    return _query_all(
        ORG_MEMBERSHIPS_TABLE,
        KeyConditionExpression=Key("pk").eq(user_id),
        FilterExpression=Attr("access_source").eq(PLATFORM_BILLING_SOURCE) & Attr("is_active").eq(True),
    )


def set_membership_tier(user_id: str, organization_id: str, tier: str) -> None:
    _table(ORG_MEMBERSHIPS_TABLE).update_item(
        Key={"pk": user_id, "sk": organization_id},
        UpdateExpression="SET tier = :tier, updated_at = :now",
        ExpressionAttributeValues={":tier": tier, ":now": utc_now_iso()},
    )


# ===========================================
# Funnel: flow sessions, programs, invites, cohorts
# ===========================================


def get_flow_session(flow_session_id: str) -> Optional[FlowSession]:
    return _get_item(FLOW_SESSIONS_TABLE, {"pk": flow_session_id})


def complete_flow_session(flow_session_id: str, data: Optional[dict] = None) -> bool:
    """Mark a flow session completed. Completed sessions are never reopened.

    Returns:
        False if the session was already completed.
    """
    now = utc_now_iso()
    expression = "SET completed_at = :now, updated_at = :now"
    values = {":now": now}
    if data is not None:
        expression += ", #data = :data"
        values[":data"] = data

    kwargs = {"ExpressionAttributeNames": {"#data": "data"}} if data is not None else {}
    try:
        _table(FLOW_SESSIONS_TABLE).update_item(
            Key={"pk": flow_session_id},
            UpdateExpression=expression,
            ConditionExpression="attribute_exists(pk) AND attribute_not_exists(completed_at)",
            ExpressionAttributeValues=values,
            **kwargs,
        )
    except ClientError as e:
        if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
            logger.info(f"Flow session {flow_session_id} already completed")
            return False
        raise
    return True


def get_program(program_id: str) -> Optional[dict]:
    return _get_item(PROGRAMS_TABLE, {"pk": program_id})


def get_invite(invite_id: str) -> Optional[dict]:
    return _get_item(PROGRAM_INVITES_TABLE, {"pk": invite_id})


def record_invite_use(invite_id: str, user_id: str) -> None:
    """Atomically bump the invite's use count and stamp who used it."""
    _table(PROGRAM_INVITES_TABLE).update_item(
        Key={"pk": invite_id},
        UpdateExpression="SET used_by = :user, used_at = :now ADD use_count :one",
        ExpressionAttributeValues={":user": user_id, ":now": utc_now_iso(), ":one": 1},
    )


def get_cohort(cohort_id: str) -> Optional[dict]:
    return _get_item(PROGRAM_COHORTS_TABLE, {"pk": cohort_id})


def find_open_cohort(program_id: str) -> Optional[dict]:
    """Earliest-starting cohort of a program that still takes enrollments.

    Ties on start_date go to the cohort created first, then to the lowest
    cohort id, so the pick never depends on index iteration order.
    """
    cohorts = _query_all(
        PROGRAM_COHORTS_TABLE,
        IndexName="program-index",
        KeyConditionExpression=Key("program_id").eq(program_id),
        FilterExpression=Attr("enrollment_open").eq(True) & Attr("status").is_in(ENROLLABLE_COHORT_STATUSES),
    )
    if not cohorts:
        return None
    cohorts.sort(key=lambda c: (c.get("start_date", ""), c.get("created_at", ""), c["pk"]))
    return cohorts[0]


def increment_cohort_enrollment(cohort_id: str) -> None:
    _table(PROGRAM_COHORTS_TABLE).update_item(
        Key={"pk": cohort_id},
        UpdateExpression="SET current_enrollment = if_not_exists(current_enrollment, :zero) + :one",
        ExpressionAttributeValues={":zero": 0, ":one": 1},
    )


# ===========================================
# Enrollments and content purchases
# ===========================================


def find_enrollment_by_payment_intent(payment_intent_id: str) -> Optional[ProgramEnrollment]:
    return _first_by_index(
        PROGRAM_ENROLLMENTS_TABLE, "payment-intent-index", "stripe_payment_intent_id", payment_intent_id
    )


def find_live_enrollment(user_id: str, program_id: str) -> Optional[ProgramEnrollment]:
    """An active or upcoming enrollment of the user in the program, if any."""
    items = _query_all(
        PROGRAM_ENROLLMENTS_TABLE,
        IndexName="user-index",
        KeyConditionExpression=Key("user_id").eq(user_id),
        FilterExpression=Attr("program_id").eq(program_id) & Attr("status").is_in(list(LIVE_ENROLLMENT_STATUSES)),
    )
    return items[0] if items else None


def find_user_enrollment(user_id: str, program_id: str) -> Optional[ProgramEnrollment]:
    """Any enrollment of the user in the program, whatever its status."""
    items = _query_all(
        PROGRAM_ENROLLMENTS_TABLE,
        IndexName="user-index",
        KeyConditionExpression=Key("user_id").eq(user_id),
        FilterExpression=Attr("program_id").eq(program_id),
    )
    return items[0] if items else None


def create_enrollment(enrollment: ProgramEnrollment) -> str:
    enrollment_id = enrollment.get("pk") or f"enr_{uuid.uuid4().hex}"
    _table(PROGRAM_ENROLLMENTS_TABLE).put_item(Item=_clean({**enrollment, "pk": enrollment_id}))
    return enrollment_id


def attach_payment_to_enrollment(enrollment_id: str, payment_intent_id: str, amount_paid: int) -> None:
    now = utc_now_iso()
    _table(PROGRAM_ENROLLMENTS_TABLE).update_item(
        Key={"pk": enrollment_id},
        UpdateExpression=(
            "SET stripe_payment_intent_id = :pi, paid_at = :now, amount_paid = :amount, updated_at = :now"
        ),
        ExpressionAttributeValues={":pi": payment_intent_id, ":now": now, ":amount": amount_paid},
    )


def find_purchase_by_payment_intent(payment_intent_id: str) -> Optional[ContentPurchaseRecord]:
    return _first_by_index(
        CONTENT_PURCHASES_TABLE, "payment-intent-index", "stripe_payment_intent_id", payment_intent_id
    )


def find_content_purchase(user_id: str, content_type: str, content_id: str) -> Optional[ContentPurchaseRecord]:
    items = _query_all(
        CONTENT_PURCHASES_TABLE,
        IndexName="user-index",
        KeyConditionExpression=Key("user_id").eq(user_id),
        FilterExpression=Attr("content_type").eq(content_type) & Attr("content_id").eq(content_id),
    )
    return items[0] if items else None


def create_content_purchase(purchase: ContentPurchaseRecord) -> str:
    purchase_id = purchase.get("pk") or f"cpur_{uuid.uuid4().hex}"
    _table(CONTENT_PURCHASES_TABLE).put_item(Item=_clean({**purchase, "pk": purchase_id}))
    return purchase_id


# ===========================================
# Squads
# ===========================================


def archive_other_squad_memberships(user_id: str, keep_squad_id: str) -> list[str]:
    """Archive the user's active squad memberships other than `keep_squad_id`.

    Returns:
        The squad ids that were archived.
    """
    table = _table(SQUAD_MEMBERS_TABLE)
    memberships = _query_all(
        SQUAD_MEMBERS_TABLE,
        KeyConditionExpression=Key("pk").eq(user_id),
        FilterExpression=Attr("status").eq("active"),
    )

    archived = []
    now = utc_now_iso()
    for membership in memberships:
        squad_id = membership["sk"]
        if squad_id == keep_squad_id:
            continue
        table.update_item(
            Key={"pk": user_id, "sk": squad_id},
            UpdateExpression="SET #status = :archived, archived_at = :now, updated_at = :now",
            ExpressionAttributeNames={"#status": "status"},
            ExpressionAttributeValues={":archived": "archived", ":now": now},
        )
        archived.append(squad_id)
    return archived


def create_squad_purchase(purchase: SquadPurchaseRecord) -> bool:
    """Insert a squad purchase keyed by `pk` unless one already exists.

    Returns:
        True if created, False if the record was already there.
    """
    try:
        _table(SQUAD_PURCHASES_TABLE).put_item(
            Item=_clean(purchase),
            ConditionExpression="attribute_not_exists(pk)",
        )
    except ClientError as e:
        if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
            return False
        raise
    return True
