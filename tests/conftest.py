"""
Shared pytest fixtures for coachpay tests.
"""

import hashlib
import hmac
import json
import os
import sys
import time
from unittest.mock import MagicMock

import boto3
import pytest
from moto import mock_aws

# Add functions directory to Python path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "functions"))

WEBHOOK_SECRET = "whsec_test_secret"


def pytest_configure(config):
    """Set AWS credentials before test collection.

    This runs before test collection starts, ensuring boto3 resource
    creation during imports doesn't fail with NoRegionError.
    """
    os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
    os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
    os.environ.setdefault("AWS_REGION", "us-east-1")


@pytest.fixture(autouse=True)
def aws_credentials():
    """Set fake AWS credentials for all tests."""
    os.environ["AWS_ACCESS_KEY_ID"] = "testing"
    os.environ["AWS_SECRET_ACCESS_KEY"] = "testing"
    os.environ["AWS_DEFAULT_REGION"] = "us-east-1"
    os.environ["AWS_REGION"] = "us-east-1"


@pytest.fixture(autouse=True)
def reset_aws_clients():
    """Reset shared AWS client singletons between tests."""
    yield
    try:
        from shared.aws_clients import reset_clients
        reset_clients()
    except ImportError:
        pass


@pytest.fixture(autouse=True)
def reset_cached_services():
    """Drop cached secrets and per-container services between tests."""
    yield
    from shared.billing_utils import reset_secrets_cache
    reset_secrets_cache()

    for module_name in ("api.stripe_webhook", "billing.retry_processor"):
        module = sys.modules.get(module_name)
        if module is not None:
            module._services = None


def create_dynamodb_tables(dynamodb):
    """Create all DynamoDB tables with their GSIs.

    Args:
        dynamodb: boto3 DynamoDB resource
    """
    # Users: BillingState, CoachingState and profile attributes
    dynamodb.create_table(
        TableName="coachpay-users",
        KeySchema=[{"AttributeName": "pk", "KeyType": "HASH"}],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "stripe_customer_id", "AttributeType": "S"},
            {"AttributeName": "coaching_subscription_id", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "stripe-customer-index",
                "KeySchema": [{"AttributeName": "stripe_customer_id", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "ALL"},
            },
            {
                "IndexName": "coaching-subscription-index",
                "KeySchema": [{"AttributeName": "coaching_subscription_id", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "ALL"},
            },
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    # Per-user tables keyed (user_id, other_id)
    for table_name in ("coachpay-org-memberships", "coachpay-squad-members"):
        dynamodb.create_table(
            TableName=table_name,
            KeySchema=[
                {"AttributeName": "pk", "KeyType": "HASH"},   # user_id
                {"AttributeName": "sk", "KeyType": "RANGE"},  # organization_id / squad_id
            ],
            AttributeDefinitions=[
                {"AttributeName": "pk", "AttributeType": "S"},
                {"AttributeName": "sk", "AttributeType": "S"},
            ],
            BillingMode="PAY_PER_REQUEST",
        )

    for table_name in (
        "coachpay-flow-sessions",
        "coachpay-programs",
        "coachpay-program-invites",
        "coachpay-squad-purchases",
    ):
        dynamodb.create_table(
            TableName=table_name,
            KeySchema=[{"AttributeName": "pk", "KeyType": "HASH"}],
            AttributeDefinitions=[{"AttributeName": "pk", "AttributeType": "S"}],
            BillingMode="PAY_PER_REQUEST",
        )

    dynamodb.create_table(
        TableName="coachpay-program-cohorts",
        KeySchema=[{"AttributeName": "pk", "KeyType": "HASH"}],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "program_id", "AttributeType": "S"},
            {"AttributeName": "start_date", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "program-index",
                "KeySchema": [
                    {"AttributeName": "program_id", "KeyType": "HASH"},
                    {"AttributeName": "start_date", "KeyType": "RANGE"},
                ],
                "Projection": {"ProjectionType": "ALL"},
            },
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    dynamodb.create_table(
        TableName="coachpay-program-enrollments",
        KeySchema=[{"AttributeName": "pk", "KeyType": "HASH"}],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "stripe_payment_intent_id", "AttributeType": "S"},
            {"AttributeName": "user_id", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "payment-intent-index",
                "KeySchema": [{"AttributeName": "stripe_payment_intent_id", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "ALL"},
            },
            {
                "IndexName": "user-index",
                "KeySchema": [{"AttributeName": "user_id", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "ALL"},
            },
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    dynamodb.create_table(
        TableName="coachpay-content-purchases",
        KeySchema=[{"AttributeName": "pk", "KeyType": "HASH"}],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "stripe_payment_intent_id", "AttributeType": "S"},
            {"AttributeName": "user_id", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "payment-intent-index",
                "KeySchema": [{"AttributeName": "stripe_payment_intent_id", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "ALL"},
            },
            {
                "IndexName": "user-index",
                "KeySchema": [{"AttributeName": "user_id", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "ALL"},
            },
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    # Billing events table for webhook audit trail
    dynamodb.create_table(
        TableName="coachpay-billing-events",
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},   # event_id
            {"AttributeName": "sk", "KeyType": "RANGE"},  # event_type
        ],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
        ],
        BillingMode="PAY_PER_REQUEST",
    )


@pytest.fixture
def mock_dynamodb():
    """Provide mocked DynamoDB with tables."""
    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name="us-east-1")
        create_dynamodb_tables(dynamodb)
        yield dynamodb


@pytest.fixture
def services():
    """BillingServices with the Stripe and Clerk clients mocked out."""
    from billing.services import BillingServices
    from shared.identity import ClerkIdentityClient
    from shared.stripe_client import StripeBillingClient

    return BillingServices(
        stripe=MagicMock(spec=StripeBillingClient),
        identity=MagicMock(spec=ClerkIdentityClient),
    )


@pytest.fixture
def seed_user(mock_dynamodb):
    """Insert a user record and return its table."""
    table = mock_dynamodb.Table("coachpay-users")

    def _seed(user_id="user_123", **attributes):
        table.put_item(Item={"pk": user_id, **attributes})
        return table

    return _seed


@pytest.fixture
def api_gateway_event():
    """Base API Gateway event for Lambda handler tests."""
    return {
        "httpMethod": "POST",
        "headers": {},
        "pathParameters": {},
        "queryStringParameters": {},
        "body": None,
        "requestContext": {
            "requestId": "req-test-123",
            "identity": {"sourceIp": "127.0.0.1"},
        },
    }


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a Stripe-Signature header value for `payload`."""
    timestamp = timestamp or int(time.time())
    signature = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{payload}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    return f"t={timestamp},v1={signature}"


@pytest.fixture
def signed_webhook_event(api_gateway_event):
    """Build an API Gateway event carrying a correctly signed Stripe event."""

    def _build(stripe_event: dict, secret: str = WEBHOOK_SECRET):
        payload = json.dumps(stripe_event)
        api_gateway_event["body"] = payload
        api_gateway_event["headers"] = {"Stripe-Signature": sign_payload(payload, secret)}
        return api_gateway_event

    return _build


def make_subscription(
    subscription_id="sub_123",
    customer="cus_123",
    status="active",
    price_id="price_standard_monthly",
    product_id="prod_membership",
    metadata=None,
    current_period_end=1767225600,  # 2026-01-01T00:00:00Z
    cancel_at_period_end=False,
):
    """A Stripe subscription object as delivered in webhook payloads."""
    return {
        "id": subscription_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "metadata": metadata or {},
        "cancel_at_period_end": cancel_at_period_end,
        "current_period_end": current_period_end,
        "items": {
            "data": [
                {"price": {"id": price_id, "product": product_id}},
            ],
        },
    }
