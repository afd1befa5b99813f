"""
Shared pytest fixtures for Camping Planner billing tests.
"""

import hashlib
import hmac
import json
import os
import sys
import time
from datetime import datetime, timedelta, timezone

import boto3
import pytest
from moto import mock_aws

# Add functions directory to Python path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "functions"))

USERS_TABLE = "camping-planner-users"
BILLING_EVENTS_TABLE = "camping-planner-billing-events"
EMAIL_SENDER = "hello@thecampingplanner.com"

WEBHOOK_SECRET = "whsec_test_secret"
STRIPE_API_KEY = "sk_test_123"
SESSION_SECRET = "test-session-secret"


def pytest_configure(config):
    """Set AWS credentials before test collection.

    This runs before test collection starts, ensuring boto3 resource
    creation during imports doesn't fail with NoRegionError.
    """
    os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
    os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
    os.environ.setdefault("AWS_DEFAULT_REGION", "us-east-1")
    os.environ.setdefault("AWS_REGION", "us-east-1")

    os.environ.setdefault("USERS_TABLE", USERS_TABLE)
    os.environ.setdefault("BILLING_EVENTS_TABLE", BILLING_EVENTS_TABLE)
    os.environ.setdefault("EMAIL_SENDER", EMAIL_SENDER)


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
    from shared.aws_clients import reset_clients
    reset_clients()


@pytest.fixture(autouse=True)
def reset_secret_caches():
    """Reset cached Stripe/session secrets and the webhook ledger between tests.

    Cached secrets from one test must not leak into tests that configure
    different (or missing) secrets.
    """
    _reset_caches()
    yield
    _reset_caches()


def _reset_caches():
    from shared.billing_utils import clear_secret_cache

    clear_secret_cache()

    if "api.stripe_webhook" in sys.modules:
        sys.modules["api.stripe_webhook"].reset_ledger()


def create_dynamodb_tables(dynamodb):
    """Create all DynamoDB tables with their GSIs.

    Args:
        dynamodb: boto3 DynamoDB resource
    """
    # Users table: one PROFILE item per user
    dynamodb.create_table(
        TableName=USERS_TABLE,
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},
            {"AttributeName": "sk", "KeyType": "RANGE"},
        ],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
            {"AttributeName": "sk", "AttributeType": "S"},
            {"AttributeName": "email", "AttributeType": "S"},
            {"AttributeName": "stripe_customer_id", "AttributeType": "S"},
        ],
        GlobalSecondaryIndexes=[
            {
                "IndexName": "email-index",
                "KeySchema": [{"AttributeName": "email", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "ALL"},
            },
            {
                "IndexName": "stripe-customer-index",
                "KeySchema": [{"AttributeName": "stripe_customer_id", "KeyType": "HASH"}],
                "Projection": {"ProjectionType": "ALL"},
            },
        ],
        BillingMode="PAY_PER_REQUEST",
    )

    # Billing events table: idempotency ledger keyed by Stripe event id
    dynamodb.create_table(
        TableName=BILLING_EVENTS_TABLE,
        KeySchema=[
            {"AttributeName": "pk", "KeyType": "HASH"},  # event_id
        ],
        AttributeDefinitions=[
            {"AttributeName": "pk", "AttributeType": "S"},
        ],
        BillingMode="PAY_PER_REQUEST",
    )


@pytest.fixture
def mock_dynamodb():
    """Provide mocked DynamoDB with tables and a verified SES sender."""
    with mock_aws():
        dynamodb = boto3.resource("dynamodb", region_name="us-east-1")
        create_dynamodb_tables(dynamodb)
        boto3.client("ses", region_name="us-east-1").verify_email_identity(EmailAddress=EMAIL_SENDER)
        yield dynamodb


@pytest.fixture
def users_table(mock_dynamodb):
    return mock_dynamodb.Table(USERS_TABLE)


@pytest.fixture
def ledger_table(mock_dynamodb):
    return mock_dynamodb.Table(BILLING_EVENTS_TABLE)


def put_user(table, user_id="user_123", email="camper@example.com", **fields):
    """Insert a user PROFILE item. Extra fields are stored as given."""
    item = {"pk": user_id, "sk": "PROFILE", "email": email, "first_name": "Alex"}
    item.update({k: v for k, v in fields.items() if v is not None})
    table.put_item(Item=item)
    return item


@pytest.fixture
def seeded_user(users_table):
    """A signed-up user with no billing history."""
    return put_user(users_table)


@pytest.fixture
def active_user(users_table):
    """A user with an active paid subscription."""
    period_end = int((datetime.now(timezone.utc) + timedelta(days=200)).timestamp())
    return put_user(
        users_table,
        stripe_customer_id="cus_1",
        stripe_subscription_id="sub_1",
        subscription_status="active",
        entitlement_end=period_end,
    )


@pytest.fixture
def stripe_secrets(mock_dynamodb):
    """Store Stripe and session secrets in (mocked) Secrets Manager."""
    sm = boto3.client("secretsmanager", region_name="us-east-1")
    api_key_arn = sm.create_secret(Name="stripe-api-key", SecretString=json.dumps({"key": STRIPE_API_KEY}))["ARN"]
    webhook_arn = sm.create_secret(Name="stripe-webhook", SecretString=json.dumps({"secret": WEBHOOK_SECRET}))["ARN"]
    session_arn = sm.create_secret(Name="session-secret", SecretString=json.dumps({"secret": SESSION_SECRET}))["ARN"]

    os.environ["STRIPE_SECRET_ARN"] = api_key_arn
    os.environ["STRIPE_WEBHOOK_SECRET_ARN"] = webhook_arn
    os.environ["SESSION_SECRET_ARN"] = session_arn
    yield {"api_key": STRIPE_API_KEY, "webhook_secret": WEBHOOK_SECRET, "session_secret": SESSION_SECRET}

    for name in ("STRIPE_SECRET_ARN", "STRIPE_WEBHOOK_SECRET_ARN", "SESSION_SECRET_ARN"):
        os.environ.pop(name, None)


@pytest.fixture
def api_gateway_event():
    """Base API Gateway event for Lambda handler tests."""
    return {
        "httpMethod": "GET",
        "headers": {},
        "pathParameters": {},
        "queryStringParameters": {},
        "body": None,
        "isBase64Encoded": False,
        "requestContext": {
            "requestId": "req-test-123",
            "identity": {"sourceIp": "127.0.0.1"},
        },
    }


def sign_payload(payload: str, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Build a Stripe-Signature header value for ``payload``."""
    timestamp = timestamp or int(time.time())
    signed_payload = f"{timestamp}.{payload}"
    signature = hmac.new(secret.encode("utf-8"), signed_payload.encode("utf-8"), hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_stripe_event(event_type: str, obj: dict, event_id: str = "evt_test_1") -> dict:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "livemode": False,
        "data": {"object": obj},
    }


def webhook_request(api_gateway_event: dict, stripe_event: dict, secret: str = WEBHOOK_SECRET) -> dict:
    """Turn a Stripe event into a signed API Gateway POST."""
    payload = json.dumps(stripe_event)
    request = dict(api_gateway_event)
    request["httpMethod"] = "POST"
    request["body"] = payload
    request["headers"] = {"Stripe-Signature": sign_payload(payload, secret)}
    return request


def session_cookie(user_id="user_123", email="camper@example.com", secret=SESSION_SECRET, expires_in=3600):
    from shared.session_auth import create_session_token

    token = create_session_token(
        {"user_id": user_id, "email": email, "exp": int(time.time()) + expires_in},
        secret,
    )
    return f"session={token}"


def stripe_subscription(data: dict):
    """A Subscription as the SDK returns it from ``retrieve`` (not a dict)."""
    import stripe

    return stripe.Subscription.construct_from(data, STRIPE_API_KEY)


def stripe_customer(data: dict):
    import stripe

    return stripe.Customer.construct_from(data, STRIPE_API_KEY)
