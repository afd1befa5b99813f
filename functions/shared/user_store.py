"""
DynamoDB-backed user store: identity plus the entitlement projection.

One item per user (``pk=<user_id>, sk=PROFILE``). Lookup by email and by
Stripe customer id go through GSIs. All billing writes are plain SETs of
computed values, never increments, so replaying a write is harmless.
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from boto3.dynamodb.conditions import Attr, Key
from botocore.exceptions import ClientError

from shared.aws_clients import get_dynamodb
from shared.constants import STATUS_PAST_DUE
from shared.entitlement import entitlement_state, from_unix, has_access
from shared.logging_utils import mask_email

logger = logging.getLogger(__name__)

USERS_TABLE = os.environ.get("USERS_TABLE", "camping-planner-users")
PROFILE_SK = "PROFILE"

# Sentinel for distinguishing "not provided" from None
UNSET = object()


@dataclass
class User:
    """Snapshot of a user record as read from DynamoDB."""

    user_id: str
    email: Optional[str] = None
    first_name: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    subscription_status: Optional[str] = None
    entitlement_end: Optional[datetime] = None
    past_due_since: Optional[datetime] = None

    @classmethod
    def from_item(cls, item: dict) -> "User":
        return cls(
            user_id=item["pk"],
            email=item.get("email"),
            first_name=item.get("first_name"),
            stripe_customer_id=item.get("stripe_customer_id"),
            stripe_subscription_id=item.get("stripe_subscription_id"),
            subscription_status=item.get("subscription_status"),
            entitlement_end=from_unix(item.get("entitlement_end")),
            past_due_since=from_unix(item.get("past_due_since")),
        )

    @property
    def has_access(self) -> bool:
        return has_access(self.entitlement_end)

    @property
    def state(self) -> str:
        return entitlement_state(self.subscription_status, self.entitlement_end)


def _table():
    return get_dynamodb().Table(USERS_TABLE)


def get_user(user_id: str) -> Optional[User]:
    """Get a user by local id."""
    if not user_id:
        return None
    response = _table().get_item(Key={"pk": user_id, "sk": PROFILE_SK})
    item = response.get("Item")
    return User.from_item(item) if item else None


def get_users_by_email(email: str) -> list[User]:
    """All users registered with this email (normally zero or one)."""
    if not email:
        return []
    response = _table().query(
        IndexName="email-index",
        KeyConditionExpression=Key("email").eq(email.strip().lower()),
    )
    return [User.from_item(item) for item in response.get("Items", []) if item.get("sk") == PROFILE_SK]


def get_user_by_email(email: str) -> Optional[User]:
    """Get the single user with this email.

    Returns None when no user or more than one user matches; an ambiguous
    email must not pick a user at random.
    """
    users = get_users_by_email(email)
    if len(users) > 1:
        logger.warning(f"Email {mask_email(email)} matches {len(users)} users, refusing to pick one")
        return None
    return users[0] if users else None


def get_user_by_customer_id(customer_id: str) -> Optional[User]:
    """Get a user by Stripe customer id using the stripe-customer-index GSI."""
    if not customer_id:
        return None
    response = _table().query(
        IndexName="stripe-customer-index",
        KeyConditionExpression=Key("stripe_customer_id").eq(customer_id),
        Limit=1,
    )
    items = response.get("Items", [])
    return User.from_item(items[0]) if items else None


def update_billing_state(
    user_id: str,
    *,
    stripe_customer_id: str = UNSET,
    stripe_subscription_id: str = UNSET,
    subscription_status: Optional[str] = UNSET,
    entitlement_end: Optional[datetime] = UNSET,
) -> bool:
    """Centralized billing state writer.

    Applies every provided field in one UpdateItem so a transition is
    written atomically. ``entitlement_end=None`` removes the attribute
    (no access). Entering ``past_due`` stamps ``past_due_since`` once;
    any other status clears it.

    Returns:
        False if the user record does not exist, True otherwise.

    Raises:
        ClientError: for anything other than a missing user, so the webhook
            can release its ledger claim and let Stripe retry.
    """
    set_parts = ["billing_updated_at = :now"]
    remove_parts = []
    values = {":now": datetime.now(timezone.utc).isoformat()}

    if stripe_customer_id is not UNSET:
        set_parts.append("stripe_customer_id = :cust_id")
        values[":cust_id"] = stripe_customer_id

    if stripe_subscription_id is not UNSET:
        set_parts.append("stripe_subscription_id = :sub_id")
        values[":sub_id"] = stripe_subscription_id

    if subscription_status is not UNSET:
        set_parts.append("subscription_status = :status")
        values[":status"] = subscription_status
        if subscription_status == STATUS_PAST_DUE:
            set_parts.append("past_due_since = if_not_exists(past_due_since, :now_ts)")
            values[":now_ts"] = int(datetime.now(timezone.utc).timestamp())
        else:
            remove_parts.append("past_due_since")

    if entitlement_end is not UNSET:
        if entitlement_end is None:
            remove_parts.append("entitlement_end")
        else:
            set_parts.append("entitlement_end = :ent_end")
            values[":ent_end"] = int(entitlement_end.timestamp())

    update_expr = "SET " + ", ".join(set_parts)
    if remove_parts:
        update_expr += " REMOVE " + ", ".join(remove_parts)

    try:
        _table().update_item(
            Key={"pk": user_id, "sk": PROFILE_SK},
            UpdateExpression=update_expr,
            ConditionExpression="attribute_exists(pk)",
            ExpressionAttributeValues=values,
        )
    except ClientError as e:
        if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
            logger.warning(f"User {user_id} not found, billing state not written")
            return False
        raise

    changed = [p.split(" = ")[0] for p in set_parts[1:]] + [f"-{r}" for r in remove_parts]
    logger.info(f"Billing state updated for {user_id}: {', '.join(changed) or 'timestamp only'}")
    return True


def update_stripe_customer_id(user_id: str, customer_id: str) -> bool:
    return update_billing_state(user_id, stripe_customer_id=customer_id)


def update_stripe_subscription_id(user_id: str, subscription_id: str) -> bool:
    return update_billing_state(user_id, stripe_subscription_id=subscription_id)


def update_subscription_status(user_id: str, status: Optional[str]) -> bool:
    return update_billing_state(user_id, subscription_status=status)


def update_entitlement_end(user_id: str, entitlement_end: Optional[datetime]) -> bool:
    return update_billing_state(user_id, entitlement_end=entitlement_end)


def scan_past_due_since_before(cutoff: datetime):
    """Yield users that have been past_due since before ``cutoff`` and still have access."""
    scan_kwargs = {
        "FilterExpression": (
            Attr("sk").eq(PROFILE_SK)
            & Attr("subscription_status").eq(STATUS_PAST_DUE)
            & Attr("past_due_since").lt(int(cutoff.timestamp()))
            & Attr("entitlement_end").exists()
        ),
    }
    table = _table()
    while True:
        response = table.scan(**scan_kwargs)
        for item in response.get("Items", []):
            yield User.from_item(item)

        if "LastEvaluatedKey" not in response:
            break
        scan_kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]


def revoke_expired_grace(user_id: str, cutoff: datetime) -> bool:
    """Remove entitlement for a user still past_due since before ``cutoff``.

    Conditional so a payment recovery that lands mid-sweep is never undone.
    Returns False if the user recovered (or vanished) in the meantime.
    """
    try:
        _table().update_item(
            Key={"pk": user_id, "sk": PROFILE_SK},
            UpdateExpression="SET billing_updated_at = :now, grace_expired_at = :now REMOVE entitlement_end",
            ConditionExpression=(
                Attr("subscription_status").eq(STATUS_PAST_DUE)
                & Attr("past_due_since").lt(int(cutoff.timestamp()))
            ),
            ExpressionAttributeValues={":now": datetime.now(timezone.utc).isoformat()},
        )
        return True
    except ClientError as e:
        if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
            return False
        raise
