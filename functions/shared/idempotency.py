"""
Idempotency ledger for Stripe webhook deliveries.

Stripe delivers at least once and redelivers with the same event id, so
each event id gets one row in the billing events table. Claiming a row is
a single conditional put (insert-if-absent), which makes check-and-record
one atomic step even when several Lambdas receive the same event at once.

Row lifecycle::

    claim()   -> status=processing   (in-flight, blocks duplicates)
    record()  -> status=processed    (kept for the retention window)
    release() -> row deleted         (transient failure, let Stripe retry)

Rows carry ``expires_at`` and a DynamoDB ``ttl`` attribute. TTL deletion is
lazy, so expiry is also enforced in the claim condition and by the sweep.
"""

import logging
import os
import time
from datetime import datetime, timezone
from typing import Optional

from boto3.dynamodb.conditions import Attr
from botocore.exceptions import ClientError

from shared.aws_clients import get_dynamodb
from shared.constants import (
    DEFAULT_CLAIM_TIMEOUT_SECONDS,
    LEDGER_STATUS_PROCESSED,
    LEDGER_STATUS_PROCESSING,
    MIN_IDEMPOTENCY_RETENTION_HOURS,
)

logger = logging.getLogger(__name__)

BILLING_EVENTS_TABLE = os.environ.get("BILLING_EVENTS_TABLE", "camping-planner-billing-events")


def retention_seconds_from_env() -> int:
    """Retention window in seconds. Never shorter than 24h."""
    raw = os.environ.get("IDEMPOTENCY_RETENTION_HOURS", "")
    try:
        hours = int(raw) if raw else MIN_IDEMPOTENCY_RETENTION_HOURS
    except ValueError:
        logger.warning(f"Ignoring invalid IDEMPOTENCY_RETENTION_HOURS={raw!r}")
        hours = MIN_IDEMPOTENCY_RETENTION_HOURS
    if hours < MIN_IDEMPOTENCY_RETENTION_HOURS:
        logger.warning(
            f"IDEMPOTENCY_RETENTION_HOURS={hours} is below the {MIN_IDEMPOTENCY_RETENTION_HOURS}h floor, clamping"
        )
        hours = MIN_IDEMPOTENCY_RETENTION_HOURS
    return hours * 3600


def claim_timeout_from_env() -> int:
    raw = os.environ.get("IDEMPOTENCY_CLAIM_TIMEOUT_SECONDS", "")
    try:
        return int(raw) if raw else DEFAULT_CLAIM_TIMEOUT_SECONDS
    except ValueError:
        return DEFAULT_CLAIM_TIMEOUT_SECONDS


class IdempotencyLedger:
    """Time-windowed set of handled Stripe event ids backed by DynamoDB."""

    def __init__(
        self,
        table_name: str = None,
        retention_seconds: Optional[int] = None,
        claim_timeout_seconds: Optional[int] = None,
    ):
        self.table_name = table_name or BILLING_EVENTS_TABLE
        self.retention_seconds = retention_seconds or retention_seconds_from_env()
        self.claim_timeout_seconds = claim_timeout_seconds or claim_timeout_from_env()

    @property
    def table(self):
        return get_dynamodb().Table(self.table_name)

    def seen(self, event_id: str) -> bool:
        """True if the event id has a live (unexpired) ledger row."""
        response = self.table.get_item(Key={"pk": event_id}, ConsistentRead=True)
        item = response.get("Item")
        if not item:
            return False
        return int(item.get("expires_at", 0)) > int(time.time())

    def claim(self, event_id: str, event_type: str) -> bool:
        """Atomically check that the event is new and mark it in-flight.

        A claim succeeds when no row exists, when the existing row has
        expired, or when a previous in-flight claim is older than the claim
        timeout (its Lambda crashed or timed out without releasing).

        Returns:
            True if this caller owns the event and should process it,
            False if it is a duplicate.
        """
        now = int(time.time())
        expires_at = now + self.retention_seconds
        try:
            self.table.put_item(
                Item={
                    "pk": event_id,
                    "event_type": event_type,
                    "status": LEDGER_STATUS_PROCESSING,
                    "claimed_at": now,
                    "expires_at": expires_at,
                    "ttl": expires_at,
                },
                ConditionExpression=(
                    Attr("pk").not_exists()
                    | Attr("expires_at").lt(now)
                    | (
                        Attr("status").eq(LEDGER_STATUS_PROCESSING)
                        & Attr("claimed_at").lt(now - self.claim_timeout_seconds)
                    )
                ),
            )
            return True
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                return False
            raise

    def record(self, event_id: str, event_type: str, outcome: str = "success", error: str = None) -> bool:
        """Commit the event as processed for the retention window.

        Called once state is fully written. Returns False (and logs) if the
        write fails; the claim row keeps blocking duplicates in that case.
        """
        now = int(time.time())
        expires_at = now + self.retention_seconds
        try:
            self.table.put_item(
                Item={
                    "pk": event_id,
                    "event_type": event_type,
                    "status": LEDGER_STATUS_PROCESSED,
                    "outcome": outcome,
                    "error": error,
                    "processed_at": datetime.now(timezone.utc).isoformat(),
                    "expires_at": expires_at,
                    "ttl": expires_at,
                }
            )
            return True
        except ClientError as e:
            logger.error(f"Failed to record processed event {event_id}: {e}", extra={"event_id": event_id})
            return False

    def release(self, event_id: str) -> None:
        """Drop an in-flight claim so Stripe's retry can reprocess (best-effort)."""
        try:
            self.table.delete_item(
                Key={"pk": event_id},
                ConditionExpression=Attr("status").eq(LEDGER_STATUS_PROCESSING),
            )
            logger.info(f"Released event claim for {event_id} to allow retry", extra={"event_id": event_id})
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                logger.info(f"Event {event_id} has no in-flight claim to release")
                return
            logger.error(f"Failed to release event claim {event_id}: {e}", extra={"event_id": event_id})

    def sweep_expired(self, now: Optional[int] = None) -> int:
        """Delete rows whose retention window has passed. Returns rows deleted.

        Delete-only and conditional, so a row re-claimed between scan and
        delete survives.
        """
        now = now if now is not None else int(time.time())
        table = self.table
        scan_kwargs = {
            "FilterExpression": Attr("expires_at").lt(now),
            "ProjectionExpression": "pk",
        }
        deleted = 0
        while True:
            response = table.scan(**scan_kwargs)
            for item in response.get("Items", []):
                try:
                    table.delete_item(
                        Key={"pk": item["pk"]},
                        ConditionExpression=Attr("expires_at").lt(now),
                    )
                    deleted += 1
                except ClientError as e:
                    if e.response["Error"]["Code"] != "ConditionalCheckFailedException":
                        raise

            if "LastEvaluatedKey" not in response:
                break
            scan_kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]

        return deleted
