"""
Tests for the scheduled sweeps: past_due grace revocation and ledger expiry.
"""

import os
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

from freezegun import freeze_time
from moto import mock_aws

from conftest import put_user


def _ts(dt):
    return int(dt.timestamp())


class TestGracePeriodSweep:

    @mock_aws
    def test_revokes_users_past_grace(self, mock_dynamodb, users_table):
        from api.grace_period_sweep import handler

        put_user(
            users_table,
            subscription_status="past_due",
            past_due_since=_ts(datetime(2026, 3, 1, tzinfo=timezone.utc)),
            entitlement_end=_ts(datetime(2026, 9, 1, tzinfo=timezone.utc)),
        )

        with freeze_time("2026-03-20 03:00:00"):
            result = handler({}, None)

        assert result == {"processed": 1, "revoked": 1, "errors": 0}
        item = users_table.get_item(Key={"pk": "user_123", "sk": "PROFILE"})["Item"]
        assert "entitlement_end" not in item
        assert item["subscription_status"] == "past_due"

    @mock_aws
    def test_within_grace_keeps_access(self, mock_dynamodb, users_table):
        from api.grace_period_sweep import handler

        put_user(
            users_table,
            subscription_status="past_due",
            past_due_since=_ts(datetime(2026, 3, 10, tzinfo=timezone.utc)),
            entitlement_end=_ts(datetime(2026, 9, 1, tzinfo=timezone.utc)),
        )

        with freeze_time("2026-03-20 03:00:00"):
            result = handler({}, None)

        assert result["revoked"] == 0
        assert "entitlement_end" in users_table.get_item(Key={"pk": "user_123", "sk": "PROFILE"})["Item"]

    @mock_aws
    def test_recovered_user_is_not_revoked(self, mock_dynamodb, users_table):
        """A user back to active between scan and update keeps access."""
        from api.grace_period_sweep import handler
        from shared import user_store

        put_user(
            users_table,
            subscription_status="past_due",
            past_due_since=_ts(datetime.now(timezone.utc) - timedelta(days=30)),
            entitlement_end=_ts(datetime.now(timezone.utc) + timedelta(days=100)),
        )
        scanned = list(user_store.scan_past_due_since_before(datetime.now(timezone.utc) - timedelta(days=14)))
        user_store.update_subscription_status("user_123", "active")

        with patch.object(user_store, "scan_past_due_since_before", return_value=iter(scanned)):
            result = handler({}, None)

        assert result == {"processed": 1, "revoked": 0, "errors": 0}
        assert "entitlement_end" in users_table.get_item(Key={"pk": "user_123", "sk": "PROFILE"})["Item"]

    @mock_aws
    def test_disabled_at_zero(self, mock_dynamodb, users_table):
        from api.grace_period_sweep import handler

        put_user(
            users_table,
            subscription_status="past_due",
            past_due_since=_ts(datetime.now(timezone.utc) - timedelta(days=300)),
            entitlement_end=_ts(datetime.now(timezone.utc) + timedelta(days=100)),
        )

        with patch.dict(os.environ, {"PAST_DUE_MAX_GRACE_DAYS": "0"}):
            result = handler({}, None)

        assert result["disabled"] is True
        assert "entitlement_end" in users_table.get_item(Key={"pk": "user_123", "sk": "PROFILE"})["Item"]


class TestLedgerSweep:

    @mock_aws
    def test_deletes_expired_rows(self, mock_dynamodb, ledger_table):
        from api.ledger_sweep import handler

        now = int(time.time())
        ledger_table.put_item(Item={"pk": "evt_old", "status": "processed", "expires_at": now - 60})
        ledger_table.put_item(Item={"pk": "evt_new", "status": "processed", "expires_at": now + 3600})

        assert handler({}, None) == {"deleted": 1}
        assert "Item" not in ledger_table.get_item(Key={"pk": "evt_old"})
        assert "Item" in ledger_table.get_item(Key={"pk": "evt_new"})

    @mock_aws
    def test_reports_errors(self, mock_dynamodb):
        from api.ledger_sweep import handler
        from shared.idempotency import IdempotencyLedger

        with patch.object(IdempotencyLedger, "sweep_expired", side_effect=RuntimeError("scan failed")):
            result = handler({}, None)

        assert result == {"deleted": 0, "error": "scan failed"}
