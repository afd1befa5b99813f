"""
Tests for structured logging utilities module.

Tests cover JSON formatting, request ID correlation, email masking
and the standardized external call log line.
"""

import json
import logging
import os
import uuid
from unittest.mock import patch

from shared.logging_utils import (
    StructuredFormatter,
    configure_structured_logging,
    log_external_call,
    mask_email,
    request_id_var,
    set_request_id,
)


def _record(msg="Test", level=logging.INFO, args=(), exc_info=None):
    return logging.LogRecord(
        name="test.logger",
        level=level,
        pathname="test.py",
        lineno=10,
        msg=msg,
        args=args,
        exc_info=exc_info,
    )


class TestStructuredFormatter:
    """Tests for StructuredFormatter class."""

    def test_format_includes_required_fields(self):
        """Formatter should include timestamp, level, logger, message."""
        parsed = json.loads(StructuredFormatter().format(_record("Warning message", logging.WARNING)))

        assert "timestamp" in parsed
        assert parsed["level"] == "WARNING"
        assert parsed["logger"] == "test.logger"
        assert parsed["message"] == "Warning message"

    def test_format_includes_request_id_from_context(self):
        token = request_id_var.set("req-12345")
        try:
            parsed = json.loads(StructuredFormatter().format(_record()))
            assert parsed["request_id"] == "req-12345"
        finally:
            request_id_var.reset(token)

    def test_format_includes_lambda_function_name(self):
        with patch.dict(os.environ, {"AWS_LAMBDA_FUNCTION_NAME": "stripe-webhook"}):
            parsed = json.loads(StructuredFormatter().format(_record()))

        assert parsed["function_name"] == "stripe-webhook"

    def test_format_includes_webhook_extra_fields(self):
        """event_id / event_type / notification extras end up as top-level keys."""
        record = _record()
        record.event_id = "evt_123"
        record.event_type = "invoice.payment_failed"
        record.notification = "payment_failed"

        parsed = json.loads(StructuredFormatter().format(record))

        assert parsed["event_id"] == "evt_123"
        assert parsed["event_type"] == "invoice.payment_failed"
        assert parsed["notification"] == "payment_failed"

    def test_format_excludes_standard_record_fields(self):
        parsed = json.loads(StructuredFormatter().format(_record()))

        for field in ("pathname", "lineno", "msg", "args", "levelno", "taskName"):
            assert field not in parsed

    def test_format_includes_exception_info(self):
        try:
            raise ValueError("boom")
        except ValueError:
            import sys
            record = _record("failed", logging.ERROR, exc_info=sys.exc_info())

        parsed = json.loads(StructuredFormatter().format(record))

        assert "ValueError: boom" in parsed["exception"]

    def test_format_handles_non_serializable_extra(self):
        record = _record()
        record.when = object()

        parsed = json.loads(StructuredFormatter().format(record))

        assert "object" in parsed["when"]


class TestConfigureStructuredLogging:
    """Tests for configure_structured_logging function."""

    def test_replaces_handlers_with_structured_one(self):
        root = logging.getLogger()
        root.addHandler(logging.StreamHandler())

        configure_structured_logging()

        assert len(root.handlers) == 1
        assert isinstance(root.handlers[0].formatter, StructuredFormatter)

    def test_sets_log_level(self):
        configure_structured_logging(logging.WARNING)
        assert logging.getLogger().level == logging.WARNING
        configure_structured_logging()
        assert logging.getLogger().level == logging.INFO


class TestSetRequestId:
    """Tests for set_request_id function."""

    def test_extracts_api_gateway_request_id(self):
        assert set_request_id({"requestContext": {"requestId": "apigw-123"}}) == "apigw-123"
        assert request_id_var.get() == "apigw-123"

    def test_extracts_x_request_id_header(self):
        assert set_request_id({"headers": {"X-Request-Id": "hdr-456"}}) == "hdr-456"

    def test_uses_eventbridge_event_id(self):
        """Scheduled sweeps are correlated by their EventBridge event id."""
        assert set_request_id({"id": "eb-789", "source": "aws.events"}) == "eb-789"

    def test_generates_uuid_when_no_id_found(self):
        request_id = set_request_id({"headers": None})
        uuid.UUID(request_id)


class TestMaskEmail:
    def test_masks_all_but_prefix(self):
        assert mask_email("camper@example.com") == "cam***"

    def test_missing_email(self):
        assert mask_email(None) == "<none>"
        assert mask_email("") == "<none>"


class TestLogExternalCall:
    """Tests for log_external_call function."""

    def test_successful_call_logged_at_info(self, caplog):
        logger = logging.getLogger("test.external")

        with caplog.at_level(logging.INFO):
            log_external_call(logger, "stripe", "Subscription.modify", True, subscription_id="sub_1")

        assert len(caplog.records) == 1
        record = caplog.records[0]
        assert record.levelno == logging.INFO
        assert record.getMessage() == "External call to stripe: Subscription.modify -> success"
        assert record.subscription_id == "sub_1"
        assert record.error is None

    def test_failed_call_logged_at_warning(self, caplog):
        logger = logging.getLogger("test.external")

        with caplog.at_level(logging.WARNING):
            log_external_call(logger, "ses", "send_email", False, error="Throttling")

        assert len(caplog.records) == 1
        assert caplog.records[0].levelno == logging.WARNING
        assert caplog.records[0].error == "Throttling"
        assert caplog.records[0].service == "ses"
