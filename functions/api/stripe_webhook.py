"""
Stripe Webhook Endpoint - POST /api/stripe/webhook

Reconciles Stripe billing events into the local entitlement record.
Uses Stripe signature verification instead of session auth.

Pipeline per delivery::

    verify signature -> claim event id -> resolve user -> apply transition
        -> dispatch notifications (best-effort) -> record -> 200

Transient failures release the claim and answer 5xx so Stripe's retry runs
the whole transition again. Permanent failures are recorded and answered
200 because a retry cannot help.
"""

import logging
from typing import Optional

import stripe
from botocore.exceptions import ClientError

from shared import notifications, subscription_state, user_store
from shared.billing_utils import configure_stripe, get_webhook_secret
from shared.constants import EVENT_CHECKOUT_COMPLETED, HANDLED_EVENT_TYPES
from shared.errors import BillingError, MalformedEvent, WebhookNotConfigured
from shared.idempotency import IdempotencyLedger
from shared.identity import repair_subscription_metadata, resolve_user_id
from shared.logging_utils import configure_structured_logging, set_request_id
from shared.response_utils import acknowledge, error_response
from shared.signature import get_raw_body, get_signature_header, verify_event

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

_ledger: Optional[IdempotencyLedger] = None


def _get_ledger() -> IdempotencyLedger:
    global _ledger
    if _ledger is None:
        _ledger = IdempotencyLedger()
    return _ledger


def reset_ledger():
    """Drop the cached ledger so env changes take effect. Used in tests."""
    global _ledger
    _ledger = None


def _permanent_failure(code: str, message: str) -> dict:
    """Acknowledge an event that retries cannot fix, flagged as not processed."""
    return acknowledge(processed=False, error={"code": code, "message": message})


def handler(event, context):
    """
    Lambda handler for Stripe webhooks.

    Handles:
    - checkout.session.completed: link customer/subscription, grant trial or paid access
    - customer.subscription.created/updated: recompute entitlement from status
    - customer.subscription.deleted: revoke access
    - invoice.payment_succeeded/failed: reconcile raw status, receipt / dunning email
    - invoice.upcoming: renewal reminder
    - customer.subscription.trial_will_end: trial ending reminder
    """
    configure_structured_logging()
    set_request_id(event)

    try:
        webhook_secret = get_webhook_secret()
        if not webhook_secret or not configure_stripe():
            raise WebhookNotConfigured()

        try:
            payload = get_raw_body(event)
        except ValueError as e:
            raise MalformedEvent("Request body is not valid base64") from e

        stripe_event = verify_event(payload, get_signature_header(event), webhook_secret)
    except WebhookNotConfigured as e:
        logger.error("Stripe webhook secret or API key not configured")
        return e.to_response()
    except BillingError as e:
        return e.to_response()

    event_id = stripe_event["id"]
    event_type = stripe_event["type"]
    data = stripe_event["data"]["object"]
    log_fields = {"event_id": event_id, "event_type": event_type}

    logger.info(f"Processing Stripe event: {event_type} (id={event_id})", extra=log_fields)

    ledger = _get_ledger()
    try:
        claimed = ledger.claim(event_id, event_type)
    except ClientError as e:
        logger.error(f"Failed to claim event {event_id}: {e}", extra=log_fields)
        return error_response(500, "temporary_error", "Temporary error, please retry")

    if not claimed:
        logger.info(f"Skipping duplicate event {event_id}", extra=log_fields)
        return acknowledge(duplicate=True)

    if event_type not in HANDLED_EVENT_TYPES:
        logger.info(f"Unhandled event type: {event_type}", extra=log_fields)
        ledger.record(event_id, event_type, outcome="ignored")
        return acknowledge(ignored=True)

    try:
        result = _process(event_type, data, log_fields)
    except ClientError as e:
        # DynamoDB errors are transient - release claim so Stripe retry can re-process
        ledger.release(event_id)
        logger.error(f"Transient error handling {event_type}: {e}", extra=log_fields)
        return error_response(500, "temporary_error", "Temporary error, please retry")
    except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
        ledger.release(event_id)
        logger.error(f"Transient Stripe error handling {event_type}: {e}", extra=log_fields)
        return error_response(500, "stripe_error", "Stripe error, please retry")
    except stripe.StripeError as e:
        # Permanent Stripe errors (InvalidRequestError, AuthenticationError, etc.)
        ledger.record(event_id, event_type, outcome="failed", error=str(e))
        logger.error(f"Permanent Stripe error handling {event_type}: {e}", extra=log_fields)
        return _permanent_failure("stripe_validation_error", "Stripe validation error")
    except (ValueError, KeyError, TypeError, AttributeError) as e:
        # Don't leak internal field names in response
        ledger.record(event_id, event_type, outcome="failed", error=str(e))
        logger.error(f"Permanent error handling {event_type}: {e}", extra=log_fields)
        return _permanent_failure("invalid_event_data", "Invalid event data")
    except Exception as e:
        ledger.release(event_id)
        logger.error(f"Unexpected error handling {event_type}: {e}", exc_info=True, extra=log_fields)
        return error_response(500, "processing_failed", "Processing failed")

    if not ledger.record(event_id, event_type, outcome=result.pop("outcome")):
        # State is already written; the processing claim still blocks duplicates
        logger.warning(f"Event {event_id} processed but not recorded", extra=log_fields)

    return acknowledge(**result)


def _process(event_type: str, data: dict, log_fields: dict) -> dict:
    """Resolve, transition and notify for one claimed event.

    Returns the acknowledgement fields plus an ``outcome`` for the ledger.
    Raises on transient errors; the caller decides retry vs record.
    """
    if event_type == EVENT_CHECKOUT_COMPLETED and not subscription_state.is_subscription_checkout(data):
        logger.info(f"Checkout {data.get('id')} is not a subscription purchase, ignoring", extra=log_fields)
        return {"outcome": "ignored", "ignored": True}

    resolution = resolve_user_id(data)
    if resolution is None:
        # Redelivery cannot make an unknown customer resolvable
        return {"outcome": "unresolved", "processed": False}

    if resolution.needs_repair:
        repair_subscription_metadata(resolution)

    user = user_store.get_user(resolution.user_id)
    if user is None:
        logger.warning(
            f"Resolved user {resolution.user_id} has no record, nothing to update",
            extra={**log_fields, "user_id": resolution.user_id},
        )
        return {"outcome": "user_not_found", "processed": False}

    transition = subscription_state.apply(event_type, data, user)
    if transition is None:
        return {"outcome": "skipped", "processed": False}

    sent = notifications.dispatch(transition)
    logger.info(
        f"Applied {event_type} for {user.user_id}: {transition.previous_state} -> {transition.state}",
        extra={**log_fields, "user_id": user.user_id, "notifications": sent},
    )
    return {"outcome": "success"}
