"""
Stripe webhook signature verification.

Verification runs over the raw request body exactly as API Gateway
delivered it. The body must never be parsed and re-serialized before this
point: the HMAC covers the original bytes.
"""

import base64
import json
import logging

import stripe

from shared.errors import MalformedEvent, SignatureInvalid, WebhookNotConfigured

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "stripe-signature"


def get_raw_body(event: dict) -> bytes:
    """Return the undecoded request body bytes from an API Gateway event."""
    body = event.get("body") or ""
    if event.get("isBase64Encoded"):
        return base64.b64decode(body)
    if isinstance(body, str):
        return body.encode("utf-8")
    return body


def get_signature_header(event: dict) -> str | None:
    """Header lookup is case-insensitive (API Gateway v1 keeps client casing)."""
    headers = event.get("headers") or {}
    for name, value in headers.items():
        if name.lower() == SIGNATURE_HEADER:
            return value
    return None


def verify_event(payload: bytes, sig_header: str | None, webhook_secret: str | None):
    """Verify a Stripe webhook and return the trusted event.

    Raises:
        WebhookNotConfigured: no signing secret is configured (fail closed).
        SignatureInvalid: signature header missing, malformed, stale or wrong.
        MalformedEvent: signature is valid but the body is not an event.
    """
    if not webhook_secret:
        raise WebhookNotConfigured("Webhook signing secret not configured")

    if not sig_header:
        raise SignatureInvalid("missing_signature", "Missing Stripe signature")

    try:
        body = payload.decode("utf-8") if isinstance(payload, bytes) else payload
    except UnicodeDecodeError as e:
        raise SignatureInvalid() from e

    try:
        stripe.WebhookSignature.verify_header(
            body, sig_header, webhook_secret, tolerance=stripe.Webhook.DEFAULT_TOLERANCE
        )
    except stripe.SignatureVerificationError as e:
        # Expected from misconfigured or hostile senders; not an alert by itself
        logger.warning(f"Invalid Stripe signature: {type(e).__name__}")
        raise SignatureInvalid() from e

    # Parsed only after the raw bytes have been authenticated
    try:
        event = json.loads(body)
    except ValueError as e:
        logger.warning(f"Webhook body is not valid JSON: {e}")
        raise MalformedEvent() from e

    if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
        raise MalformedEvent("Webhook event missing id or type")
    data = event.get("data")
    if not isinstance(data, dict) or not isinstance(data.get("object"), dict):
        raise MalformedEvent("Webhook event missing data.object")

    return event
