"""
Typed errors for the billing service.

Each error knows the HTTP status and machine-readable code it maps to, so
handlers can turn it into an API Gateway response with ``to_response()``.
"""

import json
from typing import Optional


class BillingError(Exception):
    """Base class for billing errors."""

    def __init__(
        self,
        code: str,
        message: str,
        status_code: int = 400,
        details: Optional[dict] = None,
    ):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> dict:
        """Convert to API Gateway response format."""
        body = {
            "error": {
                "code": self.code,
                "message": self.message,
            }
        }
        if self.details:
            body["error"]["details"] = self.details

        return {
            "statusCode": self.status_code,
            "headers": {"Content-Type": "application/json"},
            "body": json.dumps(body),
        }


class SignatureInvalid(BillingError):
    """Raised when a webhook payload fails Stripe signature verification."""

    def __init__(self, code: str = "invalid_signature", message: str = "Invalid signature"):
        super().__init__(code=code, message=message, status_code=400)


class MalformedEvent(BillingError):
    """Raised when a verified payload is not a usable Stripe event."""

    def __init__(self, message: str = "Invalid webhook payload"):
        super().__init__(code="invalid_webhook_payload", message=message, status_code=400)


class WebhookNotConfigured(BillingError):
    """Raised when the webhook secret or Stripe key is missing.

    The endpoint refuses to run without verification, so this maps to 503.
    """

    def __init__(self, message: str = "Webhook not configured"):
        super().__init__(code="webhook_not_configured", message=message, status_code=503)


class NotACustomerError(BillingError):
    """Raised when a billing portal is requested for a user with no Stripe customer."""

    def __init__(self, user_id: str):
        super().__init__(
            code="no_subscription",
            message="No subscription found. Subscribe to Pro first.",
            status_code=400,
        )
        self.user_id = user_id


class UserNotFoundError(BillingError):
    """Raised when the session user has no record in the users table."""

    def __init__(self, user_id: str):
        super().__init__(code="user_not_found", message="User not found", status_code=404)
        self.user_id = user_id


class CheckoutNotAvailable(BillingError):
    """Raised when a checkout session cannot be issued for this user."""

    def __init__(self, code: str, message: str, status_code: int = 409):
        super().__init__(code=code, message=message, status_code=status_code)
