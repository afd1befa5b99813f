"""
Create Billing Portal Session Endpoint - GET|POST /api/billing/portal

Creates a Stripe Billing Portal session for subscription management.
Requires session authentication (logged-in user with a Stripe customer).
"""

import logging
import os

import stripe

from shared import user_store
from shared.billing_utils import configure_stripe
from shared.errors import BillingError, NotACustomerError, UserNotFoundError
from shared.logging_utils import configure_structured_logging, set_request_id
from shared.response_utils import error_response, get_origin, success_response
from shared.session_auth import get_session_token, verify_session_token

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

BASE_URL = os.environ.get("BASE_URL", "https://thecampingplanner.com")


def create_portal_session(user_id: str) -> str:
    """Create a portal session for a local user and return its URL.

    Raises:
        UserNotFoundError: no user record.
        NotACustomerError: the user never reached Stripe checkout.
    """
    user = user_store.get_user(user_id)
    if user is None:
        raise UserNotFoundError(user_id)
    if not user.stripe_customer_id:
        raise NotACustomerError(user_id)

    portal_session = stripe.billing_portal.Session.create(
        customer=user.stripe_customer_id,
        return_url=f"{BASE_URL}/account",
    )
    logger.info(f"Created billing portal session for user {user_id}")
    return portal_session.url


def handler(event, context):
    """
    Lambda handler for /api/billing/portal.

    No request body required - uses session to identify user.

    Returns:
    {
        "url": "https://billing.stripe.com/..."
    }
    """
    configure_structured_logging()
    set_request_id(event)
    origin = get_origin(event)

    if not configure_stripe():
        logger.error("Stripe API key not configured")
        return error_response(
            500, "stripe_not_configured", "Payment system not configured", origin=origin
        )

    session_token = get_session_token(event)
    if not session_token:
        return error_response(
            401, "unauthorized", "Please log in to manage subscription", origin=origin
        )

    session_data = verify_session_token(session_token)
    if not session_data:
        return error_response(
            401, "session_expired", "Session expired. Please log in again.", origin=origin
        )

    try:
        url = create_portal_session(session_data.get("user_id"))
        return success_response({"url": url}, origin=origin)

    except BillingError as e:
        return error_response(e.status_code, e.code, e.message, origin=origin)
    except stripe.StripeError as e:
        logger.error(f"Stripe error creating billing portal session: {e}")
        return error_response(
            500, "stripe_error", "Failed to create billing portal session", origin=origin
        )
    except Exception as e:
        logger.error(f"Error creating billing portal session: {e}")
        return error_response(500, "internal_error", "An error occurred", origin=origin)
