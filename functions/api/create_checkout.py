"""
Create Checkout Session Endpoint - POST /api/billing/create-checkout-session

Creates a Stripe Checkout session for the Pro annual subscription.
Requires session authentication (logged-in user).

The session carries the local user id as ``client_reference_id`` and in
metadata (copied onto the subscription), so every later webhook for this
purchase resolves without a fallback lookup.
"""

import logging
import os

import stripe

from shared import user_store
from shared.billing_utils import configure_stripe
from shared.constants import PURPOSE_METADATA_KEY, USER_ID_METADATA_KEY
from shared.errors import BillingError, CheckoutNotAvailable, UserNotFoundError
from shared.logging_utils import configure_structured_logging, log_external_call, set_request_id
from shared.response_utils import error_response, get_origin, success_response
from shared.session_auth import get_session_token, verify_session_token

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

BASE_URL = os.environ.get("BASE_URL", "https://thecampingplanner.com")
SUBSCRIPTION_PURPOSE = os.environ.get("SUBSCRIPTION_PURPOSE") or "pro_membership_annual"


def _price_id() -> str | None:
    # Use `or` to handle empty string env vars
    return os.environ.get("STRIPE_PRICE_PRO_ANNUAL") or None


def _ensure_customer(user: user_store.User) -> str:
    """Return the user's Stripe customer id, creating and persisting one if needed.

    The id is stored before any checkout session exists. A crash between the
    two steps leaves at worst an orphaned Stripe customer, never a lost
    local reference.
    """
    if user.stripe_customer_id:
        return user.stripe_customer_id

    customer = stripe.Customer.create(
        email=user.email,
        name=user.first_name,
        metadata={USER_ID_METADATA_KEY: user.user_id},
        idempotency_key=f"customer-create-{user.user_id}",
    )
    log_external_call(logger, "stripe", "Customer.create", True, user_id=user.user_id)

    if not user_store.update_stripe_customer_id(user.user_id, customer.id):
        raise UserNotFoundError(user.user_id)
    return customer.id


def handler(event, context):
    """
    Lambda handler for POST /api/billing/create-checkout-session.

    No request body required - uses session to identify user.

    Returns:
    {
        "url": "https://checkout.stripe.com/..."
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
        return error_response(401, "unauthorized", "Please log in to upgrade", origin=origin)

    session_data = verify_session_token(session_token)
    if not session_data:
        return error_response(
            401, "session_expired", "Session expired. Please log in again.", origin=origin
        )

    user_id = session_data.get("user_id")

    try:
        user = user_store.get_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)

        if user.has_access:
            raise CheckoutNotAvailable(
                "already_subscribed", "You already have an active Pro membership."
            )

        price_id = _price_id()
        if not price_id:
            logger.error("STRIPE_PRICE_PRO_ANNUAL not configured")
            raise CheckoutNotAvailable(
                "price_not_configured", "Pricing not configured", status_code=503
            )

        customer_id = _ensure_customer(user)

        metadata = {
            USER_ID_METADATA_KEY: user.user_id,
            PURPOSE_METADATA_KEY: SUBSCRIPTION_PURPOSE,
        }
        session = stripe.checkout.Session.create(
            mode="subscription",
            customer=customer_id,
            line_items=[{"price": price_id, "quantity": 1}],
            client_reference_id=user.user_id,
            metadata=metadata,
            subscription_data={"metadata": metadata},
            success_url=f"{BASE_URL}/account?upgraded=true",
            cancel_url=f"{BASE_URL}/pricing?cancelled=true",
            allow_promotion_codes=True,
        )

        logger.info(f"Created checkout session for user {user.user_id}", extra={"user_id": user.user_id})
        return success_response({"url": session.url}, origin=origin)

    except BillingError as e:
        return error_response(e.status_code, e.code, e.message, origin=origin)
    except stripe.StripeError as e:
        logger.error(f"Stripe error creating checkout session: {e}")
        return error_response(
            500, "stripe_error", "Failed to create checkout session", origin=origin
        )
    except Exception as e:
        logger.error(f"Error creating checkout session: {e}", exc_info=True)
        return error_response(500, "internal_error", "An error occurred", origin=origin)
