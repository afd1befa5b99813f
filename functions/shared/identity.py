"""
Identity resolution: map a Stripe object to a local user id.

Resolution order, first match wins:

1. ``client_reference_id`` written when we created the checkout session
2. ``metadata.app_user_id`` (copied by Stripe onto descendant objects)
3. local lookup by Stripe customer id
4. Stripe customer email -> local user by email

Resolving via 3 or 4 means the subscription is missing our metadata tag.
``repair_subscription_metadata`` writes it back so later events resolve at
step 2. Repair is a separate, best-effort step; resolution never depends
on it succeeding.
"""

import logging
from dataclasses import dataclass
from typing import Optional

import stripe

from shared import user_store
from shared.billing_utils import stripe_to_dict
from shared.constants import USER_ID_METADATA_KEY
from shared.logging_utils import log_external_call, mask_email

logger = logging.getLogger(__name__)

METHOD_CLIENT_REFERENCE = "client_reference"
METHOD_METADATA = "metadata"
METHOD_CUSTOMER_ID = "customer_id"
METHOD_CUSTOMER_EMAIL = "customer_email"

FALLBACK_METHODS = frozenset({METHOD_CUSTOMER_ID, METHOD_CUSTOMER_EMAIL})


@dataclass(frozen=True)
class Resolution:
    user_id: str
    method: str
    subscription_id: Optional[str] = None

    @property
    def needs_repair(self) -> bool:
        return self.method in FALLBACK_METHODS and bool(self.subscription_id)


def _object_id(value) -> Optional[str]:
    """Stripe fields may hold an id string or an expanded object."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        return value.get("id")
    return None


def customer_id_of(obj: dict) -> Optional[str]:
    return _object_id(obj.get("customer"))


def subscription_id_of(obj: dict) -> Optional[str]:
    """Subscription id for a subscription, checkout session or invoice."""
    if obj.get("object") == "subscription":
        return obj.get("id")

    sub_id = _object_id(obj.get("subscription"))
    if sub_id:
        return sub_id

    # Invoices on newer API versions nest it under parent.subscription_details
    details = (obj.get("parent") or {}).get("subscription_details") or {}
    return _object_id(details.get("subscription"))


def _metadata_user_id(obj: dict) -> Optional[str]:
    candidates = [
        obj.get("metadata"),
        (obj.get("subscription_details") or {}).get("metadata"),
        ((obj.get("parent") or {}).get("subscription_details") or {}).get("metadata"),
    ]
    for metadata in candidates:
        if metadata and metadata.get(USER_ID_METADATA_KEY):
            return metadata[USER_ID_METADATA_KEY]
    return None


def _email_on_object(obj: dict) -> Optional[str]:
    """Email carried directly on a checkout session or invoice."""
    details = obj.get("customer_details") or {}
    return obj.get("customer_email") or details.get("email")


def _fetch_customer_email(customer_id: str) -> Optional[str]:
    """Read a Stripe customer's email.

    A missing customer is a dead end (None). Connection, rate-limit and
    server errors propagate so the webhook is retried.
    """
    try:
        customer = stripe_to_dict(stripe.Customer.retrieve(customer_id))
    except stripe.InvalidRequestError as e:
        log_external_call(logger, "stripe", "Customer.retrieve", False, error=str(e), customer_id=customer_id)
        return None

    if not customer or customer.get("deleted"):
        logger.info(f"Stripe customer {customer_id} is deleted, cannot resolve by email")
        return None
    return customer.get("email")


def resolve_user_id(obj: dict) -> Optional[Resolution]:
    """Resolve the local user for a Stripe object, or None if unresolvable."""
    subscription_id = subscription_id_of(obj)

    client_reference = obj.get("client_reference_id")
    if client_reference:
        return Resolution(client_reference, METHOD_CLIENT_REFERENCE, subscription_id)

    metadata_user = _metadata_user_id(obj)
    if metadata_user:
        return Resolution(metadata_user, METHOD_METADATA, subscription_id)

    customer_id = customer_id_of(obj)
    if customer_id:
        user = user_store.get_user_by_customer_id(customer_id)
        if user:
            logger.info(f"Resolved {user.user_id} by Stripe customer {customer_id}")
            return Resolution(user.user_id, METHOD_CUSTOMER_ID, subscription_id)

    email = _email_on_object(obj)
    if not email and customer_id:
        email = _fetch_customer_email(customer_id)

    if email:
        user = user_store.get_user_by_email(email)
        if user:
            logger.info(f"Resolved {user.user_id} by customer email {mask_email(email)}")
            return Resolution(user.user_id, METHOD_CUSTOMER_EMAIL, subscription_id)

    logger.warning(
        f"Could not resolve user for {obj.get('object', 'object')} {obj.get('id')}",
        extra={"customer_id": customer_id, "subscription_id": subscription_id},
    )
    return None


def repair_subscription_metadata(resolution: Resolution) -> bool:
    """Write ``app_user_id`` onto the Stripe subscription (best-effort).

    Failures are logged and swallowed; the caller has already resolved the
    user and must carry on regardless.
    """
    if not resolution.subscription_id:
        return False
    try:
        stripe.Subscription.modify(
            resolution.subscription_id,
            metadata={USER_ID_METADATA_KEY: resolution.user_id},
        )
    except Exception as e:
        logger.warning(
            f"Failed to repair metadata on subscription {resolution.subscription_id}: {e}",
            extra={"repair": "subscription_metadata", "user_id": resolution.user_id},
        )
        return False

    log_external_call(
        logger, "stripe", "Subscription.modify", True,
        subscription_id=resolution.subscription_id, repair="subscription_metadata",
    )
    return True
