"""
Subscription state machine.

States (derived from status + entitlement_end)::

    none -> trialing -> active <-> grace(past_due) -> revoked(canceled)
            trialing -> revoked,  active -> revoked

Each Stripe event type has exactly one handler. Handlers never infer a
transition from the stored state: they compute the target state from the
event (or a fresh fetch of the live subscription) and write it with plain
SETs, so they are order-independent and safe to replay.
"""

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import stripe

from shared import user_store
from shared.billing_utils import stripe_to_dict
from shared.constants import (
    EVENT_CHECKOUT_COMPLETED,
    EVENT_INVOICE_PAYMENT_FAILED,
    EVENT_INVOICE_PAYMENT_SUCCEEDED,
    EVENT_INVOICE_UPCOMING,
    EVENT_SUBSCRIPTION_CREATED,
    EVENT_SUBSCRIPTION_DELETED,
    EVENT_SUBSCRIPTION_UPDATED,
    EVENT_TRIAL_WILL_END,
    PURPOSE_METADATA_KEY,
    STATUS_CANCELED,
    STATUS_PAST_DUE,
)
from shared.entitlement import entitlement_from_subscription, entitlement_state, grace_exhausted
from shared.identity import customer_id_of, subscription_id_of
from shared.user_store import User

logger = logging.getLogger(__name__)

SUBSCRIPTION_PURPOSE = os.environ.get("SUBSCRIPTION_PURPOSE") or "pro_membership_annual"


@dataclass
class Transition:
    """Result of applying one event to one user.

    ``user`` is the snapshot taken before the write; ``status`` and
    ``entitlement_end`` are the values after it.
    """

    event_type: str
    user: User
    source: dict
    status: Optional[str]
    entitlement_end: Optional[datetime]
    customer_id: Optional[str] = None
    subscription: Optional[dict] = None
    changed: bool = True

    @property
    def previous_state(self) -> str:
        return self.user.state

    @property
    def state(self) -> str:
        return entitlement_state(self.status, self.entitlement_end)


def is_subscription_checkout(session: dict) -> bool:
    """Only checkout sessions tagged with our subscription purpose are acted on."""
    purpose = (session.get("metadata") or {}).get(PURPOSE_METADATA_KEY)
    return purpose == SUBSCRIPTION_PURPOSE


def _bounded_entitlement(subscription: dict, user: User) -> Optional[datetime]:
    """Entitlement for the subscription, capped by the past_due grace bound.

    ``past_due_since`` survives repeated past_due updates, so a user whose
    grace already ran out stays revoked until the status leaves past_due.
    """
    entitlement_end = entitlement_from_subscription(subscription)
    if (
        entitlement_end is not None
        and subscription.get("status") == STATUS_PAST_DUE
        and user.subscription_status == STATUS_PAST_DUE
        and grace_exhausted(user.past_due_since)
    ):
        logger.info(
            f"Grace exhausted for {user.user_id} (past_due since {user.past_due_since}), not restoring access",
            extra={"user_id": user.user_id},
        )
        return None
    return entitlement_end


def _write(user: User, **fields) -> bool:
    written = user_store.update_billing_state(user.user_id, **fields)
    if not written:
        logger.warning(f"User {user.user_id} disappeared before billing state could be written")
    return written


def handle_checkout_completed(session: dict, user: User) -> Optional[Transition]:
    """Initial purchase: link Stripe ids and derive entitlement from the live subscription.

    The checkout payload's period fields are unreliable for trials, so the
    subscription is always re-fetched.
    """
    customer_id = customer_id_of(session)
    subscription_id = subscription_id_of(session)
    if not customer_id or not subscription_id:
        logger.info(f"Checkout {session.get('id')} has no customer or subscription, skipping")
        return None

    subscription = stripe_to_dict(stripe.Subscription.retrieve(subscription_id))
    status = subscription.get("status")
    entitlement_end = _bounded_entitlement(subscription, user)

    if not _write(
        user,
        stripe_customer_id=customer_id,
        stripe_subscription_id=subscription_id,
        subscription_status=status,
        entitlement_end=entitlement_end,
    ):
        return None

    logger.info(
        f"Checkout completed for {user.user_id}: status={status}, entitlement_end={entitlement_end}",
        extra={"user_id": user.user_id, "subscription_id": subscription_id},
    )
    return Transition(
        EVENT_CHECKOUT_COMPLETED, user, session, status, entitlement_end,
        customer_id=customer_id, subscription=subscription,
    )


def handle_subscription_updated(
    subscription: dict, user: User, event_type: str = EVENT_SUBSCRIPTION_UPDATED
) -> Optional[Transition]:
    """Recompute entitlement purely from the event's status and period end.

    Self-sufficient: it does not care which state the user was in, because
    subscription and invoice events arrive in no particular order.
    """
    status = subscription.get("status")
    entitlement_end = _bounded_entitlement(subscription, user)
    customer_id = customer_id_of(subscription)

    fields = {"subscription_status": status, "entitlement_end": entitlement_end}
    # Subscriptions created outside checkout (dashboard/API) still get linked
    if not user.stripe_subscription_id and subscription.get("id"):
        fields["stripe_subscription_id"] = subscription["id"]
    if not user.stripe_customer_id and customer_id:
        fields["stripe_customer_id"] = customer_id

    if not _write(user, **fields):
        return None

    logger.info(
        f"Subscription {subscription.get('id')} {status} for {user.user_id}: entitlement_end={entitlement_end}",
        extra={"user_id": user.user_id, "subscription_id": subscription.get("id")},
    )
    return Transition(event_type, user, subscription, status, entitlement_end, customer_id=customer_id)


def handle_subscription_created(subscription: dict, user: User) -> Optional[Transition]:
    return handle_subscription_updated(subscription, user, event_type=EVENT_SUBSCRIPTION_CREATED)


def handle_subscription_deleted(subscription: dict, user: User) -> Optional[Transition]:
    """Unconditionally revoke, whatever state the user is in."""
    if not _write(user, subscription_status=STATUS_CANCELED, entitlement_end=None):
        return None

    logger.info(
        f"Subscription {subscription.get('id')} deleted, revoked access for {user.user_id}",
        extra={"user_id": user.user_id, "subscription_id": subscription.get("id")},
    )
    return Transition(
        EVENT_SUBSCRIPTION_DELETED, user, subscription, STATUS_CANCELED, None,
        customer_id=customer_id_of(subscription),
    )


def _handle_invoice_payment(invoice: dict, user: User, event_type: str) -> Transition:
    """Invoice outcome: reconcile the raw status only.

    Entitlement belongs to subscription events. The stored status is
    refreshed from the live subscription as a safety net, and only when the
    invoice is for the subscription we have on record (or none yet).
    """
    subscription_id = subscription_id_of(invoice)
    status = user.subscription_status
    subscription = None
    changed = False

    if subscription_id and user.stripe_subscription_id in (None, subscription_id):
        subscription = stripe_to_dict(stripe.Subscription.retrieve(subscription_id))
        status = subscription.get("status")
        changed = _write(user, subscription_status=status)
    elif subscription_id:
        logger.info(
            f"Invoice {invoice.get('id')} is for {subscription_id}, user {user.user_id} is on "
            f"{user.stripe_subscription_id}; status not reconciled"
        )

    return Transition(
        event_type, user, invoice, status, user.entitlement_end,
        customer_id=customer_id_of(invoice), subscription=subscription, changed=changed,
    )


def handle_invoice_payment_succeeded(invoice: dict, user: User) -> Transition:
    return _handle_invoice_payment(invoice, user, EVENT_INVOICE_PAYMENT_SUCCEEDED)


def handle_invoice_payment_failed(invoice: dict, user: User) -> Transition:
    return _handle_invoice_payment(invoice, user, EVENT_INVOICE_PAYMENT_FAILED)


def _notification_only(event_type: str) -> Callable[[dict, User], Transition]:
    def handler(obj: dict, user: User) -> Transition:
        return Transition(
            event_type, user, obj, user.subscription_status, user.entitlement_end,
            customer_id=customer_id_of(obj), changed=False,
        )
    handler.__name__ = f"handle_{event_type.replace('.', '_')}"
    return handler


HANDLERS: dict[str, Callable[[dict, User], Optional[Transition]]] = {
    EVENT_CHECKOUT_COMPLETED: handle_checkout_completed,
    EVENT_SUBSCRIPTION_CREATED: handle_subscription_created,
    EVENT_SUBSCRIPTION_UPDATED: handle_subscription_updated,
    EVENT_SUBSCRIPTION_DELETED: handle_subscription_deleted,
    EVENT_INVOICE_PAYMENT_SUCCEEDED: handle_invoice_payment_succeeded,
    EVENT_INVOICE_PAYMENT_FAILED: handle_invoice_payment_failed,
    EVENT_INVOICE_UPCOMING: _notification_only(EVENT_INVOICE_UPCOMING),
    EVENT_TRIAL_WILL_END: _notification_only(EVENT_TRIAL_WILL_END),
}


def apply(event_type: str, obj: dict, user: User) -> Optional[Transition]:
    """Run the handler for ``event_type``. Returns None for skipped events."""
    handler = HANDLERS.get(event_type)
    if handler is None:
        return None
    return handler(obj, user)
