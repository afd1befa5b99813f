"""
Transactional billing emails (best-effort side effects).

``dispatch`` runs after a transition has been written. It decides which
notification (if any) the transition owes and sends it through SES. Every
send is isolated: an exception is logged with the notification kind and
swallowed, so email trouble can never fail the webhook or trigger a Stripe
redelivery of an event whose state change already succeeded.
"""

import html
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import stripe

from shared.aws_clients import get_ses
from shared.constants import (
    ACCESS_GRANTING_STATUSES,
    DEFAULT_CURRENCY,
    DEFAULT_PRICE_AMOUNT,
    EVENT_CHECKOUT_COMPLETED,
    EVENT_INVOICE_PAYMENT_FAILED,
    EVENT_INVOICE_PAYMENT_SUCCEEDED,
    EVENT_INVOICE_UPCOMING,
    EVENT_SUBSCRIPTION_CREATED,
    EVENT_SUBSCRIPTION_DELETED,
    EVENT_SUBSCRIPTION_UPDATED,
    EVENT_TRIAL_WILL_END,
    NOTIFY_CANCELLATION,
    NOTIFY_PAYMENT_FAILED,
    NOTIFY_RECEIPT,
    NOTIFY_RENEWAL_REMINDER,
    NOTIFY_TRIAL_ENDING,
    NOTIFY_TRIAL_STARTED,
    NOTIFY_WELCOME,
    STATUS_CANCELED,
    STATUS_TRIALING,
)
from shared.entitlement import from_unix
from shared.logging_utils import log_external_call, mask_email

logger = logging.getLogger(__name__)

EMAIL_SENDER = os.environ.get("EMAIL_SENDER", "hello@thecampingplanner.com")
BASE_URL = os.environ.get("BASE_URL", "https://thecampingplanner.com")
PRODUCT_NAME = "Camping Planner Pro"

# Subscription statuses that end a subscription from the customer's view
_ENDED_STATUSES = frozenset({STATUS_CANCELED, "incomplete_expired"})

_SIGNATURE_TEXT = (
    "Happy camping,\n"
    "The Camping Planner Team\n"
    "hello@thecampingplanner.com\n"
    "https://thecampingplanner.com"
)
_SIGNATURE_HTML = (
    "<p>Happy camping,<br><strong>The Camping Planner Team</strong><br>"
    '<a href="mailto:hello@thecampingplanner.com">hello@thecampingplanner.com</a><br>'
    '<a href="https://thecampingplanner.com">https://thecampingplanner.com</a></p>'
)


@dataclass
class Notification:
    kind: str
    to: str
    name: Optional[str] = None
    customer_id: Optional[str] = None
    context: dict = field(default_factory=dict)


def format_currency(amount_in_cents, currency: Optional[str]) -> str:
    """Format a Stripe amount, e.g. 2999/usd -> "$29.99 USD"."""
    amount = int(amount_in_cents or 0)
    return f"${amount / 100:.2f} {(currency or DEFAULT_CURRENCY).upper()}"


def format_date(value: datetime) -> str:
    """Format a date as "January 5, 2026"."""
    return f"{value:%B} {value.day}, {value.year}"


def _paragraphs_to_html(paragraphs: list[str]) -> str:
    return "".join(f"<p>{html.escape(p).replace(chr(10), '<br>')}</p>" for p in paragraphs)


def _render(notification: Notification, subject: str, paragraphs: list[str], links: list[tuple[str, str]]):
    """Build (subject, text, html) with greeting, links and signature."""
    greeting = f"Hi {notification.name or 'camper'},"
    body = [greeting] + [p for p in paragraphs if p]

    text_parts = list(body)
    html_parts = _paragraphs_to_html(body)
    for label, url in links:
        if not url:
            continue
        text_parts.append(f"{label}: {url}")
        html_parts += (
            f'<p><a href="{html.escape(url, quote=True)}" target="_blank" '
            f'rel="noopener noreferrer">{html.escape(label)}</a></p>'
        )

    text = "\n\n".join(text_parts + [_SIGNATURE_TEXT])
    html_body = f"<html><body>{html_parts}{_SIGNATURE_HTML}</body></html>"
    return subject, text, html_body


def _welcome(n: Notification, portal_url):
    return _render(
        n,
        f"Welcome to {PRODUCT_NAME}! You're all set",
        [
            f"Thanks for subscribing to {PRODUCT_NAME}! Your account is fully upgraded.",
            "You now have unlimited trips and grocery lists, every printable and game bundle, "
            "and premium packing checklists.",
            "If you ever need help or have ideas for new features, just reply to this email.",
        ],
        [("Manage your subscription", portal_url)],
    )


def _trial_started(n: Notification, portal_url):
    trial_end = n.context.get("trial_end")
    return _render(
        n,
        f"Your {PRODUCT_NAME} trial has started",
        [
            f"Your free trial of {PRODUCT_NAME} is active. Enjoy every Pro feature while you plan your next trip.",
            f"Your trial runs until {format_date(trial_end)}." if trial_end else "",
            "You can cancel any time before the trial ends and you won't be charged.",
        ],
        [("Manage your subscription", portal_url)],
    )


def _receipt(n: Notification, portal_url):
    ctx = n.context
    invoice_number = ctx.get("invoice_number")
    subject = f"Your {PRODUCT_NAME} receipt"
    if invoice_number:
        subject += f" {invoice_number}"

    details = [f"Amount: {format_currency(ctx.get('amount'), ctx.get('currency'))}"]
    if ctx.get("paid_at"):
        details.append(f"Date: {format_date(ctx['paid_at'])}")
    if ctx.get("period_start") and ctx.get("period_end"):
        details.append(
            f"Coverage period: {format_date(ctx['period_start'])} to {format_date(ctx['period_end'])}"
        )
    if invoice_number:
        details.append(f"Invoice #: {invoice_number}")

    return _render(
        n,
        subject,
        [f"Thanks for your payment! Here's your receipt for {PRODUCT_NAME}.", "\n".join(details)],
        [("Download your invoice", ctx.get("invoice_url")), ("Update billing details", portal_url)],
    )


def _renewal_reminder(n: Notification, portal_url):
    ctx = n.context
    renewal = ctx.get("renewal_date")
    return _render(
        n,
        f"Your {PRODUCT_NAME} subscription renews soon",
        [
            f"Your {PRODUCT_NAME} subscription will renew"
            + (f" on {format_date(renewal)}" if renewal else " soon")
            + f" for {format_currency(ctx.get('amount'), ctx.get('currency'))}.",
            "No action is needed if you'd like to keep your Pro features.",
        ],
        [("Manage your subscription", portal_url)],
    )


def _payment_failed(n: Notification, portal_url):
    ctx = n.context
    return _render(
        n,
        f"{PRODUCT_NAME}: payment failed, action required",
        [
            f"We couldn't process your payment of {format_currency(ctx.get('amount'), ctx.get('currency'))} "
            f"for {PRODUCT_NAME}.",
            "Please update your payment method to keep your Pro features.",
        ],
        [("Update payment method", portal_url)],
    )


def _trial_ending(n: Notification, portal_url):
    ctx = n.context
    trial_end = ctx.get("trial_end")
    return _render(
        n,
        f"Your {PRODUCT_NAME} trial ends soon",
        [
            f"Just a reminder: your {PRODUCT_NAME} trial ends"
            + (f" on {format_date(trial_end)}." if trial_end else " soon."),
            "Unless canceled before then, your subscription continues and you'll be charged "
            f"{format_currency(ctx.get('amount'), ctx.get('currency'))} for the next billing period.",
        ],
        [("Manage your subscription", portal_url)],
    )


def _cancellation(n: Notification, portal_url):
    period_end = n.context.get("current_period_end")
    return _render(
        n,
        f"Your {PRODUCT_NAME} subscription has been canceled",
        [
            f"Your {PRODUCT_NAME} subscription has been canceled.",
            f"Your billing period ended on {format_date(period_end)}." if period_end else "",
            "Your trips and recipes are safe. You can resubscribe any time to get Pro features back.",
        ],
        [("Reactivate Pro", f"{BASE_URL}/account")],
    )


TEMPLATES = {
    NOTIFY_WELCOME: _welcome,
    NOTIFY_TRIAL_STARTED: _trial_started,
    NOTIFY_RECEIPT: _receipt,
    NOTIFY_RENEWAL_REMINDER: _renewal_reminder,
    NOTIFY_PAYMENT_FAILED: _payment_failed,
    NOTIFY_TRIAL_ENDING: _trial_ending,
    NOTIFY_CANCELLATION: _cancellation,
}

# Cancellation mail links to the account page, not the portal
_NEEDS_PORTAL_LINK = frozenset(TEMPLATES) - {NOTIFY_CANCELLATION}


def billing_portal_url(customer_id: Optional[str]) -> Optional[str]:
    """Create a portal link for an email. Best-effort: None on any failure."""
    if not customer_id:
        return None
    try:
        session = stripe.billing_portal.Session.create(customer=customer_id, return_url=f"{BASE_URL}/account")
        return session.url
    except Exception as e:
        logger.warning(f"Failed to create billing portal link for {customer_id}: {e}")
        return None


def send_email(to: str, subject: str, text: str, html_body: str) -> None:
    """Send one email through SES. Raises on failure."""
    get_ses().send_email(
        Source=EMAIL_SENDER,
        Destination={"ToAddresses": [to]},
        Message={
            "Subject": {"Data": subject, "Charset": "UTF-8"},
            "Body": {
                "Html": {"Data": html_body, "Charset": "UTF-8"},
                "Text": {"Data": text, "Charset": "UTF-8"},
            },
        },
    )


def send_notification(notification: Notification) -> bool:
    """Render and send a notification. Never raises.

    Returns:
        True if SES accepted the message, False otherwise.
    """
    try:
        portal_url = None
        if notification.kind in _NEEDS_PORTAL_LINK:
            portal_url = billing_portal_url(notification.customer_id)
        subject, text, html_body = TEMPLATES[notification.kind](notification, portal_url)
        send_email(notification.to, subject, text, html_body)
    except Exception as e:
        logger.error(
            f"Failed to send {notification.kind} email to {mask_email(notification.to)}: {e}",
            extra={"notification": notification.kind},
        )
        return False

    log_external_call(
        logger, "ses", "send_email", True,
        notification=notification.kind, recipient=mask_email(notification.to),
    )
    return True


def _first_price(subscription: dict) -> tuple[int, str]:
    items = (subscription.get("items") or {}).get("data") or []
    price = (items[0].get("price") or {}) if items else {}
    return price.get("unit_amount") or DEFAULT_PRICE_AMOUNT, price.get("currency") or DEFAULT_CURRENCY


def _invoice_period(invoice: dict):
    lines = (invoice.get("lines") or {}).get("data") or []
    period = (lines[0].get("period") or {}) if lines else {}
    return from_unix(period.get("start")), from_unix(period.get("end"))


def _cancellation_owed(transition) -> bool:
    """A cancellation notice is owed once per loss of a subscription.

    Not owed if the user was already canceled (e.g. subscription.updated to
    canceled followed by subscription.deleted) or never had one.
    """
    before = transition.user
    if before.subscription_status == STATUS_CANCELED:
        return False
    return before.entitlement_end is not None or before.subscription_status in ACCESS_GRANTING_STATUSES


def notifications_for(transition) -> list[Notification]:
    """Decide which notifications an applied transition owes."""
    user = transition.user
    if not user.email:
        logger.info(f"User {user.user_id} has no email, no notification possible")
        return []

    obj = transition.source
    customer_id = transition.customer_id or user.stripe_customer_id
    base = {"to": user.email, "name": user.first_name, "customer_id": customer_id}
    event_type = transition.event_type

    if event_type == EVENT_CHECKOUT_COMPLETED:
        subscription = transition.subscription or {}
        trial_end = from_unix(subscription.get("trial_end"))
        if transition.status == STATUS_TRIALING and trial_end:
            return [Notification(NOTIFY_TRIAL_STARTED, context={"trial_end": trial_end}, **base)]
        return [Notification(NOTIFY_WELCOME, **base)]

    if event_type in (EVENT_SUBSCRIPTION_UPDATED, EVENT_SUBSCRIPTION_CREATED, EVENT_SUBSCRIPTION_DELETED):
        ended = event_type == EVENT_SUBSCRIPTION_DELETED or transition.status in _ENDED_STATUSES
        if ended and _cancellation_owed(transition):
            context = {"current_period_end": from_unix(obj.get("current_period_end"))}
            return [Notification(NOTIFY_CANCELLATION, context=context, **base)]
        return []

    if event_type == EVENT_INVOICE_PAYMENT_SUCCEEDED:
        period_start, period_end = _invoice_period(obj)
        paid_at = (obj.get("status_transitions") or {}).get("paid_at") or obj.get("created")
        context = {
            "amount": obj.get("amount_paid"),
            "currency": obj.get("currency"),
            "invoice_number": obj.get("number"),
            "invoice_url": obj.get("hosted_invoice_url"),
            "paid_at": from_unix(paid_at),
            "period_start": period_start,
            "period_end": period_end,
        }
        return [Notification(NOTIFY_RECEIPT, context=context, **base)]

    if event_type == EVENT_INVOICE_PAYMENT_FAILED:
        context = {"amount": obj.get("amount_due"), "currency": obj.get("currency")}
        return [Notification(NOTIFY_PAYMENT_FAILED, context=context, **base)]

    if event_type == EVENT_INVOICE_UPCOMING:
        renewal = from_unix(obj.get("next_payment_attempt") or obj.get("period_end"))
        context = {"renewal_date": renewal, "amount": obj.get("amount_due"), "currency": obj.get("currency")}
        return [Notification(NOTIFY_RENEWAL_REMINDER, context=context, **base)]

    if event_type == EVENT_TRIAL_WILL_END:
        trial_end = from_unix(obj.get("trial_end"))
        if not trial_end:
            logger.info(f"trial_will_end for {obj.get('id')} has no trial_end, skipping email")
            return []
        amount, currency = _first_price(obj)
        context = {"trial_end": trial_end, "amount": amount, "currency": currency}
        return [Notification(NOTIFY_TRIAL_ENDING, context=context, **base)]

    return []


def dispatch(transition) -> list[str]:
    """Send every notification owed by ``transition``.

    Returns the kinds that were attempted. Never raises.
    """
    try:
        owed = notifications_for(transition)
    except Exception as e:
        logger.error(f"Failed to decide notifications for {transition.event_type}: {e}", exc_info=True)
        return []

    attempted = []
    for notification in owed:
        send_notification(notification)
        attempted.append(notification.kind)
    return attempted
