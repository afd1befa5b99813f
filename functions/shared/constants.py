"""
Shared constants for the Camping Planner billing service.
"""

# Stripe event types the reconciliation engine acts on
EVENT_CHECKOUT_COMPLETED = "checkout.session.completed"
EVENT_SUBSCRIPTION_CREATED = "customer.subscription.created"
EVENT_SUBSCRIPTION_UPDATED = "customer.subscription.updated"
EVENT_SUBSCRIPTION_DELETED = "customer.subscription.deleted"
EVENT_TRIAL_WILL_END = "customer.subscription.trial_will_end"
EVENT_INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
EVENT_INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
EVENT_INVOICE_UPCOMING = "invoice.upcoming"

HANDLED_EVENT_TYPES = frozenset({
    EVENT_CHECKOUT_COMPLETED,
    EVENT_SUBSCRIPTION_CREATED,
    EVENT_SUBSCRIPTION_UPDATED,
    EVENT_SUBSCRIPTION_DELETED,
    EVENT_TRIAL_WILL_END,
    EVENT_INVOICE_PAYMENT_SUCCEEDED,
    EVENT_INVOICE_PAYMENT_FAILED,
    EVENT_INVOICE_UPCOMING,
})

# Raw provider statuses that grant access. Everything else revokes.
ACCESS_GRANTING_STATUSES = frozenset({"trialing", "active", "past_due"})

STATUS_CANCELED = "canceled"
STATUS_PAST_DUE = "past_due"
STATUS_TRIALING = "trialing"

# Derived entitlement states
STATE_NONE = "none"
STATE_TRIALING = "trialing"
STATE_ACTIVE = "active"
STATE_GRACE = "grace"
STATE_REVOKED = "revoked"

# Notification kinds (used as log tags and template keys)
NOTIFY_WELCOME = "welcome"
NOTIFY_TRIAL_STARTED = "trial_started"
NOTIFY_RECEIPT = "receipt"
NOTIFY_RENEWAL_REMINDER = "renewal_reminder"
NOTIFY_PAYMENT_FAILED = "payment_failed"
NOTIFY_TRIAL_ENDING = "trial_ending"
NOTIFY_CANCELLATION = "cancellation"

# Metadata key written on checkout sessions and subscriptions
USER_ID_METADATA_KEY = "app_user_id"
PURPOSE_METADATA_KEY = "purchase_type"

# Idempotency ledger. Stripe redelivers for up to ~72h; the retention floor
# is 24h and the window is tunable upward via IDEMPOTENCY_RETENTION_HOURS.
MIN_IDEMPOTENCY_RETENTION_HOURS = 24
DEFAULT_CLAIM_TIMEOUT_SECONDS = 300

LEDGER_STATUS_PROCESSING = "processing"
LEDGER_STATUS_PROCESSED = "processed"

# Used in trial-ending emails when the subscription item carries no price
DEFAULT_PRICE_AMOUNT = 2999
DEFAULT_CURRENCY = "usd"

# Secrets Manager cache lifetime
SECRETS_CACHE_TTL = 300

# past_due keeps access for at most this many days (PAST_DUE_MAX_GRACE_DAYS)
DEFAULT_MAX_GRACE_DAYS = 14
