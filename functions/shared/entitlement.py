"""
Subscription status -> entitlement mapping.

Entitlement is a single timestamp: access is granted while
``entitlement_end`` is in the future and for no other reason. The status
mapping is total and fails closed: anything not explicitly access-granting
revokes.
"""

import logging
import os
from datetime import datetime, timedelta, timezone
from typing import Optional

from shared.constants import (
    ACCESS_GRANTING_STATUSES,
    DEFAULT_MAX_GRACE_DAYS,
    STATE_ACTIVE,
    STATE_GRACE,
    STATE_NONE,
    STATE_REVOKED,
    STATE_TRIALING,
    STATUS_PAST_DUE,
    STATUS_TRIALING,
)

logger = logging.getLogger(__name__)


def grants_access(status) -> bool:
    """True only for statuses in the explicit allow-set."""
    return isinstance(status, str) and status in ACCESS_GRANTING_STATUSES


def from_unix(value) -> Optional[datetime]:
    """Convert a Stripe unix timestamp (int/str/Decimal) to an aware datetime."""
    if value is None or isinstance(value, bool):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def current_period_end(subscription: dict) -> Optional[int]:
    """Read current_period_end from a subscription.

    Newer Stripe API versions moved the period fields onto the subscription
    items, so fall back to the first item when the top-level field is absent.
    """
    if not subscription:
        return None
    period_end = subscription.get("current_period_end")
    if period_end:
        return period_end

    items = (subscription.get("items") or {}).get("data") or []
    if items:
        return items[0].get("current_period_end")
    return None


def entitlement_end_for(status, period_end=None, trial_end=None) -> Optional[datetime]:
    """Map a raw status plus period fields to an entitlement-end timestamp.

    Never raises. Unknown or missing statuses return None (revoke), as does
    an access-granting status with no usable period end.
    """
    if not grants_access(status):
        return None

    if status == STATUS_TRIALING and trial_end:
        end = from_unix(trial_end)
        if end is not None:
            return end

    return from_unix(period_end)


def entitlement_from_subscription(subscription: dict) -> Optional[datetime]:
    """Entitlement-end for a Stripe subscription object."""
    if not subscription:
        return None
    return entitlement_end_for(
        subscription.get("status"),
        period_end=current_period_end(subscription),
        trial_end=subscription.get("trial_end"),
    )


def max_grace_days() -> int:
    """PAST_DUE_MAX_GRACE_DAYS, read per call. 0 or less disables the bound."""
    raw = os.environ.get("PAST_DUE_MAX_GRACE_DAYS", "")
    try:
        return int(raw) if raw else DEFAULT_MAX_GRACE_DAYS
    except ValueError:
        logger.warning(f"Ignoring invalid PAST_DUE_MAX_GRACE_DAYS={raw!r}")
        return DEFAULT_MAX_GRACE_DAYS


def grace_cutoff(now: Optional[datetime] = None) -> Optional[datetime]:
    """Users past_due since before this instant have exhausted their grace."""
    days = max_grace_days()
    if days <= 0:
        return None
    now = now or datetime.now(timezone.utc)
    return now - timedelta(days=days)


def grace_exhausted(past_due_since: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """True if a past_due stretch that began at ``past_due_since`` is over the bound."""
    if past_due_since is None:
        return False
    cutoff = grace_cutoff(now)
    return cutoff is not None and past_due_since < cutoff


def has_access(entitlement_end: Optional[datetime], now: Optional[datetime] = None) -> bool:
    """The one access predicate: entitlement_end is in the future."""
    if entitlement_end is None:
        return False
    now = now or datetime.now(timezone.utc)
    return entitlement_end > now


def entitlement_state(status, entitlement_end: Optional[datetime]) -> str:
    """Derive the named entitlement state (none/trialing/active/grace/revoked)."""
    if status is None and entitlement_end is None:
        return STATE_NONE
    if entitlement_end is None or not grants_access(status):
        return STATE_REVOKED
    if status == STATUS_TRIALING:
        return STATE_TRIALING
    if status == STATUS_PAST_DUE:
        return STATE_GRACE
    return STATE_ACTIVE
