"""
Grace Period Sweep - Scheduled Lambda (daily at 3:00 AM UTC)

past_due keeps access while Stripe retries the card. If Stripe never sends
a follow-up event (dunning exhausted without delivery, lost webhook) the
user would keep access forever, so this sweep revokes entitlement for
users past_due longer than PAST_DUE_MAX_GRACE_DAYS.

Only entitlement_end is removed. Status stays past_due, and a later
subscription update to active restores access the normal way.
"""

import logging

from shared import user_store
from shared.entitlement import grace_cutoff
from shared.logging_utils import configure_structured_logging, set_request_id

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def handler(event, context):
    """
    Lambda handler for the bounded past_due grace period.

    For each user with subscription_status=past_due, past_due_since older
    than the grace bound and an entitlement_end still set:
    1. Conditionally remove entitlement_end (skipped if the user recovered)
    2. Stamp grace_expired_at
    """
    configure_structured_logging()
    set_request_id(event or {})

    cutoff = grace_cutoff()
    if cutoff is None:
        logger.info("Grace period sweep disabled (PAST_DUE_MAX_GRACE_DAYS=0)")
        return {"processed": 0, "revoked": 0, "errors": 0, "disabled": True}

    processed = 0
    revoked = 0
    errors = 0

    try:
        for user in user_store.scan_past_due_since_before(cutoff):
            processed += 1
            try:
                if user_store.revoke_expired_grace(user.user_id, cutoff):
                    logger.info(
                        f"Revoked access for {user.user_id}: past_due since {user.past_due_since}",
                        extra={"user_id": user.user_id},
                    )
                    revoked += 1
                else:
                    # Payment recovered between scan and update - that's OK
                    logger.debug(f"User {user.user_id} left past_due before revocation")
            except Exception as e:
                logger.error(f"Error revoking grace for {user.user_id}: {e}")
                errors += 1

    except Exception as e:
        logger.error(f"Error in grace period scan: {e}")
        return {"processed": processed, "revoked": revoked, "error": str(e)}

    logger.info(f"Grace period sweep complete: processed={processed}, revoked={revoked}, errors={errors}")

    return {
        "processed": processed,
        "revoked": revoked,
        "errors": errors,
    }
