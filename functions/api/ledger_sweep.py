"""
Ledger Sweep - Scheduled Lambda (hourly)

Deletes idempotency ledger rows whose retention window has passed.
DynamoDB TTL deletion can lag by days; this keeps the claim condition's
table small and is a backstop, not the source of expiry.
"""

import logging

from shared.idempotency import IdempotencyLedger
from shared.logging_utils import configure_structured_logging, set_request_id

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def handler(event, context):
    configure_structured_logging()
    set_request_id(event or {})

    try:
        deleted = IdempotencyLedger().sweep_expired()
    except Exception as e:
        logger.error(f"Error in ledger sweep: {e}", exc_info=True)
        return {"deleted": 0, "error": str(e)}

    logger.info(f"Ledger sweep complete: deleted={deleted}")
    return {"deleted": deleted}
