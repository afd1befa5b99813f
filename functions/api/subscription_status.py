"""
Subscription Status Endpoint - GET /api/billing/subscription-status

Returns the caller's plan as the frontend should render it. Access comes
from entitlement_end alone; the raw status only picks the "trial" label.
"""

import logging

from shared import user_store
from shared.constants import STATUS_TRIALING
from shared.logging_utils import configure_structured_logging, set_request_id
from shared.response_utils import error_response, get_origin, success_response
from shared.session_auth import get_session_token, verify_session_token

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

PLAN_FREE = "free"
PLAN_TRIAL = "trial"
PLAN_PRO = "pro"


def describe(user: user_store.User) -> dict:
    if not user.has_access:
        plan = PLAN_FREE
    elif user.subscription_status == STATUS_TRIALING:
        plan = PLAN_TRIAL
    else:
        plan = PLAN_PRO

    return {
        "plan": plan,
        "current_period_end": user.entitlement_end.isoformat() if user.entitlement_end else None,
        "status": user.subscription_status,
        "has_access": user.has_access,
    }


def handler(event, context):
    configure_structured_logging()
    set_request_id(event)
    origin = get_origin(event)

    session_token = get_session_token(event)
    if not session_token:
        return error_response(401, "unauthorized", "Please log in", origin=origin)

    session_data = verify_session_token(session_token)
    if not session_data:
        return error_response(
            401, "session_expired", "Session expired. Please log in again.", origin=origin
        )

    user_id = session_data.get("user_id")
    try:
        user = user_store.get_user(user_id)
    except Exception as e:
        logger.error(f"Error loading subscription status for {user_id}: {e}")
        return error_response(500, "internal_error", "An error occurred", origin=origin)

    if user is None:
        return error_response(404, "user_not_found", "User not found", origin=origin)

    return success_response(describe(user), origin=origin)
