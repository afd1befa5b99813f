# Shared billing library
from .entitlement import entitlement_end_for, has_access
from .errors import BillingError
from .response_utils import error_response, success_response

__all__ = [
    "entitlement_end_for",
    "has_access",
    "BillingError",
    "error_response",
    "success_response",
]
