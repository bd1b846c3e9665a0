# Shared utilities package
from .constants import TIER_NAMES
from .errors import APIError
from .response_utils import error_response, json_response, success_response
from .types import BillingStatus, CoachingStatus, MembershipTier, StripeEventType

__all__ = [
    "TIER_NAMES",
    "APIError",
    "error_response",
    "json_response",
    "success_response",
    "BillingStatus",
    "CoachingStatus",
    "MembershipTier",
    "StripeEventType",
]
