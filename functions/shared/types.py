"""
Shared Type Definitions for billing reconciliation.

Provider-facing strings (event types, subscription statuses, payment intent
kinds) are parsed into closed enums at the boundary. Values the provider
may add later land on an explicit UNKNOWN member instead of falling through.
"""

from enum import Enum
from typing import Any, Optional, TypedDict


class _ClosedEnum(str, Enum):
    """String enum whose unrecognised values map to UNKNOWN."""

    @classmethod
    def _missing_(cls, value):
        return cls.UNKNOWN

    @classmethod
    def parse(cls, value: Optional[str]):
        return cls(value) if value is not None else cls.UNKNOWN


class StripeEventType(_ClosedEnum):
    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    UNKNOWN = "unknown"


class ProviderSubscriptionStatus(_ClosedEnum):
    """Subscription statuses as reported by Stripe."""

    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"
    TRIALING = "trialing"
    INCOMPLETE = "incomplete"
    INCOMPLETE_EXPIRED = "incomplete_expired"
    PAUSED = "paused"
    UNKNOWN = "unknown"


class PaymentIntentType(_ClosedEnum):
    """The `type` metadata field set by our checkout-creation code."""

    CONTENT_PURCHASE = "content_purchase"
    FUNNEL_PAYMENT = "funnel_payment"
    UNKNOWN = "unknown"


class BillingStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    TRIALING = "trialing"


class CoachingStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    NONE = "none"


class MembershipTier(str, Enum):
    FREE = "free"
    STANDARD = "standard"
    PREMIUM = "premium"


class BillingPlan(str, Enum):
    STANDARD = "standard"
    PREMIUM = "premium"


class CoachingPlan(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"


class EnrollmentStatus(str, Enum):
    ACTIVE = "active"
    UPCOMING = "upcoming"
    # Bought as an order bump, activated by a separate flow
    PENDING_ACTIVATION = "pending_activation"


class OrderBumpProductType(_ClosedEnum):
    """`productType` of an entry in payment intent `orderBumps` metadata."""

    CONTENT = "content"
    PROGRAM = "program"
    SQUAD = "squad"
    UNKNOWN = "unknown"


class BillingState(TypedDict, total=False):
    """Membership billing attributes stored on a user record."""

    billing_plan: str
    stripe_customer_id: str
    stripe_subscription_id: str
    billing_status: str
    current_period_end: Optional[str]
    cancel_at_period_end: bool
    started_with_trial: bool


class CoachingState(TypedDict, total=False):
    """Coaching add-on attributes stored on a user record."""

    coaching_status: str
    coaching_plan: Optional[str]
    coaching_subscription_id: str
    coaching_ends_at: Optional[str]


class FlowSession(TypedDict, total=False):
    pk: str
    program_id: str
    organization_id: str
    invite_id: str
    data: dict[str, Any]
    completed_at: str


class ProgramEnrollment(TypedDict, total=False):
    pk: str
    user_id: str
    program_id: str
    organization_id: str
    cohort_id: Optional[str]
    squad_id: Optional[str]
    stripe_payment_intent_id: str
    amount_paid: int
    status: str
    started_at: str
    last_assigned_day_index: int
    is_order_bump: bool
    paid_at: str
    created_at: str
    updated_at: str


class ContentPurchaseRecord(TypedDict, total=False):
    pk: str
    user_id: str
    content_type: str
    content_id: str
    organization_id: str
    amount_paid: int
    currency: str
    stripe_payment_intent_id: str
    purchased_at: str
    is_order_bump: bool
    created_at: str


class SquadPurchaseRecord(TypedDict, total=False):
    pk: str
    user_id: str
    squad_id: str
    organization_id: str
    amount_paid: int
    stripe_payment_intent_id: str
    is_order_bump: bool
    status: str
    created_at: str
    updated_at: str

