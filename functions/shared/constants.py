"""
Shared constants for coachpay.
"""

# Membership tiers, ordered from lowest to highest access
TIER_NAMES = ["free", "standard", "premium"]

# Statuses that keep a paid membership tier
ACCESS_GRANTING_STATUSES = ("active", "trialing")

# Subscription metadata `type` values reconciled here. Coach platform, squad
# and program subscriptions carry their own type and are owned elsewhere.
OWNED_SUBSCRIPTION_TYPES = (None, "", "membership", "coaching")

# OrgMembership rows whose tier mirrors platform billing
PLATFORM_BILLING_SOURCE = "platform_billing"

# Funnel answers copied onto the user profile: flow session key -> user attribute
FUNNEL_PROFILE_FIELDS = {
    "goal": "goal",
    "goalTargetDate": "goal_target_date",
    "goalSummary": "goal_summary",
    "identity": "identity",
    "workdayStyle": "workday_style",
    "businessStage": "business_stage",
    "obstacles": "obstacles",
    "goalImpact": "goal_impact",
    "supportNeeds": "support_needs",
}

# Cohort statuses that can still take enrollments
ENROLLABLE_COHORT_STATUSES = ["upcoming", "active"]

# Enrollment statuses that block a second enrollment in the same program
LIVE_ENROLLMENT_STATUSES = ("active", "upcoming")

# Audit trail retention
BILLING_EVENT_TTL_DAYS = 90

# External APIs
CLERK_API = "https://api.clerk.com/v1"

# Timeouts
DEFAULT_TIMEOUT = 10.0

# DynamoDB throttling error codes that should trigger retry
THROTTLING_ERRORS = (
    "ProvisionedThroughputExceededException",
    "RequestLimitExceeded",
    "ThrottlingException",
    "InternalServerError",
)
