"""
External collaborators the reconcilers talk to, constructed explicitly.

The webhook Lambda builds one BillingServices per process and passes it to
every handler; tests construct their own with fakes.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

from shared.billing_utils import get_clerk_secret_key, get_stripe_secrets
from shared.errors import ConfigurationError
from shared.identity import ClerkIdentityClient
from shared.stripe_client import StripeBillingClient

logger = logging.getLogger(__name__)


@dataclass
class BillingServices:
    stripe: StripeBillingClient
    identity: Optional[ClerkIdentityClient] = None
    # SQS queue that receives failed propagation steps for replay
    retry_queue_url: Optional[str] = None
    # SES sender for the welcome email; unset disables the email
    email_sender: Optional[str] = None

    @classmethod
    def from_environment(cls) -> "BillingServices":
        """Build services from Secrets Manager / environment.

        Raises:
            ConfigurationError: Stripe API key or webhook secret missing.
        """
        api_key, webhook_secret = get_stripe_secrets()
        if not api_key or not webhook_secret:
            raise ConfigurationError()

        identity = None
        clerk_key = get_clerk_secret_key()
        if clerk_key:
            identity = ClerkIdentityClient(clerk_key)
        else:
            logger.warning("Clerk secret not configured - identity metadata sync disabled")

        return cls(
            stripe=StripeBillingClient(api_key, webhook_secret),
            identity=identity,
            retry_queue_url=os.environ.get("COACHPAY_PROPAGATION_QUEUE_URL") or None,
            email_sender=os.environ.get("WELCOME_EMAIL_SENDER") or None,
        )
