"""
Clerk metadata sync.

Billing and coaching state are mirrored into each user's Clerk public
metadata so middleware can gate access from the session token without a
record store lookup. Clerk deep-merges the metadata PATCH body into what is
already stored, so only the keys we own are sent.
"""

import logging
import time
from typing import Optional

import httpx

from shared.constants import CLERK_API, DEFAULT_TIMEOUT
from shared.logging_utils import log_external_call

logger = logging.getLogger(__name__)


class ClerkIdentityClient:
    """Writes billing/coaching public metadata through Clerk's Backend API."""

    def __init__(
        self,
        secret_key: str,
        base_url: str = CLERK_API,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self._client = httpx.Client(
            base_url=base_url,
            headers={
                "Authorization": f"Bearer {secret_key}",
                "Content-Type": "application/json",
            },
            timeout=DEFAULT_TIMEOUT,
            transport=transport,
        )

    def close(self):
        self._client.close()

    def update_user_billing(
        self,
        user_id: str,
        billing_status: str,
        billing_period_end: Optional[str] = None,
        tier: Optional[str] = None,
    ) -> None:
        """Mirror membership billing status (and tier, when given)."""
        metadata = {"billingStatus": billing_status}
        # Clerk deletes keys sent as null
        if billing_period_end is not None:
            metadata["billingPeriodEnd"] = billing_period_end
        if tier is not None:
            metadata["tier"] = tier
        self._patch_public_metadata(user_id, metadata, "update_user_billing")
        logger.info(
            f"Clerk billing updated for {user_id}: status={billing_status}, "
            f"tier={tier or 'unchanged'}, periodEnd={billing_period_end}"
        )

    def update_user_coaching(
        self,
        user_id: str,
        coaching_status: str,
        coaching_plan: Optional[str] = None,
        coaching_period_end: Optional[str] = None,
    ) -> None:
        """Mirror coaching status. Never touches the membership tier."""
        metadata = {
            "coachingStatus": coaching_status,
            # legacy boolean flag still read by older middleware
            "coaching": coaching_status == "active",
        }
        if coaching_plan is not None:
            metadata["coachingPlan"] = coaching_plan
        if coaching_period_end is not None:
            metadata["coachingPeriodEnd"] = coaching_period_end
        self._patch_public_metadata(user_id, metadata, "update_user_coaching")
        logger.info(f"Clerk coaching updated for {user_id}: status={coaching_status}, plan={coaching_plan}")

    def _patch_public_metadata(self, user_id: str, metadata: dict, operation: str) -> None:
        start = time.time()
        try:
            response = self._client.patch(
                f"/users/{user_id}/metadata",
                json={"public_metadata": metadata},
            )
            response.raise_for_status()
        except httpx.HTTPError as e:
            log_external_call(logger, "clerk", operation, False, (time.time() - start) * 1000, str(e))
            raise
        log_external_call(logger, "clerk", operation, True, (time.time() - start) * 1000)
