#!/usr/bin/env python3
"""
Re-derive platform-billing OrgMembership tiers from their users' tiers.

Org fan-out is best-effort: when a propagation step is dropped (no retry
queue, or retries exhausted) a membership can keep a stale tier. This scans
every user with a billing status and rewrites each active
`platform_billing` membership whose tier differs from the user's.

Usage:
    # Dry run (shows what would be updated)
    python scripts/reconcile_org_membership_tiers.py --dry-run

    # Actually perform updates
    python scripts/reconcile_org_membership_tiers.py
"""

import argparse
import os
import sys

# Add functions directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../functions"))

from shared import dynamo  # noqa: E402
from shared.aws_clients import get_dynamodb  # noqa: E402
from shared.constants import ACCESS_GRANTING_STATUSES, TIER_NAMES  # noqa: E402


def scan_billed_users():
    """Scan for users that have ever had membership billing."""
    print("Scanning for users with billing_status...")

    users = []
    scan_kwargs = {
        "FilterExpression": "attribute_exists(billing_status)",
        "ProjectionExpression": "pk, billing_status, tier",
    }
    table = get_dynamodb().Table(dynamo.USERS_TABLE)

    while True:
        response = table.scan(**scan_kwargs)
        users.extend(response.get("Items", []))

        if "LastEvaluatedKey" not in response:
            break
        scan_kwargs["ExclusiveStartKey"] = response["LastEvaluatedKey"]
        print(f"  Scanned {len(users)} users so far...")

    return users


def expected_tier(user: dict) -> str:
    """The user's tier, forced to free when billing no longer grants access."""
    if user.get("billing_status") not in ACCESS_GRANTING_STATUSES:
        return "free"
    tier = user.get("tier")
    return tier if tier in TIER_NAMES else "free"


def reconcile_user(user: dict, dry_run: bool = False) -> int:
    """Fix the user's drifted memberships. Returns how many were (or would be) updated."""
    user_id = user["pk"]
    tier = expected_tier(user)
    updated = 0

    for membership in dynamo.get_platform_billing_memberships(user_id):
        if membership.get("tier") == tier:
            continue
        org_id = membership["sk"]
        if dry_run:
            print(f"    Would update {user_id}/{org_id}: {membership.get('tier')} -> {tier}")
        else:
            dynamo.set_membership_tier(user_id, org_id, tier)
            print(f"    Updated {user_id}/{org_id}: {membership.get('tier')} -> {tier}")
        updated += 1

    return updated


def main(argv=None):
    parser = argparse.ArgumentParser(description="Re-derive platform-billing org membership tiers")
    parser.add_argument("--dry-run", action="store_true", help="Show what would be updated without making changes")
    args = parser.parse_args(argv)

    if args.dry_run:
        print("=== DRY RUN MODE - No changes will be made ===\n")

    users = scan_billed_users()
    print(f"\nFound {len(users)} users with billing state")

    updated_count = 0
    error_count = 0
    for user in users:
        try:
            updated_count += reconcile_user(user, dry_run=args.dry_run)
        except Exception as e:
            print(f"  Error reconciling {user.get('pk')}: {e}")
            error_count += 1

    print(f"\n{'Would update' if args.dry_run else 'Updated'}: {updated_count} memberships")
    print(f"Errors: {error_count}")
    return 1 if error_count else 0


if __name__ == "__main__":
    sys.exit(main())
