#!/usr/bin/env python3
"""Change the status of an account (suspend, delete, reactivate).

Usage:
    python scripts/set_account_status.py --account-id <uuid> --status suspended

    # Preview without writing:
    python scripts/set_account_status.py --account-id <uuid> --status active --dry-run

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
    SHARED_FS_ROOT: Directory holding persisted secrets and memory-store state

Suspended and deleted accounts cannot log in or refresh; their outstanding
tokens are rejected on the next request. The session watermark is untouched.
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

STATUS_CHOICES = ("active", "pending_review", "suspended", "deleted")


def set_account_status(account_id: str, status: str, dry_run: bool = False) -> dict:
    """Apply ``status`` to the account.

    Returns:
        dict with account_id, previous status and result ('updated',
        'unchanged' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from addisverify.service.runtime import get_runtime

    runtime = get_runtime()
    account = runtime.auth.get_account(account_id)
    previous = account.status.value if hasattr(account.status, "value") else str(account.status)

    if previous == status:
        print(f"Account {account_id} is already {status}")
        return {"account_id": account_id, "previous": previous, "status": "unchanged"}

    if dry_run:
        print(f"[DRY RUN] Would change account {account_id} from {previous} to {status}")
        return {"account_id": account_id, "previous": previous, "status": "dry_run"}

    runtime.auth.set_account_status(account_id, status)
    print(f"Changed account {account_id} from {previous} to {status}")
    return {"account_id": account_id, "previous": previous, "status": "updated"}


def main():
    parser = argparse.ArgumentParser(
        description="Set the status of an Addis Verify account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--account-id", required=True, help="Account UUID")
    parser.add_argument("--status", required=True, choices=STATUS_CHOICES, help="New status")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    # Status changes never touch challenges; skip the Redis requirement
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        set_account_status(args.account_id, args.status, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
