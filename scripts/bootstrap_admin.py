#!/usr/bin/env python3
"""Bootstrap an admin user and, optionally, its first credentials.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com python scripts/bootstrap_admin.py

    # Or with command line args, minting a grant for the admin at the same time:
    python scripts/bootstrap_admin.py --email admin@example.com --scopes "*"

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path
from typing import List, Optional

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(
    email: str, scopes: Optional[List[str]] = None, dry_run: bool = False
) -> dict:
    """Create or promote an admin user, then approve a first request if asked.

    Returns:
        dict with user_id, email, status and, when scopes were given, the tokens
    """
    # Import here to avoid loading config before env vars are set
    from tokengate.service.runtime import get_runtime

    runtime = get_runtime()
    normalized = email.strip().lower()
    existing_user = runtime.store.get_user_by_email(normalized)

    if existing_user and existing_user.is_admin:
        print(f"User {normalized} already exists as admin (id: {existing_user.id})")
        result = {"user_id": existing_user.id, "email": normalized, "status": "already_admin"}
    elif dry_run:
        action = "promote existing user" if existing_user else "create admin user"
        print(f"[DRY RUN] Would {action}: {normalized}")
        return {
            "user_id": existing_user.id if existing_user else None,
            "email": normalized,
            "status": "dry_run",
        }
    else:
        user = existing_user or runtime.auth.find_or_create_user(normalized)
        runtime.store.set_user_admin(user.id, True)
        status = "promoted" if existing_user else "created"
        print(f"{status.capitalize()} admin user: {normalized} (id: {user.id})")
        result = {"user_id": user.id, "email": normalized, "status": status}

    if scopes and not dry_run:
        request = runtime.auth.submit(normalized, scopes)
        approval = await runtime.auth.approve(request.id, note="bootstrap")
        result.update(
            {
                "grant_id": approval.grant.id,
                "access_token": approval.access_token,
                "refresh_token": approval.refresh_token,
            }
        )
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for tokengate",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--scopes",
        default=None,
        help="Comma-separated scopes to grant the admin immediately (e.g. '*')",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/tokengate-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    scopes = args.scopes.split(",") if args.scopes else None

    try:
        result = asyncio.run(bootstrap_admin(args.email, scopes, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")
    if result.get("access_token"):
        # shown once; nothing else keeps the plaintext
        print("\nCredentials issued:")
        print(f"  Grant ID: {result['grant_id']}")
        print(f"  Access Token: {result['access_token']}")
        print(f"  Refresh Token: {result['refresh_token']}")


if __name__ == "__main__":
    main()
