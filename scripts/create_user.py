#!/usr/bin/env python3
"""Create a user account (or reset its password) without going through the API.

Usage:
    # Using environment variables:
    USER_EMAIL=ops@example.com USER_PASSWORD=correct-horse python scripts/create_user.py

    # Or with command line args:
    python scripts/create_user.py --email ops@example.com --password correct-horse

    # Reset the password of an existing account (revokes all its sessions):
    python scripts/create_user.py --email ops@example.com --password new-secret --reset-password

Environment Variables:
    USER_EMAIL: Email for the account
    USER_PASSWORD: Password for the account
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set,
                  which is only useful for a dry run)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def create_user(
    email: str,
    password: str,
    *,
    display_name: str | None = None,
    reset_password: bool = False,
    dry_run: bool = False,
) -> dict:
    """Create or update a credential record.

    Returns:
        dict with user_id, email, and status ('created', 'exists', 'password_reset'
        or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from sessionward.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.find_by_email(email)

    if existing:
        if not reset_password:
            print(f"User {email} already exists (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "exists"}
        if dry_run:
            print(f"[DRY RUN] Would reset password for {email}")
            return {"user_id": existing.id, "email": email, "status": "dry_run"}
        new_hash = await asyncio.to_thread(runtime.hasher.hash, password)
        now = runtime.clock.now()
        runtime.store.update_password_hash(existing.id, new_hash, now)
        revoked = runtime.sessions.revoke_subject_sessions(
            existing.id, now, "password_change"
        )
        print(f"Reset password for {email}; revoked {revoked} session(s)")
        return {
            "user_id": existing.id,
            "email": email,
            "status": "password_reset",
            "revoked": revoked,
        }

    if dry_run:
        print(f"[DRY RUN] Would create user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    password_hash = await asyncio.to_thread(runtime.hasher.hash, password)
    user = runtime.store.create_user(
        email, password_hash, runtime.clock.now(), display_name=display_name
    )
    print(f"Created user: {user.email} (id: {user.id})")
    return {"user_id": user.id, "email": user.email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Create a Sessionward user account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("USER_EMAIL"),
        help="Account email (or set USER_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("USER_PASSWORD"),
        help="Account password (or set USER_PASSWORD env var)",
    )
    parser.add_argument("--display-name", default=None, help="Optional display name")
    parser.add_argument(
        "--reset-password",
        action="store_true",
        help="Replace the password of an existing account",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.email:
        print("Error: --email or USER_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or USER_PASSWORD environment variable required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    from sessionward.api.schemas import _validate_email, _validate_password_strength

    try:
        email = _validate_email(args.email)
        _validate_password_strength(args.password)
    except ValueError as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    try:
        result = asyncio.run(
            create_user(
                email,
                args.password,
                display_name=args.display_name,
                reset_password=args.reset_password,
                dry_run=args.dry_run,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nUser created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")


if __name__ == "__main__":
    main()
