#!/usr/bin/env python3
"""Create a discussion board account from the command line.

Usage:
    # Using environment variables:
    USER_EMAIL=jane@example.com USER_PASSWORD=correct-horse python scripts/create_user.py --first-name Jane --last-name Doe

    # Or with command line args, activating the account immediately:
    python scripts/create_user.py --first-name Jane --last-name Doe --email jane@example.com --password correct-horse --activate

Environment Variables:
    USER_EMAIL: Email for the account
    USER_PASSWORD: Password for the account (at least 8 characters)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def create_user(
    first_name: str,
    last_name: str,
    email: str,
    password: str,
    *,
    activate: bool = False,
    dry_run: bool = False,
) -> dict:
    """Create an account, or report the existing one.

    Without ``--activate`` the regular registration flow runs, so an
    activation link is issued and delivered (or logged in dev mode).

    Returns:
        dict with user_id, email, and status
    """
    # Import here to avoid loading config before env vars are set
    from discussionboard.service.runtime import get_runtime

    runtime = get_runtime()
    normalized = runtime.users.normalize_email(email)

    existing_user = runtime.store.get_user_by_email(normalized)
    if existing_user:
        if activate and not existing_user.is_active and not dry_run:
            runtime.users.set_activated(existing_user.id)
            print(f"Activated existing user {normalized} (id: {existing_user.id})")
            return {"user_id": existing_user.id, "email": normalized, "status": "activated"}
        print(f"User {normalized} already exists (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": normalized, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create user: {normalized}")
        return {"user_id": None, "email": normalized, "status": "dry_run"}

    if activate:
        user = runtime.users.create_user(
            first_name, last_name, normalized, password, is_active=True
        )
    else:
        user = runtime.auth.register(first_name, last_name, normalized, password)

    print(f"Created user: {normalized} (id: {user.id})")
    return {
        "user_id": user.id,
        "email": normalized,
        "status": "created",
        "is_active": user.is_active,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Create a discussion board account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--first-name", required=True, help="First name")
    parser.add_argument("--last-name", required=True, help="Last name")
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
    parser.add_argument(
        "--activate",
        action="store_true",
        help="Mark the account active instead of sending an activation link",
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

    if not args.password or len(args.password) < 8:
        print("Error: --password or USER_PASSWORD must be at least 8 characters")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("MEMORY_STORE_PERSIST", "true")
        os.environ.setdefault("SHARED_FS_ROOT", "/tmp/discussionboard")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = create_user(
            args.first_name,
            args.last_name,
            args.email,
            args.password,
            activate=args.activate,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nUser created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
        print(f"  Active: {result['is_active']}")


if __name__ == "__main__":
    main()
