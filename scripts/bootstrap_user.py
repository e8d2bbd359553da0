#!/usr/bin/env python3
"""Seed a phone-registered user into the persisted user store.

Phone verification only signs in users that already exist, so a fresh
development store needs at least one account before /v1/auth/verify-otp can
succeed. With APP_ENV=development the code is the last six digits of the
phone number.

Usage:
    python scripts/bootstrap_user.py --phone +15551234567 --first-name Ada --last-name Lovelace

    # Or with environment variables:
    BOOTSTRAP_PHONE=+15551234567 python scripts/bootstrap_user.py

Environment Variables:
    BOOTSTRAP_PHONE: Phone number in international format
    SHARED_FS_ROOT: Directory holding state/users.json (default /tmp/ditto-bootstrap)
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


async def bootstrap_user(
    phone: str,
    first_name: str,
    last_name: str,
    email: str | None = None,
    *,
    dry_run: bool = False,
    issue_tokens: bool = False,
) -> dict:
    """Create a phone user unless one already exists.

    Returns:
        dict with user_id, phone, and status ('created', 'exists' or 'dry_run')
    """
    # Import here so env defaults are in place before settings load
    from ditto.service.codes import validate_phone
    from ditto.service.runtime import get_runtime

    validate_phone(phone)
    runtime = get_runtime()

    existing = runtime.store.get_user_by_phone(phone)
    if existing:
        print(f"User with phone {phone} already exists (id: {existing.id})")
        return {"user_id": existing.id, "phone": phone, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create user for {phone}")
        return {"user_id": None, "phone": phone, "status": "dry_run"}

    user = runtime.store.create_user(
        first_name=first_name, last_name=last_name, email=email, phone=phone
    )
    result = {"user_id": user.id, "phone": phone, "status": "created"}
    if issue_tokens:
        result["access_token"] = runtime.tokens.issue_access(user.id, phone)
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Seed a phone user for local Ditto logins",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--phone",
        default=os.environ.get("BOOTSTRAP_PHONE"),
        help="Phone number, e.g. +15551234567 (or set BOOTSTRAP_PHONE env var)",
    )
    parser.add_argument("--first-name", default="Test")
    parser.add_argument("--last-name", default="User")
    parser.add_argument("--email", default=None)
    parser.add_argument(
        "--issue-token",
        action="store_true",
        help="Also print an access token for the user",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.phone:
        print("Error: --phone or BOOTSTRAP_PHONE environment variable required")
        sys.exit(1)

    os.environ.setdefault("SHARED_FS_ROOT", "/tmp/ditto-bootstrap")
    os.environ.setdefault("APP_ENV", "development")

    try:
        result = asyncio.run(
            bootstrap_user(
                args.phone,
                args.first_name,
                args.last_name,
                args.email,
                dry_run=args.dry_run,
                issue_tokens=args.issue_token,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nUser created successfully!")
        print(f"  Phone: {result['phone']}")
        print(f"  User ID: {result['user_id']}")
        if result.get("access_token"):
            print(f"  Access Token: {result['access_token'][:50]}...")


if __name__ == "__main__":
    main()
