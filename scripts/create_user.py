#!/usr/bin/env python3
"""Create an already activated user for local setup and manual testing.

Usage:
    # Using environment variables:
    AUTHFLOW_EMAIL=dev@example.com AUTHFLOW_NAME=dev AUTHFLOW_PASSWORD=SecurePassword123! \
        python scripts/create_user.py

    # Or with command line args:
    python scripts/create_user.py --email dev@example.com --name dev --password SecurePassword123!

Environment Variables:
    AUTHFLOW_EMAIL, AUTHFLOW_NAME, AUTHFLOW_PASSWORD: the new user
    DATABASE_URL: PostgreSQL connection string (memory store if not set)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def create_user(
    email: str, name: str, password: str, *, two_factor: bool = False, dry_run: bool = False
) -> dict:
    """Create and activate a user.

    Returns:
        dict with user_id, email, status and, when 2FA was enabled, the
        recovery codes
    """
    # Imported late so the environment is set before settings load
    from authflow.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.get_user_by_email(email)
    if existing:
        print(f"User {email} already exists (id: {existing.id})")
        return {"user_id": existing.id, "email": email, "status": "exists"}

    if dry_run:
        print(f"[DRY RUN] Would create user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = runtime.store.create_user(email, name, email_verified=True)
    runtime.credentials.save_password(user.id, password)
    result = {"user_id": user.id, "email": email, "status": "created"}
    if two_factor:
        result["recovery_codes"] = await runtime.auth.enable_two_factor(user)
    return result


def main():
    parser = argparse.ArgumentParser(
        description="Create an activated authflow user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("AUTHFLOW_EMAIL"))
    parser.add_argument("--name", default=os.environ.get("AUTHFLOW_NAME"))
    parser.add_argument("--password", default=os.environ.get("AUTHFLOW_PASSWORD"))
    parser.add_argument(
        "--two-factor",
        action="store_true",
        help="Enable two-factor authentication and print the recovery codes",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    for flag in ("email", "name", "password"):
        if not getattr(args, flag):
            print(f"Error: --{flag} or AUTHFLOW_{flag.upper()} environment variable required")
            sys.exit(1)
    if len(args.password) < 8:
        print("Error: password must be at least 8 characters")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("USE_REDIS_CODES", "false")

    try:
        result = asyncio.run(
            create_user(
                args.email.strip().lower(),
                args.name,
                args.password,
                two_factor=args.two_factor,
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
        for code in result.get("recovery_codes", []):
            print(f"  Recovery code: {code}")


if __name__ == "__main__":
    main()
