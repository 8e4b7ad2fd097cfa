#!/usr/bin/env python3
"""Create a super user, or promote an existing one.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure-Passw0rd' python scripts/create_admin.py
    python scripts/create_admin.py --email admin@example.com --password 'Secure-Passw0rd'

Environment Variables:
    ADMIN_EMAIL: Email (and username) of the admin user
    ADMIN_PASSWORD: Password for the admin user
    DATABASE_URL: PostgreSQL connection string (in-memory store when unset)
    ENCRYPTION_SECRET: Must match the running service so the password verifies
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys


def validate_password(password: str) -> bool:
    """At least 12 characters drawn from three or more character classes."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


async def create_admin(email: str, password: str, dry_run: bool = False) -> dict:
    # Imported late so the environment defaults below apply to Settings
    from constructor_auth.service.runtime import get_runtime
    from constructor_auth.storage.common import normalize_email

    runtime = get_runtime()
    email = normalize_email(email)
    try:
        existing = await runtime.users.find_by_email(email)
        if existing:
            if existing.is_super:
                print(f"User {email} is already an admin (id: {existing.id})")
                return {"user_id": existing.id, "email": email, "status": "already_admin"}
            if dry_run:
                print(f"[DRY RUN] Would promote existing user {email} to admin")
                return {"user_id": existing.id, "email": email, "status": "dry_run"}
            roles = sorted(set(existing.roles) | {"admin"})
            await runtime.users.update(existing.id, {"is_super": True, "roles": roles})
            print(f"Promoted existing user {email} to admin (id: {existing.id})")
            return {"user_id": existing.id, "email": email, "status": "promoted"}

        if dry_run:
            print(f"[DRY RUN] Would create admin user: {email}")
            return {"user_id": None, "email": email, "status": "dry_run"}

        user, _ = await runtime.users.create_with_profile(
            email=email,
            username=email,
            password=runtime.crypto.encrypt_password(password),
            is_super=True,
            roles=["user", "admin"],
        )
        print(f"Created admin user: {email} (id: {user.id})")
        return {"user_id": user.id, "email": email, "status": "created"}
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Create or promote a constructor-auth admin user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
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
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)
    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        # Throwaway store: secrets may be generated and Redis is optional
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("TEST_MODE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(create_admin(args.email, args.password, args.dry_run))
    except Exception as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")


if __name__ == "__main__":
    main()
