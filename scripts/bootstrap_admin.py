#!/usr/bin/env python3
"""Create or promote an admin account.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=SecurePassword123! python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password SecurePassword123!

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (must meet complexity requirements)
    DATABASE_URL: PostgreSQL connection string (in-memory store if not set)
    JWT_SECRET: Signing key; a throwaway one is generated when unset
"""
from __future__ import annotations

import argparse
import os
import secrets
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """Check password meets complexity requirements."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(c in "!@#$%^&*()_+-=[]{}|;':\",./<>?" for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create or promote an admin user and set its password.

    Returns:
        dict with user_id, email, and status ('created', 'promoted', 'dry_run')
    """
    # Imported late so the environment defaults below are visible to Settings
    from antares.service.runtime import get_runtime
    from antares.storage.models import ROLE_ADMIN

    runtime = get_runtime()
    email = email.strip().lower()
    existing_user = runtime.store.get_user_by_email(email)

    if dry_run:
        if existing_user is None:
            print(f"[DRY RUN] Would create admin user: {email}")
        elif existing_user.role != ROLE_ADMIN:
            print(f"[DRY RUN] Would promote existing user {email} to admin")
        else:
            print(f"[DRY RUN] Would reset the password of admin {email}")
        return {
            "user_id": existing_user.id if existing_user else None,
            "email": email,
            "status": "dry_run",
        }

    user = runtime.auth.bootstrap_admin(email, password)
    status = "created" if existing_user is None else "promoted"
    return {"user_id": user.id, "email": email, "status": status}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for Antares",
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

    args = parser.parse_args(argv)

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        return 1

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        return 1

    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        print("       (uppercase, lowercase, digits, special characters)")
        return 1

    if not os.environ.get("JWT_SECRET"):
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    # Only the credential store is touched here
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(args.email, args.password, args.dry_run)
    except Exception as exc:
        print(f"Error: {exc}")
        return 1

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
    elif result["status"] == "promoted":
        print("\nExisting user promoted to admin (password reset)!")
    if result["user_id"]:
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
