#!/usr/bin/env python3
"""Bootstrap the first admin account.

Admins sign in with one-time codes like everyone else, so only an email is
needed. Once created, request a code for the address via
POST /v1/auth/request-code.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
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


def bootstrap_admin(email: str, dry_run: bool = False) -> dict:
    """Create an admin user unless the address is already registered.

    Returns:
        dict with user_id, email, and status ('created', 'already_admin',
        'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from otpgate.service.runtime import get_runtime
    from otpgate.service.validation import normalize_email

    email = normalize_email(email)
    runtime = get_runtime()
    existing_user = runtime.store.get_user_by_email(email)

    if existing_user:
        status = "already_admin" if existing_user.role == "admin" else "exists"
        print(f"User {email} already exists with role {existing_user.role} (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": email, "status": status}

    if dry_run:
        print(f"[DRY RUN] Would create admin user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    user = runtime.store.create_user(email, role="admin", is_active=True)
    print(f"Created admin user: {email} (id: {user.id})")
    return {"user_id": user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin user for otpgate",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
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
        os.environ["SHARED_FS_ROOT"] = "/tmp/otpgate-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = bootstrap_admin(args.email, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an admin.")
    elif result["status"] == "exists":
        print("\nAddress belongs to a non-admin account; no changes made.")
        sys.exit(2)


if __name__ == "__main__":
    main()
