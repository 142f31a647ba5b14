#!/usr/bin/env python3
"""Create or promote an administrator account.

Usage:
    # Using environment variables:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure@Pass123' python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure@Pass123' \
        --first-name Ada --last-name Admin

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user (must meet complexity requirements)
    JWT_SECRET, REFRESH_TOKEN_SECRET: Required signing secrets (32+ characters)
    DATABASE_URL: PostgreSQL connection string (uses memory store if not set)
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


async def bootstrap_admin(
    email: str,
    password: str,
    first_name: str,
    last_name: str,
    *,
    role: str = "ADMIN",
    dry_run: bool = False,
    runtime=None,
) -> dict:
    """Create an admin user, or promote an existing account.

    Returns:
        dict with user_id, email, and status ('created', 'promoted',
        'already_admin' or 'dry_run')
    """
    # Imported here so config is read after env defaults are applied
    from authkernel.api.schemas import (
        _validate_email,
        _validate_name,
        _validate_password_strength,
    )
    from authkernel.service.runtime import Runtime
    from authkernel.service.sanitizer import sanitize_string
    from authkernel.storage.models import ADMIN_ROLES, Role

    runtime = runtime or Runtime(use_cache=False)
    # Same cleaning every HTTP request body gets, so the stored hash matches
    # what /login later verifies
    email = _validate_email(sanitize_string(email))
    password = sanitize_string(password)
    first_name = _validate_name(sanitize_string(first_name), "First name")
    last_name = _validate_name(sanitize_string(last_name), "Last name")
    target_role = Role(role)
    if target_role not in ADMIN_ROLES:
        raise ValueError(f"{role} is not an administrative role")

    existing_user = runtime.store.get_user_by_email(email)
    if existing_user:
        if existing_user.role in ADMIN_ROLES:
            print(f"User {email} already exists as {existing_user.role.value} (id: {existing_user.id})")
            return {"user_id": existing_user.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote existing user {email} to {target_role.value}")
            return {"user_id": existing_user.id, "email": email, "status": "dry_run"}
        runtime.store.update_user(existing_user.id, role=target_role)
        print(f"Promoted existing user {email} to {target_role.value} (id: {existing_user.id})")
        return {"user_id": existing_user.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create {target_role.value} user: {email}")
        return {"user_id": None, "email": email, "status": "dry_run"}

    _validate_password_strength(password)
    result = await runtime.sessions.register(
        email, password, first_name, last_name, role=target_role
    )
    print(f"Created {target_role.value} user: {email} (id: {result.user.id})")
    return {"user_id": result.user.id, "email": email, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap an administrator for authkernel",
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
    parser.add_argument("--first-name", default="System")
    parser.add_argument("--last-name", default="Administrator")
    parser.add_argument(
        "--role",
        default="ADMIN",
        choices=["ADMIN", "SUPER_ADMIN"],
        help="Administrative role to grant",
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

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.email,
                args.password,
                args.first_name,
                args.last_name,
                role=args.role,
                dry_run=args.dry_run,
            )
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  User ID: {result['user_id']}")
    elif result["status"] == "promoted":
        print("\nExisting user promoted!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already an administrator.")


if __name__ == "__main__":
    main()
