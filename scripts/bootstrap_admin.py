#!/usr/bin/env python3
"""Seed default roles, the permission catalog and an administrator account.

Usage:
    # Using environment variables:
    ADMIN_LOGIN=admin ADMIN_PASSWORD=admin123 python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --login admin --password admin123

Environment Variables:
    ADMIN_LOGIN: Login for the admin user (default: admin)
    ADMIN_PASSWORD: Password for the admin user (default: admin123)
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)

Change the default password immediately after the first login.
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap(login: str, password: str, email: str | None, dry_run: bool = False) -> dict:
    """Seed the credential store.

    Returns:
        dict with admin user_id, login, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from prodauth.service.runtime import get_runtime
    from prodauth.service.seed import DEFAULT_ROLES, PERMISSION_CATALOG, seed_defaults

    runtime = get_runtime()

    if dry_run:
        existing = runtime.store.get_user_by_login(login)
        print(f"[DRY RUN] Would ensure {len(PERMISSION_CATALOG)} permissions")
        print(f"[DRY RUN] Would ensure roles: {', '.join(r.name for r in DEFAULT_ROLES)}")
        if not existing:
            print(f"[DRY RUN] Would create admin user: {login}")
        return {
            "user_id": existing.id if existing else None,
            "login": login,
            "status": "dry_run",
        }

    report = seed_defaults(
        runtime.store,
        runtime.sessions,
        admin_login=login,
        admin_password=password,
        admin_email=email,
    )
    return {
        "user_id": report.admin_user_id,
        "login": login,
        "status": "created" if report.admin_created else "exists",
        "roles_created": report.roles_created,
        "grants_created": report.grants_created,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Seed roles, permissions and an admin user for prodauth",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--login",
        default=os.environ.get("ADMIN_LOGIN", "admin"),
        help="Admin login (or set ADMIN_LOGIN env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD", "admin123"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL", "admin@example.com"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args()

    if not args.login.strip() or not args.password:
        print("Error: admin login and password must not be empty")
        sys.exit(1)

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/prodauth-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("TEST_MODE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = bootstrap(args.login, args.password, args.email, args.dry_run)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin user created successfully!")
        print(f"  Login: {result['login']}")
        print(f"  User ID: {result['user_id']}")
        print("IMPORTANT: Change this password immediately after first login!")
    elif result["status"] == "exists":
        print(f"\nAdmin user already exists: {result['login']}")
    if result.get("roles_created"):
        print(f"  Roles created: {', '.join(result['roles_created'])}")
    if result.get("grants_created"):
        print(f"  Role grants created: {result['grants_created']}")


if __name__ == "__main__":
    main()
