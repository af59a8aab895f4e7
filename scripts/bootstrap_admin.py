#!/usr/bin/env python3
"""Create or promote the first administrator account.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='correct horse battery' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password 'correct horse battery'

Environment Variables:
    ADMIN_EMAIL: Email for the administrator
    ADMIN_PASSWORD: Password for the administrator
    DATABASE_URL: PostgreSQL connection string (memory store is used when unset)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create the administrator, or add the admin role to an existing principal.

    Returns:
        dict with principal_id, email, and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # Deferred so the environment defaults in main() apply to settings
    from siteguard.service.runtime import get_runtime
    from siteguard.storage.models import AccountStatus, Role

    runtime = get_runtime()
    existing = runtime.store.get_principal_by_email(email)

    if existing:
        if existing.has_role(Role.ADMIN):
            print(f"Principal {email} is already an admin (id: {existing.id})")
            return {"principal_id": existing.id, "email": email, "status": "already_admin"}
        if dry_run:
            print(f"[DRY RUN] Would promote {email} to admin")
            return {"principal_id": existing.id, "email": email, "status": "dry_run"}
        runtime.store.update_principal(
            existing.id, assigned_roles=existing.roles() | {Role.ADMIN}
        )
        print(f"Promoted {email} to admin (id: {existing.id})")
        return {"principal_id": existing.id, "email": email, "status": "promoted"}

    if dry_run:
        print(f"[DRY RUN] Would create admin {email}")
        return {"principal_id": None, "email": email, "status": "dry_run"}

    principal = runtime.auth.create_principal(
        email,
        password,
        roles={Role.ADMIN, Role.USER},
        status=AccountStatus.ACTIVE,
    )
    print(f"Created admin {email} (id: {principal.id})")
    return {"principal_id": principal.id, "email": email, "status": "created"}


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap an administrator for SiteGuard",
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

    if not os.environ.get("DATABASE_URL"):
        os.environ.setdefault("USE_MEMORY_STORE", "true")
        os.environ.setdefault("PERSIST_MEMORY_STORE", "true")
        print("Note: Using the file-backed memory store (set DATABASE_URL for Postgres)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from siteguard.service.errors import ServiceError

    try:
        result = bootstrap_admin(args.email.strip().lower(), args.password, args.dry_run)
    except ServiceError as exc:
        print(f"Error: {exc.message}")
        return 1

    if result["status"] == "created":
        print("\nAdmin created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Principal ID: {result['principal_id']}")
    elif result["status"] == "promoted":
        print("\nExisting principal promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - principal is already an admin.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
