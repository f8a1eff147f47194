#!/usr/bin/env python3
"""Create the first administrator of a tenant.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=... python scripts/bootstrap_admin.py --tenant acme

    python scripts/bootstrap_admin.py --email admin@example.com --password ... --tenant acme

Environment Variables:
    ADMIN_EMAIL: Email for the admin user
    ADMIN_PASSWORD: Password for the admin user
    DATABASE_URL: PostgreSQL connection string (required; apply scripts/schema.sql first)
    DEFAULT_TENANT_ID: Tenant used when --tenant is omitted
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Optional

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(
    store,
    email: str,
    password: str,
    tenant_id: str,
    *,
    dry_run: bool = False,
    hasher=None,
    min_length: int = 8,
) -> dict:
    """Create ``email`` as an admin of ``tenant_id``, or promote the existing user.

    Returns a dict with user_id, email and status: created, promoted,
    already_admin or dry_run.
    """
    from tenantauth.service.auth import PASSWORD_ALGO, build_password_hasher, normalize_email
    from tenantauth.storage.models import ROLE_ADMIN

    email = normalize_email(email)
    if len(password) < min_length:
        raise ValueError(f"password must be at least {min_length} characters")

    existing = store.get_user_by_email(email, tenant_id)
    if existing and existing.role == ROLE_ADMIN and existing.is_active:
        return {"user_id": existing.id, "email": email, "status": "already_admin"}
    if dry_run:
        return {
            "user_id": existing.id if existing else None,
            "email": email,
            "status": "dry_run",
        }
    if existing:
        store.update_user(existing.id, tenant_id=tenant_id, role=ROLE_ADMIN, is_active=True)
        return {"user_id": existing.id, "email": email, "status": "promoted"}

    hasher = hasher or build_password_hasher()
    user = store.create_user(email, tenant_id=tenant_id, role=ROLE_ADMIN)
    store.save_password(user.id, hasher.hash(password), PASSWORD_ALGO)
    return {"user_id": user.id, "email": email, "status": "created"}


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap a tenant administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--tenant", default=None, help="Tenant id (defaults to DEFAULT_TENANT_ID)")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args(argv)

    if not args.email or not args.password:
        print("Error: --email/ADMIN_EMAIL and --password/ADMIN_PASSWORD are required")
        return 1

    from tenantauth.config import get_settings
    from tenantauth.storage.errors import ConstraintViolation, StoreUnavailable
    from tenantauth.storage.postgres import PostgresStore

    settings = get_settings()
    tenant_id = args.tenant or settings.default_tenant_id
    try:
        store = PostgresStore(settings.database_url)
    except (RuntimeError, StoreUnavailable) as exc:
        print(f"Error: {exc}")
        return 1
    try:
        result = bootstrap_admin(
            store,
            args.email,
            args.password,
            tenant_id,
            dry_run=args.dry_run,
            min_length=settings.password_min_length,
        )
    except (ValueError, ConstraintViolation) as exc:
        print(f"Error: {exc}")
        return 1
    finally:
        store.close()

    print(f"{result['status']}: {result['email']} (tenant {tenant_id}, id {result['user_id']})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
