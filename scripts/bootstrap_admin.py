#!/usr/bin/env python3
"""Seed the permission catalog, default roles and a first super-administrator.

Usage:
    ADMIN_EMAIL=root@example.com ADMIN_PASSWORD='S3guro!Clave' python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email root@example.com --password 'S3guro!Clave' --username root

Environment Variables:
    ADMIN_EMAIL: Email for the super-administrator
    ADMIN_PASSWORD: Initial password
    DATABASE_URL: PostgreSQL connection string (uses the memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def validate_password(password: str) -> bool:
    """At least 12 characters drawn from three or more character classes."""
    if len(password) < 12:
        return False
    has_upper = any(c.isupper() for c in password)
    has_lower = any(c.islower() for c in password)
    has_digit = any(c.isdigit() for c in password)
    has_special = any(not c.isalnum() for c in password)
    return sum([has_upper, has_lower, has_digit, has_special]) >= 3


def bootstrap_superadmin(
    runtime,
    email: str,
    password: str,
    *,
    name: str = "Super Administrador",
    username: str | None = None,
    dry_run: bool = False,
) -> dict:
    """Seed defaults and create (or promote) the super-administrator account."""
    from qcauth.service.rbac import SUPERADMIN

    email = email.strip().lower()
    if dry_run:
        existing = runtime.store.get_user_by_email(email)
        print(f"[DRY RUN] Would seed defaults and {'promote' if existing else 'create'} {email}")
        return {"user_id": existing.id if existing else None, "email": email, "status": "dry_run"}

    runtime.rbac.seed_defaults()
    user = runtime.store.get_user_by_email(email)
    status = "promoted"
    if user is None:
        user = runtime.store.create_user(email, username, name=name)
        runtime.passwords.set_password(user.id, password)
        status = "created"

    held = {role.name for role in runtime.store.list_user_roles(user.id)}
    if SUPERADMIN.name in held:
        status = "already_admin"
    else:
        runtime.rbac.assign_role(user.id, SUPERADMIN.name)
    runtime.audit.record(
        "bootstrap.superadmin",
        "users",
        user_id=user.id,
        resource_id=user.id,
        metadata={"email": email, "result": status},
    )
    return {"user_id": user.id, "email": email, "status": status}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap the first super-administrator",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--username", default=os.environ.get("ADMIN_USERNAME"))
    parser.add_argument("--name", default="Super Administrador")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)
    if not validate_password(args.password):
        print("Error: Password must be at least 12 characters with 3+ character classes")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("TEST_MODE", "true")
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from qcauth.service.runtime import Runtime

    runtime = Runtime()
    try:
        result = bootstrap_superadmin(
            runtime,
            args.email,
            args.password,
            name=args.name,
            username=args.username,
            dry_run=args.dry_run,
        )
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    finally:
        runtime.store.close()

    if result["status"] == "created":
        print(f"\nSuper-administrator created: {result['email']} (id: {result['user_id']})")
    elif result["status"] == "promoted":
        print(f"\nExisting user promoted to super-administrator: {result['email']}")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - user is already a super-administrator.")


if __name__ == "__main__":
    main()
