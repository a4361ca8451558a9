#!/usr/bin/env python3
"""Create the first platform-admin.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD='Secure#Pass1' python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email admin@example.com --password 'Secure#Pass1'

Environment Variables:
    ADMIN_EMAIL: Email for the platform-admin
    ADMIN_PASSWORD: Password (must satisfy the password policy)
    DATABASE_URL: PostgreSQL connection string (memory store when unset)
"""
from __future__ import annotations

import argparse
import os
import sys
import uuid
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(email: str, password: str, dry_run: bool = False) -> dict:
    """Create an active platform-admin, or promote an existing principal.

    Returns a dict with ``principal_id``, ``email`` and ``status``
    (created, promoted, already_admin or dry_run).
    """
    # Deferred so the environment is prepared before settings load
    from playerdash.service.runtime import get_runtime
    from playerdash.service.validation import normalize_email
    from playerdash.storage.models import ActiveState, Principal, Role, utcnow

    runtime = get_runtime()
    address = normalize_email(email)
    existing = runtime.store.get_principal_by_email(address)

    if existing and existing.role is Role.PLATFORM_ADMIN:
        return {"principal_id": existing.id, "email": address, "status": "already_admin"}
    if dry_run:
        return {
            "principal_id": existing.id if existing else None,
            "email": address,
            "status": "dry_run",
        }
    if existing:
        runtime.store.update_principal_role(existing.id, Role.PLATFORM_ADMIN, None)
        return {"principal_id": existing.id, "email": address, "status": "promoted"}

    now = utcnow()
    principal = runtime.store.create_principal(
        Principal(
            id=str(uuid.uuid4()),
            email=address,
            role=Role.PLATFORM_ADMIN,
            tenant_id=None,
            state=ActiveState(activated_at=now),
            created_at=now,
        )
    )
    password_hash, algo = runtime.hasher.hash(password)
    runtime.store.save_password(principal.id, password_hash, algo)
    return {"principal_id": principal.id, "email": address, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a platform-admin for the player dashboard",
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

    from playerdash.service.validation import is_valid_email, password_policy_errors

    if not is_valid_email(args.email):
        print("Error: invalid email address")
        sys.exit(1)
    problems = password_policy_errors(args.password)
    if problems:
        for problem in problems:
            print(f"Error: {problem}")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = bootstrap_admin(args.email, args.password, args.dry_run)
    except Exception as exc:
        print(f"Error: {exc}")
        sys.exit(1)

    status = result["status"]
    if status == "created":
        print(f"Platform-admin created: {result['email']} (id: {result['principal_id']})")
    elif status == "promoted":
        print(f"Existing principal promoted to platform-admin: {result['email']}")
    elif status == "already_admin":
        print(f"No changes needed: {result['email']} is already a platform-admin")
    else:
        print(f"[DRY RUN] Would create or promote {result['email']}")


if __name__ == "__main__":
    main()
