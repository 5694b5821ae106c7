#!/usr/bin/env python3
"""Provision the first admin account, or promote an existing account to admin.

Promoting an existing account requires that account's current password.

Usage:
    ADMIN_EMAIL=admin@example.com ADMIN_PASSWORD=Secure1234 \\
        ADMIN_FULL_NAME="Site Admin" ADMIN_PHONE=01712345678 python scripts/bootstrap_admin.py

    python scripts/bootstrap_admin.py --email admin@example.com --password Secure1234 \\
        --full-name "Site Admin" --phone 01712345678

Environment Variables:
    ADMIN_EMAIL, ADMIN_PASSWORD, ADMIN_FULL_NAME, ADMIN_PHONE: defaults for the flags
    DATABASE_URL: PostgreSQL connection string (a persisted memory store is used if unset)
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_admin(
    email: str,
    password: str,
    full_name: str | None = None,
    phone: str | None = None,
    dry_run: bool = False,
) -> dict:
    """Create or promote an admin account.

    Returns:
        dict with account_id, email, and status
        ('created', 'promoted', 'already_admin' or 'dry_run')
    """
    # deferred so the environment is prepared before settings load
    from accountgate.service.policy import normalize_email
    from accountgate.service.runtime import get_runtime

    runtime = get_runtime()
    email = normalize_email(email)
    existing = runtime.store.get_account_by_email(email)

    if existing:
        if existing.is_admin:
            print(f"Account {email} is already an admin (id: {existing.id})")
            return {"account_id": existing.id, "email": email, "status": "already_admin"}
        # promotion proves ownership with the account's current password
        if not runtime.auth.credentials.password_matches(existing.password_hash, password):
            raise ValueError(f"password does not match the existing account {email}")
        if dry_run:
            print(f"[DRY RUN] Would promote existing account {email} to admin")
            return {"account_id": existing.id, "email": email, "status": "dry_run"}
        await runtime.auth.set_account_role(existing.id, "admin")
        print(f"Promoted {email} to admin (id: {existing.id}); its sessions were revoked")
        return {"account_id": existing.id, "email": email, "status": "promoted"}

    if not full_name or not phone:
        raise ValueError("--full-name and --phone are required to create a new account")

    if dry_run:
        print(f"[DRY RUN] Would create admin account: {email}")
        return {"account_id": None, "email": email, "status": "dry_run"}

    account = await runtime.auth.provision_account(
        email=email,
        password=password,
        full_name=full_name,
        phone=phone,
        role="admin",
    )
    print(f"Created admin account: {email} (id: {account.id})")
    return {"account_id": account.id, "email": email, "status": "created"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Bootstrap an admin account for accountgate",
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
        help=(
            "Admin password (or set ADMIN_PASSWORD env var); "
            "must match the current password when promoting an existing account"
        ),
    )
    parser.add_argument(
        "--full-name",
        default=os.environ.get("ADMIN_FULL_NAME"),
        help="Full name for a newly created account",
    )
    parser.add_argument(
        "--phone",
        default=os.environ.get("ADMIN_PHONE"),
        help="Bangladeshi mobile number for a newly created account",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        return 1
    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        return 1

    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/accountgate-bootstrap"
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        os.environ.setdefault("PERSIST_MEMORY_STORE", "true")
        print("Note: Using the persisted in-memory store (set DATABASE_URL for Postgres)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    from accountgate.service.errors import ServiceError
    from accountgate.storage.errors import StoreUnavailable

    try:
        result = asyncio.run(
            bootstrap_admin(
                args.email, args.password, args.full_name, args.phone, args.dry_run
            )
        )
    except (ServiceError, StoreUnavailable, ValueError) as exc:
        print(f"Error: {exc}")
        return 1

    if result["status"] == "created":
        print("\nAdmin account created successfully!")
        print(f"  Email: {result['email']}")
        print(f"  Account ID: {result['account_id']}")
    elif result["status"] == "promoted":
        print("\nExisting account promoted to admin!")
    elif result["status"] == "already_admin":
        print("\nNo changes needed - account is already an admin.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
