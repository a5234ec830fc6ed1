#!/usr/bin/env python3
"""Create an institution with its first administrator, or a platform super-admin.

Usage:
    # Institution plus institution admin:
    python scripts/bootstrap_admin.py institution --name "Demo College" \\
        --subdomain demo --username admin --password 'Initial-Pass-42'

    # Platform super-admin (no institution):
    python scripts/bootstrap_admin.py super-admin --username root --password 'Initial-Pass-42'

Every created account must change its password at first login.

Environment Variables:
    ADMIN_USERNAME / ADMIN_PASSWORD: defaults for --username / --password
    DATABASE_URL: PostgreSQL connection string (memory store when unset)
"""
from __future__ import annotations

import argparse
import os
import secrets
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _prepare_environment() -> None:
    if not os.environ.get("JWT_SECRET"):
        os.environ["JWT_SECRET"] = secrets.token_urlsafe(48)
    os.environ.setdefault("SHARED_FS_ROOT", "/tmp/tenantauth-bootstrap")
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")


def bootstrap_institution(
    name: str,
    subdomain: str,
    username: str,
    password: str,
    *,
    custom_domain: str | None = None,
    email: str | None = None,
    dry_run: bool = False,
) -> dict:
    """Create the institution (or reuse it) and its institution admin."""
    # Import here to avoid loading config before env vars are set
    from tenantauth.service.runtime import get_runtime

    runtime = get_runtime()
    institution = runtime.store.get_institution_by_subdomain(subdomain)
    if dry_run:
        action = "reuse" if institution else "create"
        print(f"[DRY RUN] Would {action} institution '{subdomain}' and create admin {username}")
        return {"status": "dry_run"}

    if institution is None:
        institution = runtime.store.create_institution(
            name, subdomain, custom_domain=custom_domain
        )
        print(f"Created institution {name} (id: {institution.id})")

    account = runtime.auth.provision_account(
        institution.id,
        username,
        password,
        role="institution_admin",
        email=email,
        permissions=["*"],
        force_password_change=True,
    )
    print(f"Created institution admin {username} (id: {account.id})")
    return {"status": "created", "institution_id": institution.id, "account_id": account.id}


def bootstrap_super_admin(
    username: str, password: str, *, email: str | None = None, dry_run: bool = False
) -> dict:
    from tenantauth.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.store.find_account(None, username)
    if existing is not None:
        print(f"Platform account {username} already exists (id: {existing.id})")
        return {"status": "exists", "account_id": existing.id}
    if dry_run:
        print(f"[DRY RUN] Would create super-admin {username}")
        return {"status": "dry_run"}

    account = runtime.auth.provision_account(
        None,
        username,
        password,
        role="super_admin",
        email=email,
        force_password_change=True,
        profile_completed=True,
    )
    print(f"Created super-admin {username} (id: {account.id})")
    return {"status": "created", "account_id": account.id}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap administrator accounts for TenantAuth",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)

    inst = sub.add_parser("institution", help="create an institution and its admin")
    inst.add_argument("--name", required=True)
    inst.add_argument("--subdomain", required=True)
    inst.add_argument("--custom-domain", default=None)

    sub.add_parser("super-admin", help="create a platform super-admin")

    for command in sub.choices.values():
        command.add_argument("--username", default=os.environ.get("ADMIN_USERNAME"))
        command.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
        command.add_argument("--email", default=None)
        command.add_argument("--dry-run", action="store_true")

    args = parser.parse_args()

    if not args.username or not args.password:
        print("Error: --username/--password or ADMIN_USERNAME/ADMIN_PASSWORD required")
        sys.exit(1)

    _prepare_environment()

    from tenantauth.service.passwords import check_password_policy
    from tenantauth.storage.errors import ConstraintViolation

    policy = check_password_policy(args.password)
    if not policy.ok:
        print(f"Error: {policy.message}")
        sys.exit(1)

    try:
        if args.command == "institution":
            bootstrap_institution(
                args.name,
                args.subdomain,
                args.username,
                args.password,
                custom_domain=args.custom_domain,
                email=args.email,
                dry_run=args.dry_run,
            )
        else:
            bootstrap_super_admin(
                args.username, args.password, email=args.email, dry_run=args.dry_run
            )
    except ConstraintViolation as exc:
        print(f"Error: {exc.message}")
        sys.exit(1)


if __name__ == "__main__":
    main()
