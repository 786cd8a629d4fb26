#!/usr/bin/env python3
"""Register a principal with a password and a second-factor contact.

Usage:
    python scripts/create_user.py --username u1 --password pw \
        --factor telegram --contact 123456789

    # Update the contact of an existing principal:
    python scripts/create_user.py --username u1 --factor email --contact u1@example.com --update

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (uses memory store if not set)
    TOKEN_PROFILE: Profile key the factor preference is stored under
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def create_or_update(args) -> dict:
    # Import here to avoid loading config before env vars are set
    from tokenlogin.service.runtime import get_runtime

    runtime = get_runtime()
    selector = args.email or args.username
    existing = runtime.accounts.find_principal(selector)

    if existing:
        if not args.update:
            return {"user_id": existing.id, "status": "exists"}
        if not (args.contact and args.factor):
            raise ValueError("--contact and --factor are required with --update")
        if args.dry_run:
            return {"user_id": existing.id, "status": "dry_run"}
        runtime.accounts.set_factor_preference(existing.id, args.contact, args.factor)
        return {"user_id": existing.id, "status": "updated"}

    if args.dry_run:
        return {"user_id": None, "status": "dry_run"}
    if not args.password:
        raise ValueError("--password is required to create a principal")
    user = runtime.accounts.register(
        password=args.password,
        username=args.username,
        email=args.email,
        contact=args.contact,
        factor=args.factor,
    )
    return {"user_id": user.id, "status": "created"}


def main():
    parser = argparse.ArgumentParser(
        description="Create a token-login principal",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--username", default=os.environ.get("TOKENLOGIN_USERNAME"))
    parser.add_argument("--email", default=os.environ.get("TOKENLOGIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("TOKENLOGIN_PASSWORD"))
    parser.add_argument("--factor", help="Delivery channel name, e.g. telegram or email")
    parser.add_argument("--contact", help="Address on that channel")
    parser.add_argument(
        "--update",
        action="store_true",
        help="Replace the factor preference of an existing principal",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    args = parser.parse_args()

    if not args.username and not args.email:
        print("Error: --username or --email required")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = create_or_update(args)
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    status = result["status"]
    if status == "created":
        print(f"Created principal (id: {result['user_id']})")
    elif status == "updated":
        print(f"Updated factor preference (id: {result['user_id']})")
    elif status == "exists":
        print(f"Principal already exists (id: {result['user_id']}); pass --update to change it")
    else:
        print("[DRY RUN] no changes made")


if __name__ == "__main__":
    main()
