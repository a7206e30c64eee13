#!/usr/bin/env python3
"""Create or reset the console admin account.

Usage:
    # Using environment variables:
    ADMIN_USERNAME=admin ADMIN_PASSWORD=secret python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --username admin --password secret

Environment Variables:
    ADMIN_USERNAME: Display name of the admin account (default: admin)
    ADMIN_PASSWORD: Password for the admin account
    DATABASE_URL: PostgreSQL connection string (optional, uses memory store if not set)
    SHARED_FS_ROOT: Directory holding memory store state
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


async def bootstrap_admin(username: str, password: str, dry_run: bool = False) -> dict:
    """Upsert the admin account (id 0, authority 5).

    Returns:
        dict with account_id, name and status ('created', 'updated' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from tessera.service.auth import ADMIN_ID
    from tessera.service.runtime import get_runtime
    from tessera.storage.common import extend_core_schema
    from tessera.storage.postgres import PostgresStore

    runtime = get_runtime()
    if isinstance(runtime.store, PostgresStore):
        await runtime.store.open()
    try:
        await extend_core_schema(runtime.store)
        existing = await runtime.auth.get_account(ADMIN_ID)
        if dry_run:
            action = "update" if existing else "create"
            print(f"[DRY RUN] Would {action} admin account: {username}")
            return {"account_id": ADMIN_ID, "name": username, "status": "dry_run"}
        account = await runtime.auth.bootstrap_admin(username, password)
    finally:
        await runtime.close()

    status = "updated" if existing else "created"
    print(f"Admin account {status}: {account.name} (id: {account.id})")
    return {"account_id": account.id, "name": account.name, "status": status}


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap the Tessera admin account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME", "admin"),
        help="Admin name (or set ADMIN_USERNAME env var)",
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

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        sys.exit(1)

    os.environ["ADMIN_USERNAME"] = args.username
    os.environ["ADMIN_PASSWORD"] = args.password
    if not os.environ.get("SHARED_FS_ROOT"):
        os.environ["SHARED_FS_ROOT"] = "/tmp/tessera-bootstrap"

    # Use memory store if no database configured
    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = asyncio.run(bootstrap_admin(args.username, args.password, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if result["status"] == "created":
        print("\nAdmin account created successfully!")
    elif result["status"] == "updated":
        print("\nAdmin account password and name reset.")


if __name__ == "__main__":
    main()
