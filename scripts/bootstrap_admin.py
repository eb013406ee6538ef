#!/usr/bin/env python3
"""Create or update the admin principal.

Usage:
    # Using environment variables:
    ADMIN_USERNAME=admin ADMIN_PASSWORD=change-me ADMIN_EMAIL=admin@example.com python scripts/bootstrap_admin.py

    # Or with command line args:
    python scripts/bootstrap_admin.py --username admin --password change-me --email admin@example.com

Environment Variables:
    ADMIN_USERNAME: Username of the admin principal (default: admin)
    ADMIN_PASSWORD: Password to set for the admin principal
    ADMIN_EMAIL: Contact email for the admin principal
    ADMIN_FULL_NAME: Display name (default: Administrator)
    DATABASE_URL: PostgreSQL connection string (uses memory store if not set)
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(
    username: str,
    password: str,
    email: str,
    full_name: str | None = None,
    dry_run: bool = False,
) -> dict:
    # Import here to avoid loading config before env vars are set
    from sessionauth.service.bootstrap import ensure_admin
    from sessionauth.service.runtime import get_runtime

    runtime = get_runtime()
    return ensure_admin(
        runtime.store,
        runtime.credentials,
        username=username,
        password=password,
        email=email,
        full_name=full_name,
        dry_run=dry_run,
    )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Bootstrap the sessionauth admin principal",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--username",
        default=os.environ.get("ADMIN_USERNAME", "admin"),
        help="Admin username (or set ADMIN_USERNAME env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ADMIN_PASSWORD"),
        help="Admin password (or set ADMIN_PASSWORD env var)",
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    parser.add_argument(
        "--full-name",
        default=os.environ.get("ADMIN_FULL_NAME", "Administrator"),
        help="Admin display name (or set ADMIN_FULL_NAME env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )

    args = parser.parse_args(argv)

    if not args.password:
        print("Error: --password or ADMIN_PASSWORD environment variable required")
        return 1
    if not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        return 1

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")

    try:
        result = bootstrap_admin(
            args.username, args.password, args.email, args.full_name, args.dry_run
        )
    except Exception as e:
        print(f"Error: {e}")
        return 1

    if result["status"] == "created":
        print(f"Created admin principal: {result['username']}")
    elif result["status"] == "updated":
        print(f"Updated admin principal: {result['username']}")
    else:
        print(f"[DRY RUN] Would create or update admin principal: {result['username']}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
