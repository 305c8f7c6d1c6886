#!/usr/bin/env python3
"""Bootstrap a user and print a fresh token pair for manual testing.

Usage:
    # Using environment variables:
    BOOTSTRAP_EMAIL=ops@example.com BOOTSTRAP_PASSWORD=SecurePassword123! python scripts/bootstrap_user.py

    # Or with command line args:
    python scripts/bootstrap_user.py --email ops@example.com --username ops --password SecurePassword123!

    # Print backend and monitor status only:
    python scripts/bootstrap_user.py --status

Environment Variables:
    BOOTSTRAP_EMAIL: Email for the user
    BOOTSTRAP_PASSWORD: Password for the user
    REDIS_ENABLED / REDIS_URL: Revocation backend (optional, local memory if unset)
"""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def bootstrap_user(
    email: str, username: str, password: str, dry_run: bool = False
) -> dict:
    """Register a user, log in once and return the resulting tokens.

    Returns:
        dict with user_id, email, status and the token pair when created
    """
    # Import here to avoid loading config before env vars are set
    from sessionguard.service.lifecycle import Credentials, Registration
    from sessionguard.service.runtime import Runtime
    from sessionguard.storage.models import ClientInfo

    runtime = Runtime()
    await runtime.start()
    try:
        if dry_run:
            print(f"[DRY RUN] Would create user: {email}")
            return {"user_id": None, "email": email, "status": "dry_run"}

        client = ClientInfo(ip_address="127.0.0.1", user_agent="bootstrap-cli")
        user, _ = await runtime.auth.register(
            Registration(email=email, username=username, password=password), client
        )
        _, pair = await runtime.auth.login(Credentials(identity=email, password=password), client)
        print(f"Created user: {email} (id: {user.id})")
        return {
            "user_id": user.id,
            "email": email,
            "status": "created",
            "tokens": pair.as_dict(),
            "stats": runtime.stats(),
        }
    finally:
        await runtime.shutdown()


async def print_status() -> dict:
    from sessionguard.service.runtime import Runtime

    runtime = Runtime()
    await runtime.start()
    try:
        return runtime.stats()
    finally:
        await runtime.shutdown()


def main():
    parser = argparse.ArgumentParser(
        description="Bootstrap a sessionguard user",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--email",
        default=os.environ.get("BOOTSTRAP_EMAIL"),
        help="User email (or set BOOTSTRAP_EMAIL env var)",
    )
    parser.add_argument(
        "--username",
        default=None,
        help="Username (defaults to the local part of the email)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("BOOTSTRAP_PASSWORD"),
        help="User password (or set BOOTSTRAP_PASSWORD env var)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    parser.add_argument(
        "--status",
        action="store_true",
        help="Print revocation backend and monitor status, then exit",
    )

    args = parser.parse_args()

    if not os.environ.get("SESSIONGUARD_SECRETS_DIR"):
        os.environ["SESSIONGUARD_SECRETS_DIR"] = "/tmp/sessionguard-bootstrap"
    os.environ.setdefault("TEST_MODE", "true")

    if args.status:
        print(json.dumps(asyncio.run(print_status()), indent=2))
        return

    if not args.email:
        print("Error: --email or BOOTSTRAP_EMAIL environment variable required")
        sys.exit(1)

    if not args.password:
        print("Error: --password or BOOTSTRAP_PASSWORD environment variable required")
        sys.exit(1)

    username = args.username or args.email.split("@", 1)[0]

    try:
        result = asyncio.run(
            bootstrap_user(args.email, username, args.password, args.dry_run)
        )
        if result["status"] == "created":
            print("\nUser created successfully!")
            print(f"  Email: {result['email']}")
            print(f"  User ID: {result['user_id']}")
            print(f"  Access Token: {result['tokens']['access_token'][:50]}...")
            print(f"  Revocation backend: {result['stats']['revocation']['status']}")
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
