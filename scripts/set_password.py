#!/usr/bin/env python3
"""Enroll or replace the password credential for an account.

Usage:
    # Using environment variables:
    ACCOUNT_KEY=alice ACCOUNT_PASSWORD='correct horse battery' python scripts/set_password.py

    # Or with command line args (prompts when --password is omitted):
    python scripts/set_password.py --account alice

    # Clear a lockout after resetting the password:
    python scripts/set_password.py --account alice --unlock

Environment Variables:
    ACCOUNT_KEY: Account key the credential belongs to
    ACCOUNT_PASSWORD: New password
    AUTHCORE_STORE: memory | redis | postgres (memory is useless here outside tests)
"""
from __future__ import annotations

import argparse
import asyncio
import getpass
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def set_password(account_key: str, password: str, *, unlock: bool = False) -> dict:
    """Hash and store the password; optionally clear the account's lockout."""
    # Import here to avoid loading config before env vars are set
    from authcore.service.lockout import AttemptOutcomeKind
    from authcore.service.runtime import get_runtime

    runtime = get_runtime()
    await runtime.login.set_password(account_key, password)
    status = await runtime.lockout.lock_status(account_key)
    if unlock:
        await runtime.lockout.record(account_key, AttemptOutcomeKind.SUCCESS)
    return {
        "account_key": account_key,
        "store": runtime.settings.store_backend.value,
        "was_locked": status.locked,
        "unlocked": unlock,
    }


def main():
    parser = argparse.ArgumentParser(
        description="Set an account password for authcore",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--account",
        default=os.environ.get("ACCOUNT_KEY"),
        help="Account key (or set ACCOUNT_KEY env var)",
    )
    parser.add_argument(
        "--password",
        default=os.environ.get("ACCOUNT_PASSWORD"),
        help="New password (or set ACCOUNT_PASSWORD; prompted when omitted)",
    )
    parser.add_argument(
        "--unlock",
        action="store_true",
        help="Also clear failed attempt counters and any active lock",
    )

    args = parser.parse_args()

    if not args.account:
        print("Error: --account or ACCOUNT_KEY environment variable required")
        sys.exit(1)

    password = args.password or getpass.getpass("New password: ")
    if not password:
        print("Error: a password is required")
        sys.exit(1)

    if os.environ.get("AUTHCORE_STORE", "memory") == "memory":
        print("Note: Using in-memory store; the credential is lost when this process exits")

    try:
        result = asyncio.run(set_password(args.account, password, unlock=args.unlock))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(f"Password set for {result['account_key']} ({result['store']} store)")
    if result["was_locked"] and not result["unlocked"]:
        print("  Account is currently locked; rerun with --unlock to clear it")
    elif result["unlocked"]:
        print("  Lockout state cleared")


if __name__ == "__main__":
    main()
