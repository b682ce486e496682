#!/usr/bin/env python3
"""Run one auth cleanup pass: clear expired reset tokens and elapsed lockouts.

Usage:
    python scripts/cleanup_auth_state.py
    python scripts/cleanup_auth_state.py --json

Intended for cron when the API's background cleanup loop is disabled
(CLEANUP_INTERVAL_SECONDS=0). Reads the same environment as the API:
DATABASE_URL, REDIS_URL, USE_MEMORY_STORE, SHARED_FS_ROOT, JWT_SECRET.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def run_cleanup() -> dict:
    # Import here so config is read after argument parsing
    from connectkit.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        return await runtime.auth.cleanup()
    finally:
        await runtime.close()


def main():
    parser = argparse.ArgumentParser(
        description="Clean up expired ConnectKit auth state",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the result counts as JSON",
    )
    args = parser.parse_args()

    try:
        result = asyncio.run(run_cleanup())
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    if args.json:
        print(json.dumps(result))
    else:
        print(f"Expired reset tokens cleared: {result['expiredTokens']}")
        print(f"Accounts unlocked: {result['unlockedAccounts']}")


if __name__ == "__main__":
    main()
