#!/usr/bin/env python3
"""Operational commands for refresh tokens and the access token deny-list.

Usage:
    python scripts/token_admin.py reap
    python scripts/token_admin.py revoke-user <user_id>
    python scripts/token_admin.py list-user <user_id>
    python scripts/token_admin.py blacklist-count
    python scripts/token_admin.py blacklist-remove <token_hash>
    python scripts/token_admin.py blacklist-clear --yes

Backends are chosen from the usual environment (TOKEN_STORE, DATABASE_URL,
BLACKLIST_BACKEND, REDIS_URL, ...). The in-memory deny-list only lives inside
the serving process, so the blacklist-* commands are useful with Redis only.
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


async def reap(runtime) -> dict:
    deleted = await runtime.reaper.run_once()
    return {"deleted": deleted}


async def revoke_user(runtime, user_id: str) -> dict:
    revoked = await asyncio.to_thread(runtime.engine.revoke_all_for_user, user_id)
    return {"user_id": user_id, "revoked": revoked}


async def list_user(runtime, user_id: str) -> dict:
    records = await asyncio.to_thread(runtime.engine.list_active_for_user, user_id)
    return {
        "user_id": user_id,
        "active": [
            {
                "id": r.id,
                "family_id": r.family_id,
                "issued_at": r.issued_at.isoformat(),
                "expires_at": r.expires_at.isoformat(),
                "max_expiry": r.max_expiry.isoformat(),
                "ip_address": r.client_info.ip_address,
                "user_agent": r.client_info.user_agent,
            }
            for r in records
        ],
    }


async def blacklist_count(runtime) -> dict:
    return {"blacklisted": await runtime.blacklist.count()}


async def blacklist_remove(runtime, token_hash: str) -> dict:
    await runtime.blacklist.remove(token_hash)
    return {"removed": token_hash}


async def blacklist_clear(runtime) -> dict:
    return {"cleared": await runtime.blacklist.clear()}


async def _run(args: argparse.Namespace) -> dict:
    from refreshguard.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        if args.command == "reap":
            return await reap(runtime)
        if args.command == "revoke-user":
            return await revoke_user(runtime, args.user_id)
        if args.command == "list-user":
            return await list_user(runtime, args.user_id)
        if args.command == "blacklist-count":
            return await blacklist_count(runtime)
        if args.command == "blacklist-remove":
            return await blacklist_remove(runtime, args.token_hash)
        return await blacklist_clear(runtime)
    finally:
        await runtime.stop()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Refresh token and deny-list administration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("reap", help="Run one reaper pass and exit")
    revoke = sub.add_parser("revoke-user", help="Revoke every refresh token of a user")
    revoke.add_argument("user_id")
    listing = sub.add_parser("list-user", help="List a user's active refresh tokens")
    listing.add_argument("user_id")
    sub.add_parser("blacklist-count", help="Count deny-listed access tokens")
    remove = sub.add_parser("blacklist-remove", help="Remove one access token hash from the deny-list")
    remove.add_argument("token_hash")
    clear = sub.add_parser("blacklist-clear", help="Remove every entry from the deny-list")
    clear.add_argument("--yes", action="store_true", help="Confirm clearing the deny-list")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "blacklist-clear" and not args.yes:
        print("Error: blacklist-clear requires --yes")
        return 1

    from refreshguard.logging import get_logger, set_correlation_id
    from refreshguard.service.errors import ServiceError
    from refreshguard.storage.errors import StorageUnavailable

    set_correlation_id()
    logger = get_logger("token_admin")
    try:
        result = asyncio.run(_run(args))
    except ServiceError as exc:
        print(f"Error: {exc.message} ({exc.error_code})")
        return 2
    except (RuntimeError, StorageUnavailable) as exc:
        # raised while building the runtime against unreachable backends
        logger.error("token_admin_failed", command=args.command, error=str(exc))
        print(f"Error: {exc}")
        return 2
    logger.info("token_admin_completed", command=args.command)
    print(json.dumps(result, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
