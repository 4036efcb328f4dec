#!/usr/bin/env python3
"""Federation maintenance for operators.

Usage:
    # Report linked rows whose identity provider record is missing or moved
    python scripts/reconcile_accounts.py detect

    # Re-sync every row marked federation_status=failed
    python scripts/reconcile_accounts.py retry

    # Drop a dangling external link so the user can migrate again
    python scripts/reconcile_accounts.py reconcile --email user@example.com

    # Count users per auth provider
    python scripts/reconcile_accounts.py stats

    # Grant admin rights to an existing user
    python scripts/reconcile_accounts.py promote-admin --email admin@example.com

Environment Variables:
    DATABASE_URL: PostgreSQL connection string (required unless USE_MEMORY_STORE=true)
    IDENTITY_BACKEND, FIREBASE_*: identity provider settings, as for the service
"""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Any, Dict

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def detect(runtime) -> Dict[str, Any]:
    report = await runtime.auth.resolver.detect_orphaned_accounts()
    return report.as_dict()


async def retry(runtime) -> Dict[str, Any]:
    report = await runtime.federation.retry_failed_federations()
    return report.as_dict()


async def reconcile(runtime, email: str) -> Dict[str, Any]:
    changed = await runtime.auth.resolver.reconcile_orphaned_local_account(email)
    return {"email": email, "reconciled": changed}


async def stats(runtime) -> Dict[str, Any]:
    migration = await runtime.auth.password_reset.migration_stats()
    return migration.as_dict()


async def promote_admin(runtime, email: str, dry_run: bool = False) -> Dict[str, Any]:
    from authgate.storage.models import UserType

    user = await runtime.store.get_user_by_email(email)
    if user is None:
        return {"email": email, "status": "not_found"}
    if user.is_admin:
        return {"user_id": user.id, "email": email, "status": "already_admin"}
    if dry_run:
        return {"user_id": user.id, "email": email, "status": "dry_run"}
    await runtime.store.update_user(user.id, user_type=UserType.ADMIN)
    return {"user_id": user.id, "email": email, "status": "promoted"}


async def run(args: argparse.Namespace) -> Dict[str, Any]:
    # Import here to avoid loading config before env vars are set
    from authgate.service.runtime import get_runtime

    runtime = get_runtime()
    await runtime.start()
    try:
        if args.command == "detect":
            return await detect(runtime)
        if args.command == "retry":
            return await retry(runtime)
        if args.command == "reconcile":
            return await reconcile(runtime, args.email)
        if args.command == "stats":
            return await stats(runtime)
        return await promote_admin(runtime, args.email, args.dry_run)
    finally:
        await runtime.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Federation maintenance for authgate",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("detect", help="Report orphaned and inconsistent accounts")
    subparsers.add_parser("retry", help="Retry rows with federation_status=failed")
    reconcile_parser = subparsers.add_parser(
        "reconcile", help="Unlink an orphaned local account"
    )
    reconcile_parser.add_argument("--email", required=True)
    subparsers.add_parser("stats", help="Migration statistics")
    promote_parser = subparsers.add_parser("promote-admin", help="Make a user an admin")
    promote_parser.add_argument(
        "--email",
        default=os.environ.get("ADMIN_EMAIL"),
        help="Admin email (or set ADMIN_EMAIL env var)",
    )
    promote_parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.command == "promote-admin" and not args.email:
        print("Error: --email or ADMIN_EMAIL environment variable required")
        sys.exit(1)

    # The verification cache is irrelevant for maintenance runs
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        result = asyncio.run(run(args))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)
    print(json.dumps(result, indent=2, default=str))


if __name__ == "__main__":
    main()
