"""
viking-sync CLI - inspect and refresh the local offline store.

Usage:
    viking-sync status [--json]
    viking-sync sync [--stage dashboard|background|all] [--token TOKEN]
    viking-sync login-url [--frontend-url URL]
    viking-sync purge [--yes]
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import List, Optional

from pydantic import ValidationError

from viking_sync.config import get_settings
from viking_sync.context import AppContext, create_app_context
from viking_sync.errors import VikingError
from viking_sync.events import SyncProgress
from viking_sync.observability import configure_logging
from viking_sync.storage.keys import LAST_SYNC_KEY

logger = logging.getLogger(__name__)

TOKEN_ENV = "VIKING_ACCESS_TOKEN"


def cmd_status(args, ctx: AppContext):
    """Show auth state, store statistics and the last sync time."""
    status = {
        "auth_state": ctx.auth.state.value,
        "store_backend": ctx.store.backend_name,
        "demo_mode": ctx.settings.demo_mode,
        "has_offline_data": ctx.store.has_offline_data(),
        "last_sync": ctx.store.get_metadata(LAST_SYNC_KEY),
        "sections": len(ctx.store.get_sections()),
        "sync_stats": ctx.store.get_sync_stats(),
    }
    if args.json:
        print(json.dumps(status, indent=2, default=str))
        return

    print(f"Auth state:   {status['auth_state']}")
    print(f"Store:        {status['store_backend']}{' (demo)' if status['demo_mode'] else ''}")
    print(f"Offline data: {'yes' if status['has_offline_data'] else 'no'}")
    print(f"Last sync:    {status['last_sync'] or 'never'}")
    print(f"Sections:     {status['sections']}")
    for table, counts in status["sync_stats"].items():
        print(
            f"  {table:<14} total={counts['total']} modified={counts['locally_modified']} "
            f"conflicts={counts['conflicted']}"
        )


async def _run_sync(args, ctx: AppContext) -> int:
    token = args.token or os.environ.get(TOKEN_ENV)
    if not token:
        print(f"No access token; pass --token or set {TOKEN_ENV}")
        return 1
    ctx.auth.complete_login(token)

    def show(event: SyncProgress) -> None:
        print(f"[{event.stage.value}] {event.message}")

    ctx.bus.subscribe(SyncProgress, show)
    try:
        if args.stage == "dashboard":
            result = await ctx.orchestrator.sync_dashboard()
        elif args.stage == "background":
            result = await ctx.orchestrator.sync_background()
        else:
            result = await ctx.orchestrator.sync_all()
    finally:
        await ctx.governor.close()
        await ctx.transport.close()

    for stage in result.stages:
        counts = ", ".join(f"{k}={v}" for k, v in sorted(stage.counts.items()))
        print(f"{stage.stage.value}: {counts or 'nothing fetched'}")
    for failure in result.failures:
        print(f"  failed: {failure}")
    return 0 if result.success else 1


def cmd_sync(args, ctx: AppContext) -> int:
    """Run sync stages against upstream."""
    return asyncio.run(_run_sync(args, ctx))


def cmd_login_url(args, ctx: AppContext):
    """Print the OAuth authorization URL."""
    print(ctx.auth.build_oauth_url(args.frontend_url))


def cmd_purge(args, ctx: AppContext):
    """Delete every cached record from the local store."""
    if not args.yes:
        answer = input("Delete all cached data on this device? [y/N] ")
        if answer.strip().lower() not in ("y", "yes"):
            print("Aborted")
            return
    ctx.store.purge_cached_data()
    print("Cached data deleted")


def main(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(
        prog="viking-sync",
        description="Offline store and sync for the Viking event management app",
    )
    parser.add_argument("--log-level", default=None, help="Logging level (default from LOG_LEVEL)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # status
    p_status = subparsers.add_parser("status", help="Show store and auth status")
    p_status.add_argument("--json", "-j", action="store_true")

    # sync
    p_sync = subparsers.add_parser("sync", help="Fetch data from upstream")
    p_sync.add_argument("--stage", choices=["dashboard", "background", "all"], default="all")
    p_sync.add_argument("--token", "-t", help=f"Access token (default: ${TOKEN_ENV})")

    # login-url
    p_login = subparsers.add_parser("login-url", help="Print the OAuth login URL")
    p_login.add_argument("--frontend-url", help="Origin to return to after login")

    # purge
    p_purge = subparsers.add_parser("purge", help="Delete cached data")
    p_purge.add_argument("--yes", "-y", action="store_true", help="Do not ask for confirmation")

    args = parser.parse_args(argv)

    try:
        settings = get_settings()
    except ValidationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)
    configure_logging(args.log_level or settings.log_level)

    try:
        ctx = create_app_context(settings)
    except VikingError as e:
        logger.error(f"Failed to open local store: {e.detail}")
        sys.exit(1)

    exit_code = 0
    try:
        if args.command == "status":
            cmd_status(args, ctx)
        elif args.command == "sync":
            exit_code = cmd_sync(args, ctx)
        elif args.command == "login-url":
            cmd_login_url(args, ctx)
        elif args.command == "purge":
            cmd_purge(args, ctx)
    except VikingError as e:
        logger.error(f"Command failed: {e.detail}")
        print(e.user_message or e.detail, file=sys.stderr)
        exit_code = 1
    except ValueError as e:
        logger.error(f"Input validation error: {e}")
        exit_code = 1
    finally:
        ctx.store.close()
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
