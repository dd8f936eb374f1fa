# ABOUTME: CLI entry point for reader-sync.
# ABOUTME: Supports serve, sync, status, cancel, flush, prune and quota commands.

import argparse
import asyncio
import json
import logging
import sys

import structlog
import uvicorn

from reader_sync.config import get_settings

log = structlog.get_logger()


def configure_logging(level: str) -> None:
    """Filter structlog output below the configured level."""
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelNamesMapping().get(level.upper(), logging.INFO)
        ),
    )


def cmd_serve(args: argparse.Namespace) -> None:
    """Start the HTTP API server."""
    settings = get_settings()
    host = args.host or settings.host
    port = args.port or settings.port
    log.info("starting_server", host=host, port=port)
    uvicorn.run("reader_sync.web.app:app", host=host, port=port, reload=args.reload)


async def _with_db(coro_fn):
    from reader_sync.db.session import close_db, init_db

    await init_db()
    try:
        return await coro_fn()
    finally:
        await close_db()


def cmd_sync(args: argparse.Namespace) -> None:
    """Run one sync in the foreground and print its outcome."""
    from reader_sync.models import SyncStatus, SyncTrigger
    from reader_sync.services.sync import SyncService

    async def _run():
        service = SyncService()
        trigger = SyncTrigger.SCHEDULED if args.scheduled else SyncTrigger.MANUAL
        sync_id = await service.start(trigger)
        return await service.run(sync_id)

    view = asyncio.run(_with_db(_run))
    if view is None:
        sys.exit(1)
    print(view.model_dump_json(indent=2))
    if view.status == SyncStatus.FAILED:
        sys.exit(1)


def cmd_status(args: argparse.Namespace) -> None:
    """Print a recorded sync run."""
    from reader_sync.services.sync import get_sync_status

    view = asyncio.run(_with_db(lambda: get_sync_status(args.sync_id)))
    if view is None:
        print(f"Sync run {args.sync_id} not found", file=sys.stderr)
        sys.exit(1)
    print(view.model_dump_json(indent=2))


def cmd_cancel(args: argparse.Namespace) -> None:
    """Ask a pending or running sync to stop."""
    from reader_sync.services.sync import cancel_sync

    if not asyncio.run(_with_db(lambda: cancel_sync(args.sync_id))):
        print(f"Sync run {args.sync_id} is not active", file=sys.stderr)
        sys.exit(1)
    print(f"Cancellation requested for {args.sync_id}")


def cmd_flush(_args: argparse.Namespace) -> None:
    """Push queued read/star changes upstream without fetching."""
    from reader_sync.errors import QuotaExceeded
    from reader_sync.services.quota import QuotaTracker
    from reader_sync.services.reconciler import Reconciler
    from reader_sync.services.upstream import UpstreamClient

    async def _run():
        async with UpstreamClient(QuotaTracker()) as client:
            return await Reconciler(client=client).flush_pending_state_changes()

    try:
        result = asyncio.run(_with_db(_run))
    except QuotaExceeded as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)
    print(result.model_dump_json(indent=2))


def cmd_prune(args: argparse.Namespace) -> None:
    """Apply the retention limit, optionally dropping exhausted queue entries."""
    from reader_sync.services.pruner import RetentionPruner
    from reader_sync.services.reconciler import Reconciler

    async def _run():
        deleted = await RetentionPruner().prune()
        cleared = await Reconciler().clear_failed_changes() if args.clear_failed else 0
        return {"articles_deleted": deleted, "failed_changes_cleared": cleared}

    print(json.dumps(asyncio.run(_with_db(_run))))


def cmd_quota(_args: argparse.Namespace) -> None:
    """Show today's upstream call budget."""
    from reader_sync.services.quota import QuotaTracker

    snap = asyncio.run(_with_db(lambda: QuotaTracker().snapshot()))
    print(json.dumps({**snap.model_dump(mode="json"), "remaining": snap.remaining}))


def main() -> None:
    """Main CLI entry point."""
    configure_logging(get_settings().log_level)

    parser = argparse.ArgumentParser(
        prog="reader-sync", description="Quota-aware article sync for a personal RSS reader"
    )
    subparsers = parser.add_subparsers(dest="command")

    # serve
    serve_parser = subparsers.add_parser("serve", help="Start the HTTP API")
    serve_parser.add_argument("--host", type=str, default=None)
    serve_parser.add_argument("--port", type=int, default=None)
    serve_parser.add_argument("--reload", action="store_true")

    # sync
    sync_parser = subparsers.add_parser("sync", help="Run one sync now")
    sync_parser.add_argument("--scheduled", action="store_true", help="Record as a scheduled run")

    # status
    status_parser = subparsers.add_parser("status", help="Show a sync run")
    status_parser.add_argument("sync_id")

    cancel_parser = subparsers.add_parser("cancel", help="Cancel a running sync")
    cancel_parser.add_argument("sync_id")

    subparsers.add_parser("flush", help="Push queued state changes upstream")

    # prune
    prune_parser = subparsers.add_parser("prune", help="Enforce the retention limit")
    prune_parser.add_argument("--clear-failed", action="store_true")

    subparsers.add_parser("quota", help="Show today's API budget")

    commands = {
        "serve": cmd_serve,
        "sync": cmd_sync,
        "status": cmd_status,
        "cancel": cmd_cancel,
        "flush": cmd_flush,
        "prune": cmd_prune,
        "quota": cmd_quota,
    }
    args = parser.parse_args()
    handler = commands.get(args.command)
    if handler is None:
        parser.print_help()
        sys.exit(1)
    handler(args)


if __name__ == "__main__":
    main()
