"""CLI entry point for babysync."""

import argparse
import asyncio
import json
import logging
import sys
import traceback
from datetime import datetime
from pathlib import Path

import httpx

from .auth import Credentials, RequestGuard, SessionExpiredError
from .config import Config, load_config
from .context import SyncContext
from .local import LocalDatabase, LocalRecordStore, PendingEventLog
from .models import SyncIssue
from .sync import SyncClient, SyncResult

logger = logging.getLogger(__name__)


class JSONFormatter(logging.Formatter):
    """Render each record as one JSON line."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))
        return json.dumps(log_data)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure root logging.

    Args:
        verbose: Enable debug logging (ignored if log_level is set).
        log_level: Explicit log level (warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
    """
    if log_level:
        level = getattr(logging, log_level.upper())
    else:
        level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
    logging.basicConfig(level=level, handlers=[handler])


def build_sync_client(config: Config, db: LocalDatabase) -> SyncClient:
    """Wire the local stores, request guard and sync client for this device."""
    context = SyncContext(
        user_id=config.device.user_id,
        family_id=config.device.family_id,
        device_id=config.device.device_id,
    )
    store = LocalRecordStore(db, context)
    log = PendingEventLog(
        db,
        max_attempts=config.client.max_attempts,
        backoff_base_seconds=config.client.backoff_base_seconds,
        backoff_max_seconds=config.client.backoff_max_seconds,
    )

    credentials = None
    if config.auth.access_token:
        credentials = Credentials(config.auth.access_token, config.auth.refresh_token)

    def on_sign_out() -> None:
        print("Session expired: sign in again and update auth.access_token", file=sys.stderr)

    guard = RequestGuard(
        config.client.server_url,
        credentials,
        device_id=config.device.device_id,
        timeout=config.client.timeout,
        on_sign_out=on_sign_out,
    )

    def on_issue(issue: SyncIssue) -> None:
        target = f"{issue.entity_type}/{issue.target_id}" if issue.target_id else ""
        print(f"[{issue.kind}] {target} {issue.message}".rstrip())

    return SyncClient(
        store,
        log,
        guard,
        batch_size=config.client.batch_size,
        page_size=config.client.page_size,
        on_issue=on_issue,
    )


def _print_result(result: SyncResult) -> None:
    print(f"Sync: {result.status.value}")
    print(f"  Applied: {result.events_applied}")
    print(f"  Rejected: {result.events_rejected}")
    print(f"  Retried: {result.events_retried}")
    print(f"  Pulled: {result.records_pulled}")
    if result.cursor is not None:
        print(f"  Cursor: {result.cursor}")
    if result.error:
        print(f"  Error: {result.error}")


async def cmd_serve(args: argparse.Namespace) -> int:
    """Start the sync server."""
    config = load_config(args.config)

    try:
        import uvicorn

        from .server import InMemoryTokenAuthority, RemoteSyncService, SyncDatastore, create_app
    except ImportError as e:
        print(f"Server dependencies not installed: {e}", file=sys.stderr)
        return 1

    host = args.host or config.server.host
    port = args.port or config.server.port

    datastore = SyncDatastore(config.server.db_path)
    datastore.connect()

    service = RemoteSyncService(
        datastore, dedup_retention_hours=config.server.dedup_retention_hours
    )
    authority = InMemoryTokenAuthority(token_ttl_seconds=config.auth.token_ttl_seconds)
    for token in config.auth.tokens:
        authority.add_static_token(
            token.access_token, token.user_id, token.family_id, token.refresh_token
        )

    if not config.auth.tokens:
        print("Warning: no auth.tokens configured, every request will be rejected")

    print("Starting babysync server")
    print(f"Database: {config.server.db_path}")
    print(f"URL: http://{host}:{port}")

    app = create_app(config, service, authority)

    try:
        config_uvicorn = uvicorn.Config(
            app,
            host=host,
            port=port,
            log_level="info" if args.verbose else "warning",
        )
        server = uvicorn.Server(config_uvicorn)
        await server.serve()
    finally:
        datastore.close()

    return 0


async def cmd_sync(args: argparse.Namespace) -> int:
    """Run one sync cycle, or keep syncing."""
    config = load_config(args.config)

    if not config.device.user_id or not config.device.family_id:
        print("device.user_id and device.family_id must be configured", file=sys.stderr)
        return 1

    db = LocalDatabase(config.client.db_path)
    db.connect()
    client = build_sync_client(config, db)

    try:
        if args.loop:
            interval = args.interval or config.client.sync_interval_seconds
            print(f"Syncing with {config.client.server_url} every {interval}s")
            await client.sync_loop(interval_seconds=interval)
            return 0

        try:
            result = await client.full_sync()
        except SessionExpiredError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 2

        _print_result(result)
        return 0 if result.status.value in ("success", "partial") else 1
    finally:
        await client.guard.close()
        db.close()


async def cmd_status(args: argparse.Namespace) -> int:
    """Show local queue state and, if reachable, the server's view."""
    config = load_config(args.config)

    db = LocalDatabase(config.client.db_path)
    db.connect()
    client = build_sync_client(config, db)

    try:
        status_data = {
            "timestamp": datetime.now().isoformat(),
            "device": {
                "user_id": config.device.user_id,
                "family_id": config.device.family_id,
                "device_id": config.device.device_id,
            },
            "local": client.get_sync_status(),
            "events": client.log.get_stats(),
            "records": client.store.get_stats(),
        }

        server_status = {"reachable": False}
        try:
            server_status.update(await client.fetch_server_status())
            server_status["reachable"] = True
        except (httpx.HTTPError, SessionExpiredError) as e:
            server_status["error"] = str(e)
        status_data["server"] = server_status
    finally:
        await client.guard.close()
        db.close()

    if args.json:
        print(json.dumps(status_data, indent=2, default=str))
        return 0

    local = status_data["local"]
    print("babysync Status")
    print("===============")
    print(f"Device: {config.device.device_id} (user {config.device.user_id}, family {config.device.family_id})")
    print()
    print(f"Local ({config.client.db_path}):")
    print(f"  Pending events: {local['pending_events']}")
    print(f"  Dead letters: {local['dead_events']}")
    print(f"  Conflicted records: {local['conflicted_records']}")
    print(f"  Cursor: {local['cursor'] or 'none'}")
    print()
    print(f"Server ({config.client.server_url}):")
    if server_status["reachable"]:
        print("  Status: Reachable")
        print(f"  Last push: {server_status.get('last_push_at') or 'never'}")
        print(f"  Last pull cursor: {server_status.get('last_pull_cursor') or 'none'}")
    else:
        print("  Status: Not reachable")
        print(f"  Error: {server_status.get('error')}")

    return 0


def cmd_dead_letters(args: argparse.Namespace) -> int:
    """List, requeue or discard dead-lettered events."""
    config = load_config(args.config)

    db = LocalDatabase(config.client.db_path)
    db.connect()
    client = build_sync_client(config, db)

    try:
        if args.requeue is not None:
            count = client.requeue_dead_letters(args.requeue or None)
            print(f"Requeued {count} events")
            return 0

        if args.discard:
            dropped = client.discard_dead_letters(args.discard)
            print(f"Discarded {len(dropped)} events")
            return 0

        dead = client.log.dead_letters()
        if not dead:
            print("No dead-lettered events")
            return 0

        for event in dead:
            print(
                f"{event.id}  {event.operation.value:<6} "
                f"{event.entity_type}/{event.target_id}  "
                f"attempts={event.attempt_count}  error={event.last_error}"
            )
        return 0
    finally:
        db.close()


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="babysync",
        description="Offline-first sync engine for family tracker records",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["warning", "info", "debug"],
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Start the sync server")
    serve_parser.add_argument(
        "-p", "--port",
        type=int,
        default=None,
        help="Port to listen on (default: server.port)",
    )
    serve_parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Host to bind to (default: server.host)",
    )
    serve_parser.set_defaults(func=cmd_serve)

    # Sync command
    sync_parser = subparsers.add_parser("sync", help="Push pending events and pull changes")
    sync_parser.add_argument(
        "--loop",
        action="store_true",
        help="Keep syncing on an interval",
    )
    sync_parser.add_argument(
        "--interval",
        type=int,
        default=None,
        help="Seconds between syncs with --loop (default: client.sync_interval_seconds)",
    )
    sync_parser.set_defaults(func=cmd_sync)

    # Status command
    status_parser = subparsers.add_parser("status", help="Show sync status")
    status_parser.add_argument(
        "--json",
        action="store_true",
        help="Output status as JSON",
    )
    status_parser.set_defaults(func=cmd_status)

    # Dead letters command
    dead_parser = subparsers.add_parser("dead-letters", help="Manage dead-lettered events")
    dead_actions = dead_parser.add_mutually_exclusive_group()
    dead_actions.add_argument(
        "--requeue",
        nargs="*",
        metavar="EVENT_ID",
        default=None,
        help="Requeue the given events, or all of them when no id is given",
    )
    dead_actions.add_argument(
        "--discard",
        nargs="+",
        metavar="EVENT_ID",
        default=None,
        help="Discard the given events",
    )
    dead_parser.set_defaults(func=cmd_dead_letters)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.json_logs)

    if not args.command:
        parser.print_help()
        return 1

    func = args.func
    if not asyncio.iscoroutinefunction(func):
        return func(args)

    try:
        return asyncio.run(func(args))
    except KeyboardInterrupt:
        print("\nShutting down...")
        return 130


if __name__ == "__main__":
    sys.exit(main())
