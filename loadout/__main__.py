"""CLI entry point for Loadout."""

import argparse
import asyncio
import inspect
import json
import logging
import signal
import sys
import traceback
from datetime import datetime
from pathlib import Path

from .audit import AuditLog
from .config import Config, load_config
from .events import StateChange, StateEvents
from .storage import SQLiteStateStore, TrackedKeySpec, UpgradeDataGuard
from .sync import SyncEngine

logger = logging.getLogger(__name__)


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        """Format log record as JSON."""
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }

        # Add exception info if present
        if record.exc_info:
            log_data["exception"] = "".join(traceback.format_exception(*record.exc_info))

        try:
            return json.dumps(log_data)
        except (TypeError, ValueError):
            log_data["message"] = str(log_data["message"])
            if "exception" in log_data:
                log_data["exception"] = str(log_data["exception"])
            return json.dumps(log_data)


def setup_logging(verbose: bool = False, log_level: str | None = None, json_output: bool = False) -> None:
    """Configure logging.

    Args:
        verbose: Enable debug logging (ignored if log_level is set).
        log_level: Explicit log level (warning, info, debug).
        json_output: Output logs as JSON lines for machine parsing.
    """
    if log_level:
        level_map = {
            "warning": logging.WARNING,
            "info": logging.INFO,
            "debug": logging.DEBUG,
        }
        level = level_map.get(log_level, logging.INFO)
    else:
        level = logging.DEBUG if verbose else logging.INFO

    handler = logging.StreamHandler()
    if json_output:
        handler.setFormatter(JSONFormatter())
    else:
        formatter = logging.Formatter(
            fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        handler.setFormatter(formatter)

    logging.basicConfig(
        level=level,
        handlers=[handler],
    )


def _open_store(config: Config) -> SQLiteStateStore:
    store = SQLiteStateStore(config.storage.db_path)
    store.connect()
    return store


def _offline_engine(store: SQLiteStateStore, config: Config) -> SyncEngine:
    """Engine without a backend, for reading sync bookkeeping."""
    try:
        key_spec = TrackedKeySpec.create(config.sync.key_prefixes, config.sync.excluded_keys)
    except ValueError:
        key_spec = None
    return SyncEngine(
        store,
        None,
        config.node.app_version,
        space=config.sync.space,
        key_spec=key_spec,
    )


def _format_ts(ts_ms: int | None) -> str:
    if not ts_ms:
        return "never"
    return datetime.fromtimestamp(ts_ms / 1000).isoformat(timespec="seconds")


async def cmd_run(args: argparse.Namespace) -> int:
    """Run the sync engine until interrupted."""
    config = load_config(args.config)
    store = _open_store(config)

    if config.upgrade_guard.enabled:
        UpgradeDataGuard(
            store,
            protected_keys=config.upgrade_guard.protected_keys,
            json_keys=config.upgrade_guard.json_keys,
        ).run(config.node.app_version)

    events = StateEvents()

    def log_change(change: StateChange) -> None:
        logger.info(f"State changed ({change.reason}): {len(change.keys)} keys")

    events.subscribe(log_change)
    engine = SyncEngine.from_config(store, config, events=events)

    print(f"Starting Loadout node: {config.node.name} (version {config.node.app_version})")
    if not engine.enabled:
        print("Cloud sync disabled; nothing to run")
        store.close()
        return 0
    print(f"Sync: {config.sync.url} (table: {config.sync.table}, space: {config.sync.space})")

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    try:
        await engine.start()
        await stop_event.wait()
    except (KeyboardInterrupt, asyncio.CancelledError):
        pass
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        print("\nShutting down...")
        await engine.stop()
        store.close()

    return 0


async def cmd_sync(args: argparse.Namespace) -> int:
    """Run a single pull and push."""
    config = load_config(args.config)
    store = _open_store(config)
    engine = SyncEngine.from_config(store, config)

    try:
        if not engine.enabled:
            print("Cloud sync disabled")
            return 1

        pulled = await engine.pull()
        pushed = await engine.push()
        await engine.close()
        print(f"Pulled: {'yes' if pulled else 'no'}, pushed: {'yes' if pushed else 'no'}")
        return 0 if engine.get_status()["status"] != "failed" else 1
    finally:
        store.close()


def cmd_status(args: argparse.Namespace) -> int:
    """Show sync and history status."""
    config = load_config(args.config)
    store = _open_store(config)

    try:
        engine = _offline_engine(store, config)
        audit = AuditLog(store, limit=config.audit.history_limit)
        sync_status = engine.get_status()

        status_data = {
            "timestamp": datetime.now().isoformat(),
            "node": {
                "name": config.node.name,
                "app_version": config.node.app_version,
            },
            "storage": {
                "db_path": config.storage.db_path,
                **store.get_stats(),
            },
            "sync": {
                "configured": config.sync.is_configured,
                "url": config.sync.url or None,
                "table": config.sync.table,
                "space": config.sync.space,
                "poll_interval_ms": config.sync.poll_interval_ms,
                "realtime": config.mqtt.enabled,
                "device_id": sync_status["device_id"],
                "last_synced": sync_status["last_synced"],
                "tracked_keys": sync_status["tracked_keys"],
            },
            "audit": {
                "entries": len(audit.entries),
                "redo": len(audit.redo_stack),
                "can_undo": audit.can_undo,
            },
        }
    finally:
        store.close()

    if args.json:
        print(json.dumps(status_data, indent=2))
        return 0

    sync = status_data["sync"]
    print(f"Node: {config.node.name} (version {config.node.app_version})")
    print(f"Storage: {config.storage.db_path} ({status_data['storage']['key_count']} keys)")
    if sync["configured"]:
        print(f"Sync: {sync['url']} table={sync['table']} space={sync['space']}")
    else:
        print("Sync: disabled")
    print(f"  device: {sync['device_id'] or 'not yet assigned'}")
    print(f"  last synced: {_format_ts(sync['last_synced'])}")
    print(f"  tracked keys: {sync['tracked_keys']}")
    audit_status = status_data["audit"]
    print(f"History: {audit_status['entries']} entries, {audit_status['redo']} redoable")
    return 0


def cmd_history(args: argparse.Namespace) -> int:
    """List recent audit entries."""
    config = load_config(args.config)
    store = _open_store(config)

    try:
        audit = AuditLog(store, limit=config.audit.history_limit)
        entries = audit.entries[: args.limit]
    finally:
        store.close()

    if not entries:
        print("No history")
        return 0

    for entry in entries:
        subject = entry.item_name or entry.item_id or ""
        marker = "*" if entry.reversible else " "
        line = f"{marker} {_format_ts(entry.ts)}  {entry.action.value:<16} {subject}"
        if entry.actor:
            line += f"  by {entry.actor}"
        if entry.note:
            line += f"  ({entry.note})"
        print(line)
    return 0


def _undo_or_redo(args: argparse.Namespace, redo: bool) -> int:
    config = load_config(args.config)
    store = _open_store(config)

    try:
        audit = AuditLog(store, limit=config.audit.history_limit)
        done = audit.redo_last() if redo else audit.undo_last()
    finally:
        store.close()

    verb = "Redo" if redo else "Undo"
    print(f"{verb}: {'done' if done else 'nothing to ' + verb.lower()}")
    return 0 if done else 1


def cmd_undo(args: argparse.Namespace) -> int:
    """Undo the most recent reversible change."""
    return _undo_or_redo(args, redo=False)


def cmd_redo(args: argparse.Namespace) -> int:
    """Redo the most recently undone change."""
    return _undo_or_redo(args, redo=True)


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="loadout",
        description="Local-first state sync with undo/redo history",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file (default: none, environment only)",
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

    run_parser = subparsers.add_parser("run", help="Run continuous sync until interrupted")
    run_parser.set_defaults(func=cmd_run)

    sync_parser = subparsers.add_parser("sync", help="Pull and push once")
    sync_parser.set_defaults(func=cmd_sync)

    status_parser = subparsers.add_parser("status", help="Show sync and history status")
    status_parser.add_argument(
        "--json",
        action="store_true",
        help="Output status as JSON",
    )
    status_parser.set_defaults(func=cmd_status)

    history_parser = subparsers.add_parser("history", help="List recent audit entries")
    history_parser.add_argument(
        "-n", "--limit",
        type=int,
        default=20,
        help="Number of entries to show (default: 20)",
    )
    history_parser.set_defaults(func=cmd_history)

    undo_parser = subparsers.add_parser("undo", help="Undo the last reversible change")
    undo_parser.set_defaults(func=cmd_undo)

    redo_parser = subparsers.add_parser("redo", help="Redo the last undone change")
    redo_parser.set_defaults(func=cmd_redo)

    args = parser.parse_args()

    setup_logging(args.verbose, args.log_level, args.json_logs)

    if not args.command:
        parser.print_help()
        return 1

    func = args.func
    if inspect.iscoroutinefunction(func):
        return asyncio.run(func(args))
    return func(args)


if __name__ == "__main__":
    sys.exit(main())
