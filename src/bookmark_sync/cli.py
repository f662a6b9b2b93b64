"""Command-line entry points.

``bookmark-sync``          -- file-backed sync agent (status, sync, pending,
                              history, init-config).
``bookmark-sync-server``   -- ingest server.

Both load configuration with the same precedence:
CLI args > env vars (.env loaded first) > YAML config > defaults
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from . import __version__
from .config import AgentConfig, load_agent_config, load_server_config
from .config_loader import ensure_config, load_hierarchical_config
from .config_schema import UnifiedConfig, build_config
from .errors import BookmarkSyncError, TransportError
from .logger import setup_logging
from .sync.agent import SyncAgent
from .sync.host import MemoryBookmarkTree, diff_trees
from .sync.reporter import (
    format_history,
    format_status,
    format_sync_report,
    report_to_json,
)

logger = logging.getLogger(__name__)

SNAPSHOT_FILE = "tree_snapshot.json"


def _load_unified(config_file: str | None) -> UnifiedConfig:
    # .env first, so ${VAR} interpolation in YAML can use its values
    load_dotenv()
    if config_file:
        raw = load_hierarchical_config([Path(config_file)])
    else:
        raw = load_hierarchical_config()
    return build_config(raw)


def _setup_logging(mode: str, unified: UnifiedConfig, debug: bool) -> None:
    setup_logging(
        mode=mode,
        debug=debug,
        log_file=unified.logging.file,
        debug_format=unified.logging.format,
    )
    if not debug and unified.logging.level and not os.getenv("LOG_LEVEL"):
        logging.getLogger().setLevel(unified.logging.level.upper())


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


# ---------------------------------------------------------------------------
# Agent subcommands
# ---------------------------------------------------------------------------


def _cmd_status(config: AgentConfig, args: argparse.Namespace) -> int:
    agent = SyncAgent(config, MemoryBookmarkTree())
    orchestrator = agent.orchestrator
    identity = orchestrator.identity
    pending = agent.queue_store.pending_counts()
    last_sync = agent.queue_store.get_last_sync()

    remote = None
    error = None
    try:
        remote = agent.client.status(
            orchestrator.owner_id,
            identity.instance_id,
            agent.queue_store.get_cursor(),
        )
    except TransportError as exc:
        error = str(exc)

    if args.json:
        _print_json(
            {
                "owner_id": orchestrator.owner_id,
                "instance_id": identity.instance_id,
                "last_sync": last_sync,
                "pending": pending.model_dump(),
                "server": remote.model_dump() if remote else None,
                "server_error": error,
            }
        )
    else:
        print(
            format_status(
                orchestrator.owner_id,
                identity.instance_id,
                pending,
                last_sync,
                remote,
            )
        )
        if error:
            print(f"Server:    unreachable ({error})")
    return 0 if error is None else 1


async def _sync_tree_file(config: AgentConfig, tree_path: Path):
    """Capture offline edits of *tree_path*, sync, and write the result back.

    Edits are found by diffing the file against the snapshot saved after
    the previous run; without a snapshot every node counts as new.
    """
    tree = (
        MemoryBookmarkTree.load(tree_path)
        if tree_path.exists()
        else MemoryBookmarkTree()
    )
    snapshot_path = config.state_dir / SNAPSHOT_FILE
    previous = (
        MemoryBookmarkTree.load(snapshot_path)
        if snapshot_path.exists()
        else MemoryBookmarkTree()
    )

    agent = SyncAgent(config, tree)
    for event in diff_trees(previous, tree):
        agent.capture.notify(event)
    captured = await agent.capture.drain()
    logger.info("Captured %d local change(s) from %s", captured, tree_path)

    # The queue now holds these edits; never capture them twice.
    config.state_dir.mkdir(parents=True, exist_ok=True)
    tree.save(snapshot_path)

    report = await agent.sync_once()

    tree.save(tree_path)
    tree.save(snapshot_path)
    return report


def _cmd_sync(config: AgentConfig, args: argparse.Namespace) -> int:
    report = asyncio.run(_sync_tree_file(config, Path(args.tree)))
    if report is None:
        print("A sync is already running.", file=sys.stderr)
        return 1
    if args.json:
        _print_json(report_to_json(report))
    else:
        print(format_sync_report(report))
    return 0


def _cmd_pending(config: AgentConfig, args: argparse.Namespace) -> int:
    agent = SyncAgent(config, MemoryBookmarkTree())
    records = agent.queue_store.list_pending()
    if args.json:
        _print_json([record.to_wire() for record in records])
        return 0
    if not records:
        print("No pending changes.")
        return 0
    for record in records:
        print(
            f"{record.captured_at}  {record.kind.value:<6} "
            f"{record.entity_kind.value:<8} {record.target_id}  ({record.id})"
        )
    return 0


def _cmd_history(config: AgentConfig, args: argparse.Namespace) -> int:
    agent = SyncAgent(config, MemoryBookmarkTree())
    entries = agent.client.history(agent.orchestrator.owner_id, args.limit)
    if args.json:
        _print_json([entry.model_dump(mode="json") for entry in entries])
    else:
        print(format_history(entries))
    return 0


_COMMANDS = {
    "status": _cmd_status,
    "sync": _cmd_sync,
    "pending": _cmd_pending,
    "history": _cmd_history,
}


def _build_agent_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bookmark-sync",
        description="Bookmark sync agent for a JSON bookmark tree file",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Write a starter config file
  bookmark-sync init-config

  # Sync a tree file against a local server
  bookmark-sync --server-url http://127.0.0.1:8787 sync --tree bookmarks.json

  # Show queued changes and server state
  bookmark-sync status
        """,
    )
    parser.add_argument(
        "--server-url",
        help="Override ingest server URL (takes precedence over "
        "BOOKMARK_SYNC_SERVER_URL env var and config files)",
    )
    parser.add_argument(
        "--state-dir",
        help="Override the local state directory (queue, identity, snapshot)",
    )
    parser.add_argument("--config", help="Read this YAML config file only")
    parser.add_argument(
        "--debug", action="store_true", help="Enable debug logging"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"bookmark-sync version {__version__}",
    )

    sub = parser.add_subparsers(dest="command", required=True)

    status = sub.add_parser("status", help="Show local queue and server status")
    status.add_argument("--json", action="store_true", help="JSON output")

    sync = sub.add_parser("sync", help="Run one sync attempt for a tree file")
    sync.add_argument(
        "--tree", required=True, help="JSON bookmark tree file ({'roots': [...]})"
    )
    sync.add_argument("--json", action="store_true", help="JSON output")

    pending = sub.add_parser("pending", help="List changes waiting to be sent")
    pending.add_argument("--json", action="store_true", help="JSON output")

    history = sub.add_parser("history", help="Show the server sync history")
    history.add_argument(
        "--limit", type=int, default=10, help="Entries to show (1-100)"
    )
    history.add_argument("--json", action="store_true", help="JSON output")

    init = sub.add_parser("init-config", help="Write a starter config file")
    init.add_argument("--path", help="Target path for the starter file")

    return parser


def main(argv: list[str] | None = None) -> int:
    """``bookmark-sync`` entry point; returns the process exit code."""
    parser = _build_agent_parser()
    args = parser.parse_args(argv)

    if args.command == "init-config":
        path = ensure_config(Path(args.path) if args.path else None)
        print(f"Config file: {path}")
        return 0

    try:
        unified = _load_unified(args.config)
        _setup_logging("agent", unified, args.debug)
        config = load_agent_config(
            server_url=args.server_url,
            state_dir=args.state_dir,
            debug=args.debug,
            yaml_fallbacks=unified.agent_fallbacks(),
        )
    except ValueError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 1

    try:
        return _COMMANDS[args.command](config, args)
    except BookmarkSyncError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return 130


# ---------------------------------------------------------------------------
# Server
# ---------------------------------------------------------------------------


def server_main(argv: list[str] | None = None) -> int:
    """``bookmark-sync-server`` entry point."""
    from .server.app import serve

    parser = argparse.ArgumentParser(
        prog="bookmark-sync-server",
        description="Bookmark sync ingest server",
    )
    parser.add_argument("--host", help="Bind address (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, help="Bind port (default: 8787)")
    parser.add_argument("--db", help="SQLite database path")
    parser.add_argument("--config", help="Read this YAML config file only")
    parser.add_argument(
        "--debug", action="store_true", help="Enable debug logging"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"bookmark-sync-server version {__version__}",
    )
    args = parser.parse_args(argv)

    try:
        unified = _load_unified(args.config)
        _setup_logging("server", unified, args.debug)
        config = load_server_config(
            host=args.host,
            port=args.port,
            db_path=args.db,
            debug=args.debug,
            yaml_fallbacks=unified.server_fallbacks(),
        )
    except ValueError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 1

    serve(config)
    return 0


def run() -> None:
    sys.exit(main())


def run_server() -> None:
    sys.exit(server_main())


if __name__ == "__main__":
    run()
