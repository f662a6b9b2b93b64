"""SQLite connection and schema for the entity store."""

from __future__ import annotations

import sqlite3
from datetime import datetime, timezone
from pathlib import Path

DEFAULT_DB_PATH = Path("~/.bookmark_sync/server.sqlite").expanduser()


def utc_now() -> str:
    """Return the current UTC time as a fixed-width ISO 8601 string.

    Fixed width keeps lexicographic order equal to chronological order,
    which the remote-changes cursor relies on.
    """
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def connect(
    db_path: Path | str, check_same_thread: bool = True
) -> sqlite3.Connection:
    """Open a connection in autocommit mode.

    Transactions are opened explicitly by ``EntityStore.transaction()``.
    """
    path = Path(db_path).expanduser()
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(
        path, check_same_thread=check_same_thread, isolation_level=None
    )
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    try:
        conn.execute("PRAGMA journal_mode = WAL")
    except sqlite3.OperationalError:
        conn.execute("PRAGMA journal_mode = DELETE")
    conn.execute("PRAGMA synchronous = NORMAL")
    conn.execute("PRAGMA busy_timeout = 5000")
    return conn


def initialize_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS folders (
            id INTEGER PRIMARY KEY,
            owner_id TEXT NOT NULL,
            local_id TEXT NOT NULL,
            title TEXT NOT NULL DEFAULT '',
            parent_local_id TEXT,
            position INTEGER NOT NULL DEFAULT 0,
            added_at INTEGER,
            status TEXT NOT NULL DEFAULT 'active',
            version INTEGER NOT NULL DEFAULT 1,
            last_change TEXT NOT NULL DEFAULT 'CREATE',
            instance_id TEXT,
            device_metadata_json TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE(owner_id, local_id)
        );

        CREATE TABLE IF NOT EXISTS bookmarks (
            id INTEGER PRIMARY KEY,
            owner_id TEXT NOT NULL,
            local_id TEXT NOT NULL,
            title TEXT NOT NULL DEFAULT '',
            url TEXT NOT NULL,
            parent_local_id TEXT,
            position INTEGER NOT NULL DEFAULT 0,
            added_at INTEGER,
            status TEXT NOT NULL DEFAULT 'active',
            version INTEGER NOT NULL DEFAULT 1,
            last_change TEXT NOT NULL DEFAULT 'CREATE',
            instance_id TEXT,
            device_metadata_json TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE(owner_id, local_id)
        );

        CREATE TABLE IF NOT EXISTS sync_history (
            id INTEGER PRIMARY KEY,
            owner_id TEXT NOT NULL,
            instance_id TEXT,
            kind TEXT NOT NULL,
            changes_count INTEGER NOT NULL DEFAULT 0,
            status TEXT NOT NULL,
            bookmarks_processed INTEGER NOT NULL DEFAULT 0,
            folders_processed INTEGER NOT NULL DEFAULT 0,
            metadata_json TEXT,
            created_at TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS sync_history_errors (
            id INTEGER PRIMARY KEY,
            history_id INTEGER NOT NULL
                REFERENCES sync_history(id) ON DELETE CASCADE,
            kind TEXT NOT NULL,
            item_id TEXT,
            message TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS client_instances (
            instance_id TEXT PRIMARY KEY,
            owner_id TEXT NOT NULL,
            device_id TEXT,
            browser_name TEXT,
            browser_version TEXT,
            os TEXT,
            os_version TEXT,
            user_agent TEXT,
            first_seen TEXT NOT NULL,
            last_seen TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_folders_owner ON folders(owner_id);
        CREATE INDEX IF NOT EXISTS idx_folders_owner_updated
            ON folders(owner_id, updated_at);
        CREATE INDEX IF NOT EXISTS idx_bookmarks_owner ON bookmarks(owner_id);
        CREATE INDEX IF NOT EXISTS idx_bookmarks_owner_updated
            ON bookmarks(owner_id, updated_at);
        CREATE INDEX IF NOT EXISTS idx_sync_history_owner
            ON sync_history(owner_id, created_at);
        CREATE INDEX IF NOT EXISTS idx_sync_history_errors_history
            ON sync_history_errors(history_id);
        CREATE INDEX IF NOT EXISTS idx_client_instances_owner
            ON client_instances(owner_id);
        """
    )
