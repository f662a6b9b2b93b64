"""Relational entity store for bookmarks, folders and the sync ledger.

Rows are keyed by the natural key ``(owner_id, local_id)`` per table.
Every accepted write bumps ``version`` inside the UPDATE statement itself
(``version = version + 1``), so concurrent writers never lose a bump.
Deletes are tombstones: ``status`` flips to ``deleted`` and the row stays.

History rows are append-only; per-item failures are stored as child rows
in ``sync_history_errors``.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any, TypeVar

from ..sync.models import (
    ChangeKind,
    Counts,
    DeviceMetadata,
    EntityKind,
    EntityStatus,
    HistoryEntry,
    HistoryError,
    HistoryKind,
    HistoryStatus,
    RemoteChange,
)
from .db import connect, initialize_schema, utc_now

logger = logging.getLogger(__name__)

T = TypeVar("T")

_TABLES = {
    EntityKind.BOOKMARK: "bookmarks",
    EntityKind.FOLDER: "folders",
}

# Columns a write may touch, per entity kind.
_WRITABLE = {
    EntityKind.BOOKMARK: {"title", "url", "parent_local_id", "position"},
    EntityKind.FOLDER: {"title", "parent_local_id", "position"},
}


def parents_first(
    items: Sequence[T],
    id_of: Callable[[T], str],
    parent_of: Callable[[T], str | None],
) -> tuple[list[T], list[T]]:
    """Order *items* so every parent comes before its children.

    Parents outside *items* count as already present.  Sibling order
    follows input order.  Returns ``(ordered, unresolved)``; items are
    unresolved only when their parent links form a cycle.
    """
    ids = {id_of(item) for item in items}
    placed: set[str] = set()
    ordered: list[T] = []
    pending = list(items)
    while pending:
        remaining = []
        for item in pending:
            parent = parent_of(item)
            if parent is None or parent not in ids or parent in placed:
                ordered.append(item)
                placed.add(id_of(item))
            else:
                remaining.append(item)
        if len(remaining) == len(pending):
            return ordered, remaining
        pending = remaining
    return ordered, []


def _metadata_json(meta: DeviceMetadata | None) -> str | None:
    if meta is None:
        return None
    return json.dumps(meta.to_wire())


class EntityStore:
    """SQLite-backed store; one instance per connection.

    Args:
        db_path: Path to the SQLite database file (created if missing).
        check_same_thread: Passed through to ``sqlite3.connect``.
    """

    def __init__(
        self, db_path: Path | str, check_same_thread: bool = True
    ) -> None:
        self.db_path = Path(db_path).expanduser()
        self.conn = connect(self.db_path, check_same_thread=check_same_thread)
        initialize_schema(self.conn)
        self._savepoint_seq = 0

    def close(self) -> None:
        self.conn.close()

    def __enter__(self) -> EntityStore:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[None]:
        """Run the block in one transaction; roll back on any exception."""
        self.conn.execute("BEGIN IMMEDIATE")
        try:
            yield
        except BaseException:
            self.conn.execute("ROLLBACK")
            raise
        self.conn.execute("COMMIT")

    @contextmanager
    def savepoint(self) -> Iterator[None]:
        """Nested unit of work inside ``transaction()``.

        Undoes only the block's writes on failure and re-raises.
        """
        self._savepoint_seq += 1
        name = f"sp_{self._savepoint_seq}"
        self.conn.execute(f"SAVEPOINT {name}")
        try:
            yield
        except BaseException:
            self.conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
            self.conn.execute(f"RELEASE SAVEPOINT {name}")
            raise
        self.conn.execute(f"RELEASE SAVEPOINT {name}")

    # ------------------------------------------------------------------
    # Entity reads
    # ------------------------------------------------------------------

    def count_by_owner(self, owner_id: str) -> int:
        """Count folders plus bookmarks for *owner_id*, tombstones included."""
        row = self.conn.execute(
            """
            SELECT
                (SELECT COUNT(*) FROM folders WHERE owner_id = ?)
                + (SELECT COUNT(*) FROM bookmarks WHERE owner_id = ?)
                AS total
            """,
            (owner_id, owner_id),
        ).fetchone()
        return int(row["total"])

    def get_entity(
        self, kind: EntityKind, owner_id: str, local_id: str
    ) -> dict[str, Any] | None:
        row = self.conn.execute(
            f"SELECT * FROM {_TABLES[kind]} WHERE owner_id = ? AND local_id = ?",
            (owner_id, local_id),
        ).fetchone()
        return dict(row) if row is not None else None

    def descendant_ids(
        self, owner_id: str, folder_id: str
    ) -> list[tuple[EntityKind, str]]:
        """Active folders and bookmarks below *folder_id*, parents first."""
        found: list[tuple[EntityKind, str]] = []
        frontier = [folder_id]
        seen = {folder_id}
        while frontier:
            parent = frontier.pop(0)
            for kind in (EntityKind.FOLDER, EntityKind.BOOKMARK):
                rows = self.conn.execute(
                    f"SELECT local_id FROM {_TABLES[kind]} "
                    "WHERE owner_id = ? AND parent_local_id = ? "
                    "AND status = 'active' ORDER BY position, id",
                    (owner_id, parent),
                ).fetchall()
                for row in rows:
                    local_id = row["local_id"]
                    if kind == EntityKind.FOLDER:
                        if local_id in seen:
                            continue
                        seen.add(local_id)
                        frontier.append(local_id)
                    found.append((kind, local_id))
        return found

    def list_entities(
        self, kind: EntityKind, owner_id: str, include_deleted: bool = False
    ) -> list[dict[str, Any]]:
        query = f"SELECT * FROM {_TABLES[kind]} WHERE owner_id = ?"
        if not include_deleted:
            query += " AND status = 'active'"
        query += " ORDER BY parent_local_id, position, id"
        return [dict(r) for r in self.conn.execute(query, (owner_id,))]

    # ------------------------------------------------------------------
    # Entity writes
    # ------------------------------------------------------------------

    def upsert_entity(
        self,
        kind: EntityKind,
        owner_id: str,
        local_id: str,
        fields: dict[str, Any],
        *,
        added_at: int | None = None,
        instance_id: str | None = None,
        metadata: DeviceMetadata | None = None,
    ) -> int:
        """Insert a row, or overwrite and reactivate the existing one.

        An existing row (tombstoned or not) keeps its identity and gets
        ``version = version + 1``; a new row starts at version 1.

        Returns:
            The row's version after the write.
        """
        self._check_fields(kind, fields)
        now = utc_now()
        existing = self.get_entity(kind, owner_id, local_id)
        table = _TABLES[kind]
        if existing is None:
            columns = ["owner_id", "local_id", *fields.keys()]
            values: list[Any] = [owner_id, local_id, *fields.values()]
            columns += [
                "added_at",
                "status",
                "version",
                "last_change",
                "instance_id",
                "device_metadata_json",
                "created_at",
                "updated_at",
            ]
            values += [
                added_at,
                EntityStatus.ACTIVE.value,
                1,
                ChangeKind.CREATE.value,
                instance_id,
                _metadata_json(metadata),
                now,
                now,
            ]
            placeholders = ", ".join("?" for _ in columns)
            self.conn.execute(
                f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
                values,
            )
            return 1

        assignments = {
            **fields,
            "status": EntityStatus.ACTIVE.value,
            "last_change": ChangeKind.CREATE.value,
        }
        if added_at is not None:
            assignments["added_at"] = added_at
        version = self._bump(
            kind, owner_id, local_id, assignments, instance_id, metadata
        )
        return version if version is not None else existing["version"]

    def update_entity(
        self,
        kind: EntityKind,
        owner_id: str,
        local_id: str,
        fields: dict[str, Any],
        *,
        change: ChangeKind = ChangeKind.UPDATE,
        instance_id: str | None = None,
        metadata: DeviceMetadata | None = None,
    ) -> int | None:
        """Apply a partial update to an active row.

        Returns:
            The new version, or ``None`` when no active row matches.
        """
        self._check_fields(kind, fields)
        assignments = {**fields, "last_change": change.value}
        return self._bump(
            kind,
            owner_id,
            local_id,
            assignments,
            instance_id,
            metadata,
            only_active=True,
        )

    def tombstone(
        self,
        kind: EntityKind,
        owner_id: str,
        local_id: str,
        *,
        instance_id: str | None = None,
        metadata: DeviceMetadata | None = None,
    ) -> int | None:
        """Mark a row deleted; returns the new version or ``None`` if missing."""
        return self._bump(
            kind,
            owner_id,
            local_id,
            {
                "status": EntityStatus.DELETED.value,
                "last_change": ChangeKind.DELETE.value,
            },
            instance_id,
            metadata,
        )

    def _bump(
        self,
        kind: EntityKind,
        owner_id: str,
        local_id: str,
        assignments: dict[str, Any],
        instance_id: str | None,
        metadata: DeviceMetadata | None,
        only_active: bool = False,
    ) -> int | None:
        table = _TABLES[kind]
        assignments = {
            **assignments,
            "instance_id": instance_id,
            "device_metadata_json": _metadata_json(metadata),
            "updated_at": utc_now(),
        }
        set_clause = ", ".join(f"{col} = ?" for col in assignments)
        query = (
            f"UPDATE {table} SET {set_clause}, version = version + 1 "
            "WHERE owner_id = ? AND local_id = ?"
        )
        if only_active:
            query += " AND status = 'active'"
        cursor = self.conn.execute(
            query, [*assignments.values(), owner_id, local_id]
        )
        if cursor.rowcount == 0:
            return None
        row = self.conn.execute(
            f"SELECT version FROM {table} WHERE owner_id = ? AND local_id = ?",
            (owner_id, local_id),
        ).fetchone()
        return int(row["version"])

    @staticmethod
    def _check_fields(kind: EntityKind, fields: dict[str, Any]) -> None:
        unknown = set(fields) - _WRITABLE[kind]
        if unknown:
            raise ValueError(
                f"Unknown {kind.value} fields: {', '.join(sorted(unknown))}"
            )

    # ------------------------------------------------------------------
    # Remote changes
    # ------------------------------------------------------------------

    def changes_since(
        self,
        owner_id: str,
        since: str | None,
        exclude_instance: str | None = None,
        until: str | None = None,
    ) -> list[RemoteChange]:
        """Entities written after *since* by instances other than *exclude_instance*.

        Folders come first, each after its parent, so callers can create
        parents before children whatever order the writes happened in.
        ``since=None`` returns every active entity, so an instance joining
        an owner that already has data receives the full tree.
        """
        changes: list[RemoteChange] = []
        for kind in (EntityKind.FOLDER, EntityKind.BOOKMARK):
            rows = self._changed_rows(kind, owner_id, since, exclude_instance, until)
            if kind == EntityKind.FOLDER:
                ordered, cyclic = parents_first(
                    rows,
                    lambda row: row["local_id"],
                    lambda row: row["parent_local_id"],
                )
                rows = ordered + cyclic
            for row in rows:
                changes.append(
                    RemoteChange(
                        entity_kind=kind,
                        target_id=row["local_id"],
                        title=row["title"],
                        url=row["url"] if kind == EntityKind.BOOKMARK else None,
                        parent_id=row["parent_local_id"],
                        position=row["position"],
                        status=EntityStatus(row["status"]),
                        version=row["version"],
                        updated_at=row["updated_at"],
                    )
                )
        return changes

    def pending_counts(
        self,
        owner_id: str,
        since: str | None,
        exclude_instance: str | None = None,
    ) -> Counts:
        """Count entities changed remotely since *since*, by last change kind."""
        tally = {kind: 0 for kind in ChangeKind}
        for kind in (EntityKind.FOLDER, EntityKind.BOOKMARK):
            for row in self._changed_rows(
                kind, owner_id, since, exclude_instance
            ):
                tally[ChangeKind(row["last_change"])] += 1
        return Counts(
            adds=tally[ChangeKind.CREATE],
            updates=tally[ChangeKind.UPDATE],
            moves=tally[ChangeKind.MOVE],
            deletes=tally[ChangeKind.DELETE],
        )

    def _changed_rows(
        self,
        kind: EntityKind,
        owner_id: str,
        since: str | None,
        exclude_instance: str | None,
        until: str | None = None,
    ) -> list[sqlite3.Row]:
        query = (
            f"SELECT * FROM {_TABLES[kind]} WHERE owner_id = ? "
            "AND (instance_id IS NULL OR instance_id IS NOT ?)"
        )
        params: list[Any] = [owner_id, exclude_instance]
        if since is None:
            query += " AND status = 'active'"
        else:
            query += " AND updated_at > ?"
            params.append(since)
        if until is not None:
            query += " AND updated_at <= ?"
            params.append(until)
        query += " ORDER BY updated_at, id"
        return self.conn.execute(query, params).fetchall()

    # ------------------------------------------------------------------
    # History ledger
    # ------------------------------------------------------------------

    def append_history(
        self,
        owner_id: str,
        kind: HistoryKind,
        changes_count: int,
        status: HistoryStatus,
        *,
        instance_id: str | None = None,
        bookmarks_processed: int = 0,
        folders_processed: int = 0,
        metadata: DeviceMetadata | None = None,
        errors: Sequence[HistoryError] = (),
    ) -> int:
        """Append one history entry plus its error rows; returns its id."""
        cursor = self.conn.execute(
            """
            INSERT INTO sync_history(
                owner_id, instance_id, kind, changes_count, status,
                bookmarks_processed, folders_processed, metadata_json,
                created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                owner_id,
                instance_id,
                kind.value,
                changes_count,
                status.value,
                bookmarks_processed,
                folders_processed,
                _metadata_json(metadata),
                utc_now(),
            ),
        )
        history_id = int(cursor.lastrowid)
        if errors:
            self.conn.executemany(
                """
                INSERT INTO sync_history_errors(history_id, kind, item_id, message)
                VALUES (?, ?, ?, ?)
                """,
                [(history_id, e.kind, e.item_id, e.message) for e in errors],
            )
        return history_id

    def list_history(
        self, owner_id: str, limit: int = 10
    ) -> list[HistoryEntry]:
        """Most recent history entries first, each with its error rows."""
        rows = self.conn.execute(
            """
            SELECT * FROM sync_history
            WHERE owner_id = ?
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (owner_id, limit),
        ).fetchall()
        return [self._history_entry(row) for row in rows]

    def _history_entry(self, row: sqlite3.Row) -> HistoryEntry:
        errors = [
            HistoryError(
                kind=e["kind"], item_id=e["item_id"], message=e["message"]
            )
            for e in self.conn.execute(
                "SELECT * FROM sync_history_errors WHERE history_id = ? ORDER BY id",
                (row["id"],),
            )
        ]
        return HistoryEntry(
            id=row["id"],
            owner_id=row["owner_id"],
            instance_id=row["instance_id"],
            kind=HistoryKind(row["kind"]),
            changes_count=row["changes_count"],
            status=HistoryStatus(row["status"]),
            bookmarks_processed=row["bookmarks_processed"],
            folders_processed=row["folders_processed"],
            created_at=row["created_at"],
            errors=errors,
        )

    # ------------------------------------------------------------------
    # Client instances
    # ------------------------------------------------------------------

    def upsert_client_instance(self, meta: DeviceMetadata) -> None:
        """Record a heartbeat for the instance described by *meta*."""
        now = utc_now()
        self.conn.execute(
            """
            INSERT INTO client_instances(
                instance_id, owner_id, device_id, browser_name,
                browser_version, os, os_version, user_agent,
                first_seen, last_seen
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(instance_id) DO UPDATE SET
                owner_id = excluded.owner_id,
                device_id = excluded.device_id,
                browser_name = excluded.browser_name,
                browser_version = excluded.browser_version,
                os = excluded.os,
                os_version = excluded.os_version,
                user_agent = excluded.user_agent,
                last_seen = excluded.last_seen
            """,
            (
                meta.instance_id,
                meta.owner_id,
                meta.device_id,
                meta.browser_name,
                meta.browser_version,
                meta.os,
                meta.os_version,
                meta.user_agent,
                now,
                now,
            ),
        )

    def get_client_instance(self, instance_id: str) -> dict[str, Any] | None:
        row = self.conn.execute(
            "SELECT * FROM client_instances WHERE instance_id = ?",
            (instance_id,),
        ).fetchone()
        return dict(row) if row is not None else None

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def stats(self) -> dict[str, Any]:
        counts = {}
        for table in (
            "folders",
            "bookmarks",
            "sync_history",
            "sync_history_errors",
            "client_instances",
        ):
            row = self.conn.execute(
                f"SELECT COUNT(*) AS n FROM {table}"
            ).fetchone()
            counts[table] = int(row["n"])
        deleted = self.conn.execute(
            """
            SELECT
                (SELECT COUNT(*) FROM folders WHERE status = 'deleted')
                + (SELECT COUNT(*) FROM bookmarks WHERE status = 'deleted')
                AS n
            """
        ).fetchone()
        last = self.conn.execute(
            "SELECT * FROM sync_history ORDER BY created_at DESC, id DESC LIMIT 1"
        ).fetchone()
        return {
            "counts": counts,
            "tombstones": int(deleted["n"]),
            "lastSync": self._history_entry(last).to_wire() if last else None,
        }
