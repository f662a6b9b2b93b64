"""Tests for server.store -- EntityStore persistence and the history ledger.

Covers:
- insert starts at version 1; every write bumps it
- tombstone keeps the row; upsert reactivates it
- update_entity only touches active rows
- changes_since ordering, instance exclusion and cursor bounds
- history entries with nested error rows
- client instance heartbeat
- transaction and savepoint rollback
"""

from __future__ import annotations

import pytest

from bookmark_sync.server.db import utc_now
from bookmark_sync.server.store import EntityStore
from bookmark_sync.sync.models import (
    ChangeKind,
    EntityKind,
    HistoryError,
    HistoryKind,
    HistoryStatus,
)

OWNER = "owner-1"


def _folder(store: EntityStore, local_id: str, parent: str | None = None, **kw):
    return store.upsert_entity(
        EntityKind.FOLDER,
        OWNER,
        local_id,
        {"title": kw.get("title", local_id), "parent_local_id": parent, "position": 0},
        instance_id=kw.get("instance_id"),
    )


def _bookmark(store: EntityStore, local_id: str, parent: str | None = None, **kw):
    return store.upsert_entity(
        EntityKind.BOOKMARK,
        OWNER,
        local_id,
        {
            "title": local_id,
            "url": kw.get("url", "https://example.com"),
            "parent_local_id": parent,
            "position": kw.get("position", 0),
        },
        instance_id=kw.get("instance_id"),
    )


# ---------------------------------------------------------------------------
# Versions and tombstones
# ---------------------------------------------------------------------------


class TestEntityWrites:
    """Tests for upsert_entity / update_entity / tombstone."""

    def test_insert_starts_at_version_one(self, store):
        assert _bookmark(store, "b1") == 1
        row = store.get_entity(EntityKind.BOOKMARK, OWNER, "b1")
        assert row["status"] == "active"
        assert row["last_change"] == "CREATE"

    def test_update_bumps_version(self, store):
        _bookmark(store, "b1")
        version = store.update_entity(
            EntityKind.BOOKMARK, OWNER, "b1", {"title": "Renamed"}
        )
        assert version == 2
        row = store.get_entity(EntityKind.BOOKMARK, OWNER, "b1")
        assert row["title"] == "Renamed"
        assert row["last_change"] == "UPDATE"

    def test_update_missing_returns_none(self, store):
        assert (
            store.update_entity(EntityKind.FOLDER, OWNER, "nope", {"title": "x"})
            is None
        )

    def test_tombstone_keeps_row(self, store):
        _bookmark(store, "b1")
        assert store.tombstone(EntityKind.BOOKMARK, OWNER, "b1") == 2
        row = store.get_entity(EntityKind.BOOKMARK, OWNER, "b1")
        assert row["status"] == "deleted"
        assert store.list_entities(EntityKind.BOOKMARK, OWNER) == []
        assert len(
            store.list_entities(EntityKind.BOOKMARK, OWNER, include_deleted=True)
        ) == 1

    def test_update_skips_tombstoned_rows(self, store):
        _bookmark(store, "b1")
        store.tombstone(EntityKind.BOOKMARK, OWNER, "b1")
        assert (
            store.update_entity(
                EntityKind.BOOKMARK,
                OWNER,
                "b1",
                {"position": 3},
                change=ChangeKind.MOVE,
            )
            is None
        )

    def test_recreate_after_tombstone_reactivates(self, store):
        _bookmark(store, "b1")
        store.tombstone(EntityKind.BOOKMARK, OWNER, "b1")
        assert _bookmark(store, "b1", url="https://example.org") == 3
        row = store.get_entity(EntityKind.BOOKMARK, OWNER, "b1")
        assert row["status"] == "active"
        assert row["url"] == "https://example.org"

    def test_unknown_field_rejected(self, store):
        with pytest.raises(ValueError, match="Unknown folder fields: url"):
            store.upsert_entity(
                EntityKind.FOLDER, OWNER, "f1", {"url": "https://example.com"}
            )

    def test_owners_are_isolated(self, store):
        _bookmark(store, "b1")
        assert store.count_by_owner(OWNER) == 1
        assert store.count_by_owner("someone-else") == 0
        assert store.get_entity(EntityKind.BOOKMARK, "someone-else", "b1") is None

    def test_count_includes_tombstones(self, store):
        _folder(store, "f1")
        store.tombstone(EntityKind.FOLDER, OWNER, "f1")
        assert store.count_by_owner(OWNER) == 1


class TestDescendants:
    """Tests for descendant_ids()."""

    def test_breadth_first_active_only(self, store):
        _folder(store, "f1")
        _folder(store, "f2", parent="f1")
        _bookmark(store, "b1", parent="f1")
        _bookmark(store, "b2", parent="f2")
        _bookmark(store, "gone", parent="f2")
        store.tombstone(EntityKind.BOOKMARK, OWNER, "gone")

        found = store.descendant_ids(OWNER, "f1")
        assert found == [
            (EntityKind.FOLDER, "f2"),
            (EntityKind.BOOKMARK, "b1"),
            (EntityKind.BOOKMARK, "b2"),
        ]


# ---------------------------------------------------------------------------
# Remote changes
# ---------------------------------------------------------------------------


class TestChangesSince:
    """Tests for changes_since() and pending_counts()."""

    def test_none_returns_active_tree_folders_first(self, store):
        _bookmark(store, "b1", parent="f1")
        _folder(store, "f1")
        _bookmark(store, "gone")
        store.tombstone(EntityKind.BOOKMARK, OWNER, "gone")

        changes = store.changes_since(OWNER, None)
        assert [(c.entity_kind, c.target_id) for c in changes] == [
            (EntityKind.FOLDER, "f1"),
            (EntityKind.BOOKMARK, "b1"),
        ]

    def test_parent_folder_written_last_still_comes_first(self, store):
        _folder(store, "root")
        cursor = utc_now()
        _folder(store, "parent", parent="root")
        _folder(store, "child", parent="parent")
        _folder(store, "grandchild", parent="child")
        store.update_entity(
            EntityKind.FOLDER, OWNER, "child", {"title": "Renamed child"}
        )
        store.update_entity(
            EntityKind.FOLDER, OWNER, "parent", {"title": "Renamed parent"}
        )

        changes = store.changes_since(OWNER, cursor)
        assert [c.target_id for c in changes] == ["parent", "child", "grandchild"]

    def test_folder_moved_under_newer_folder(self, store):
        _folder(store, "old")
        cursor = utc_now()
        _folder(store, "new")
        store.update_entity(
            EntityKind.FOLDER,
            OWNER,
            "old",
            {"parent_local_id": "new"},
            change=ChangeKind.MOVE,
        )
        store.update_entity(EntityKind.FOLDER, OWNER, "new", {"title": "Newer"})

        changes = store.changes_since(OWNER, cursor)
        assert [c.target_id for c in changes] == ["new", "old"]

    def test_since_includes_tombstones(self, store):
        _bookmark(store, "b1")
        cursor = utc_now()
        store.tombstone(EntityKind.BOOKMARK, OWNER, "b1")

        changes = store.changes_since(OWNER, cursor)
        assert len(changes) == 1
        assert changes[0].deleted is True
        assert changes[0].version == 2

    def test_excludes_the_writing_instance(self, store):
        _bookmark(store, "mine", instance_id="inst-a")
        _bookmark(store, "theirs", instance_id="inst-b")
        _bookmark(store, "anonymous")

        changes = store.changes_since(OWNER, None, exclude_instance="inst-a")
        assert sorted(c.target_id for c in changes) == ["anonymous", "theirs"]

    def test_until_bounds_the_window(self, store):
        _bookmark(store, "early")
        cutoff = utc_now()
        _bookmark(store, "late")

        changes = store.changes_since(OWNER, None, until=cutoff)
        assert [c.target_id for c in changes] == ["early"]

    def test_pending_counts_by_last_change(self, store):
        _folder(store, "f1", instance_id="inst-b")
        _bookmark(store, "b1", instance_id="inst-b")
        _bookmark(store, "b2", instance_id="inst-b")
        cursor = utc_now()
        store.update_entity(
            EntityKind.BOOKMARK, OWNER, "b1", {"title": "x"}, instance_id="inst-b"
        )
        store.update_entity(
            EntityKind.BOOKMARK,
            OWNER,
            "b2",
            {"parent_local_id": "f1"},
            change=ChangeKind.MOVE,
            instance_id="inst-b",
        )
        store.tombstone(EntityKind.FOLDER, OWNER, "f1", instance_id="inst-b")

        counts = store.pending_counts(OWNER, cursor, exclude_instance="inst-a")
        assert (counts.adds, counts.updates, counts.moves, counts.deletes) == (
            0,
            1,
            1,
            1,
        )
        assert store.pending_counts(OWNER, cursor, "inst-b").total == 0


# ---------------------------------------------------------------------------
# History and instances
# ---------------------------------------------------------------------------


class TestHistory:
    """Tests for append_history() / list_history()."""

    def test_entries_newest_first_with_errors(self, store):
        store.append_history(
            OWNER, HistoryKind.INITIAL_IMPORT, 3, HistoryStatus.SUCCESS,
            folders_processed=2, bookmarks_processed=1,
        )
        store.append_history(
            OWNER,
            HistoryKind.SYNC,
            5,
            HistoryStatus.SUCCESS,
            instance_id="inst-a",
            errors=[HistoryError(kind="UPDATE", item_id="b3", message="bad url")],
        )

        entries = store.list_history(OWNER)
        assert [e.kind for e in entries] == [
            HistoryKind.SYNC,
            HistoryKind.INITIAL_IMPORT,
        ]
        assert entries[0].errors[0].item_id == "b3"
        assert entries[1].folders_processed == 2
        assert entries[1].errors == []

    def test_limit(self, store):
        for _ in range(5):
            store.append_history(OWNER, HistoryKind.SYNC, 0, HistoryStatus.SUCCESS)
        assert len(store.list_history(OWNER, limit=2)) == 2

    def test_stats(self, store):
        _folder(store, "f1")
        _bookmark(store, "b1")
        store.tombstone(EntityKind.BOOKMARK, OWNER, "b1")
        store.append_history(OWNER, HistoryKind.SYNC, 1, HistoryStatus.SUCCESS)

        stats = store.stats()
        assert stats["counts"]["folders"] == 1
        assert stats["counts"]["bookmarks"] == 1
        assert stats["tombstones"] == 1
        assert stats["lastSync"]["kind"] == "SYNC"


class TestClientInstances:
    """Tests for the client instance heartbeat."""

    def test_upsert_updates_last_seen(self, store, metadata):
        store.upsert_client_instance(metadata)
        first = store.get_client_instance("inst-a")
        store.upsert_client_instance(
            metadata.model_copy(update={"browser_version": "129.0"})
        )
        second = store.get_client_instance("inst-a")

        assert first["first_seen"] == second["first_seen"]
        assert second["last_seen"] >= first["last_seen"]
        assert second["browser_version"] == "129.0"

    def test_unknown_instance(self, store):
        assert store.get_client_instance("missing") is None


# ---------------------------------------------------------------------------
# Transactions
# ---------------------------------------------------------------------------


class TestTransactions:
    """Tests for transaction() and savepoint()."""

    def test_transaction_rolls_back(self, store):
        with pytest.raises(RuntimeError):
            with store.transaction():
                _folder(store, "f1")
                raise RuntimeError("abort")
        assert store.get_entity(EntityKind.FOLDER, OWNER, "f1") is None

    def test_savepoint_undoes_only_its_block(self, store):
        with store.transaction():
            _folder(store, "kept")
            with pytest.raises(RuntimeError):
                with store.savepoint():
                    _folder(store, "dropped")
                    raise RuntimeError("item failed")
        assert store.get_entity(EntityKind.FOLDER, OWNER, "kept") is not None
        assert store.get_entity(EntityKind.FOLDER, OWNER, "dropped") is None

    def test_changes_visible_to_second_connection(self, store, db_path):
        _folder(store, "f1")
        with EntityStore(db_path) as other:
            assert other.count_by_owner(OWNER) == 1
