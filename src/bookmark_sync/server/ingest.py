"""Ingest service: applies initial imports and incremental batches.

``IngestService`` owns the server-side sync semantics on top of an
``EntityStore``:

1. ``check_status`` answers whether an owner still needs an initial import.
2. ``apply_initial_import`` inserts folders (parents first), then bookmarks,
   in one transaction.  Any failure rolls the whole import back.
3. ``apply_batch`` applies changes one by one.  Each change runs in its own
   savepoint, so a failing item is recorded and the rest still land.

Every request appends exactly one history entry.  Batch entries are
recorded as SUCCESS even when some items failed; the failures are kept as
history error rows.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from ..errors import IngestFatalError, IngestItemError, ValidationError
from ..sync.models import (
    BookmarkCreate,
    BookmarkData,
    BookmarkUpdate,
    ChangeKind,
    ChangeRecord,
    DeviceMetadata,
    EntityDelete,
    EntityKind,
    EntityMove,
    FolderCreate,
    FolderData,
    FolderUpdate,
    HistoryError,
    HistoryKind,
    HistoryStatus,
    Imported,
    ItemResult,
    StatusResult,
    SubmitResult,
    SyncOutcome,
)
from ..validators import (
    validate_local_id,
    validate_position,
    validate_title,
    validate_url,
)
from .db import utc_now
from .store import EntityStore, parents_first

logger = logging.getLogger(__name__)

DEFAULT_MAX_CHANGES = 5000


def order_folders(folders: Sequence[FolderData]) -> list[FolderData]:
    """Return *folders* with every parent before its children.

    Parents outside the list (host roots or pre-existing folders) are
    treated as already present.  Sibling order follows input order.

    Raises:
        ValueError: If the parent links form a cycle.
    """
    ordered, cyclic = parents_first(
        folders, lambda f: f.id, lambda f: f.parent_id
    )
    if cyclic:
        ids = ", ".join(f.id for f in cyclic)
        raise ValueError(f"Folder hierarchy contains a cycle: {ids}")
    return ordered


class IngestService:
    """Server-side sync semantics over an ``EntityStore``.

    Args:
        store: Open entity store (one per request thread).
        max_changes: Upper bound on changes accepted in one batch.
    """

    def __init__(
        self, store: EntityStore, max_changes: int = DEFAULT_MAX_CHANGES
    ) -> None:
        self.store = store
        self.max_changes = max_changes

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def check_status(
        self,
        owner_id: str,
        since: str | None = None,
        instance_id: str | None = None,
        metadata: DeviceMetadata | None = None,
    ) -> StatusResult:
        if metadata is not None:
            self.store.upsert_client_instance(metadata)
        needs_import = self.store.count_by_owner(owner_id) == 0
        pending = self.store.pending_counts(owner_id, since, instance_id)
        logger.debug(
            "Status for owner %s: needs_initial_import=%s pending=%d",
            owner_id,
            needs_import,
            pending.total,
        )
        return StatusResult(
            needs_initial_import=needs_import, remote_pending=pending
        )

    # ------------------------------------------------------------------
    # Initial import
    # ------------------------------------------------------------------

    def apply_initial_import(
        self,
        owner_id: str,
        folders: Sequence[FolderData],
        bookmarks: Sequence[BookmarkData],
        metadata: DeviceMetadata | None = None,
        instance_id: str | None = None,
    ) -> SubmitResult:
        """Persist a full tree upload, all or nothing.

        Raises:
            IngestFatalError: If anything fails; nothing is persisted and
                a FAILED history entry is recorded instead.
        """
        cursor = utc_now()
        instance_id = instance_id or (metadata.instance_id if metadata else None)
        total = len(folders) + len(bookmarks)
        try:
            with self.store.transaction():
                for folder in order_folders(folders):
                    self._check_entry(folder.id, folder.title, folder.position)
                    self.store.upsert_entity(
                        EntityKind.FOLDER,
                        owner_id,
                        folder.id,
                        {
                            "title": folder.title,
                            "parent_local_id": folder.parent_id,
                            "position": folder.position,
                        },
                        added_at=folder.date_added,
                        instance_id=instance_id,
                        metadata=metadata,
                    )
                for bookmark in bookmarks:
                    self._check_entry(
                        bookmark.id, bookmark.title, bookmark.position
                    )
                    _require(validate_url(bookmark.url))
                    self.store.upsert_entity(
                        EntityKind.BOOKMARK,
                        owner_id,
                        bookmark.id,
                        {
                            "title": bookmark.title,
                            "url": bookmark.url,
                            "parent_local_id": bookmark.parent_id,
                            "position": bookmark.position,
                        },
                        added_at=bookmark.date_added,
                        instance_id=instance_id,
                        metadata=metadata,
                    )
                if metadata is not None:
                    self.store.upsert_client_instance(metadata)
                self.store.append_history(
                    owner_id,
                    HistoryKind.INITIAL_IMPORT,
                    total,
                    HistoryStatus.SUCCESS,
                    instance_id=instance_id,
                    bookmarks_processed=len(bookmarks),
                    folders_processed=len(folders),
                    metadata=metadata,
                )
        except Exception as exc:
            logger.error(
                "Initial import failed for owner %s: %s", owner_id, exc
            )
            self._record_failed_import(owner_id, total, instance_id, exc)
            raise IngestFatalError(
                f"Initial import failed: {exc}"
            ) from exc

        logger.info(
            "Initial import for owner %s: %d folders, %d bookmarks",
            owner_id,
            len(folders),
            len(bookmarks),
        )
        return SubmitResult(
            outcome=SyncOutcome.INITIAL_IMPORT_COMPLETE,
            changes_applied=total,
            imported=Imported(folders=len(folders), bookmarks=len(bookmarks)),
            cursor=cursor,
        )

    def _record_failed_import(
        self,
        owner_id: str,
        total: int,
        instance_id: str | None,
        exc: Exception,
    ) -> None:
        try:
            self.store.append_history(
                owner_id,
                HistoryKind.INITIAL_IMPORT,
                total,
                HistoryStatus.FAILED,
                instance_id=instance_id,
                errors=[
                    HistoryError(
                        kind=HistoryKind.INITIAL_IMPORT.value,
                        message=str(exc),
                    )
                ],
            )
        except Exception:
            logger.exception(
                "Could not record failed initial import for owner %s",
                owner_id,
            )

    @staticmethod
    def _check_entry(local_id: str, title: str, position: int) -> None:
        _require(validate_local_id(local_id))
        _require(validate_title(title))
        _require(validate_position(position))

    # ------------------------------------------------------------------
    # Incremental batch
    # ------------------------------------------------------------------

    def apply_batch(
        self,
        owner_id: str,
        changes: Sequence[ChangeRecord | dict[str, Any]],
        metadata: DeviceMetadata | None = None,
        instance_id: str | None = None,
        since: str | None = None,
    ) -> SubmitResult:
        """Apply an incremental batch with per-item failure isolation.

        *changes* may hold parsed ``ChangeRecord`` objects or raw wire
        dicts; a dict that fails to parse becomes an item error like any
        other failing change.

        Returns:
            ``NEED_INITIAL_IMPORT`` without touching anything when the
            owner has no entities, else ``SYNC_COMPLETE`` with one result
            per change and the remote changes since *since*.

        Raises:
            ValidationError: If the batch exceeds ``max_changes``.
        """
        if len(changes) > self.max_changes:
            raise ValidationError(
                f"Batch of {len(changes)} changes exceeds the limit of "
                f"{self.max_changes}"
            )
        if self.store.count_by_owner(owner_id) == 0:
            logger.info(
                "Owner %s has no entities; requesting initial import",
                owner_id,
            )
            return SubmitResult(outcome=SyncOutcome.NEED_INITIAL_IMPORT)

        cursor = utc_now()
        instance_id = instance_id or (metadata.instance_id if metadata else None)
        results: list[ItemResult] = []
        errors: list[HistoryError] = []
        processed = {EntityKind.BOOKMARK: 0, EntityKind.FOLDER: 0}

        with self.store.transaction():
            for index, raw in enumerate(changes):
                try:
                    change = _parse_change(raw, index)
                    with self.store.savepoint():
                        version = self._apply_change(
                            owner_id, change, instance_id, metadata
                        )
                except IngestItemError as exc:
                    logger.warning(
                        "Change %s (%s) rejected: %s",
                        exc.item_id,
                        exc.kind,
                        exc.message,
                    )
                    results.append(_item_failure(exc))
                    errors.append(
                        HistoryError(
                            kind=exc.kind,
                            item_id=exc.item_id,
                            message=exc.message,
                        )
                    )
                except Exception as exc:
                    logger.error(
                        "Error applying change %s: %s",
                        change.target_id,
                        exc,
                    )
                    item_error = IngestItemError(
                        change.target_id, change.kind.value, str(exc)
                    )
                    results.append(_item_failure(item_error))
                    errors.append(
                        HistoryError(
                            kind=item_error.kind,
                            item_id=item_error.item_id,
                            message=item_error.message,
                        )
                    )
                else:
                    processed[change.entity_kind] += 1
                    results.append(
                        ItemResult(
                            item_id=change.target_id,
                            kind=change.kind,
                            success=True,
                            version=version,
                        )
                    )

            if metadata is not None:
                self.store.upsert_client_instance(metadata)
            # Recorded as SUCCESS even with item errors; see errors rows.
            self.store.append_history(
                owner_id,
                HistoryKind.SYNC,
                len(changes),
                HistoryStatus.SUCCESS,
                instance_id=instance_id,
                bookmarks_processed=processed[EntityKind.BOOKMARK],
                folders_processed=processed[EntityKind.FOLDER],
                metadata=metadata,
                errors=errors,
            )

        remote = self.store.changes_since(
            owner_id, since, exclude_instance=instance_id, until=cursor
        )
        applied = sum(1 for r in results if r.success)
        logger.info(
            "Batch for owner %s: %d/%d applied, %d remote changes",
            owner_id,
            applied,
            len(changes),
            len(remote),
        )
        return SubmitResult(
            outcome=SyncOutcome.SYNC_COMPLETE,
            changes_applied=applied,
            applied_results=results,
            remote_changes=remote,
            cursor=cursor,
        )

    def _apply_change(
        self,
        owner_id: str,
        change: ChangeRecord,
        instance_id: str | None,
        metadata: DeviceMetadata | None,
    ) -> int:
        """Dispatch one change on its payload tag; returns the new version."""
        target = change.target_id
        entity_kind = change.entity_kind
        meta = change.device_metadata or metadata
        _require_item(change, validate_local_id(target))

        match change.payload:
            case BookmarkCreate() as payload:
                _require_item(change, validate_title(payload.title))
                _require_item(change, validate_url(payload.url))
                _require_item(change, validate_position(payload.position))
                return self.store.upsert_entity(
                    EntityKind.BOOKMARK,
                    owner_id,
                    target,
                    {
                        "title": payload.title,
                        "url": payload.url,
                        "parent_local_id": payload.parent_id,
                        "position": payload.position,
                    },
                    added_at=payload.date_added,
                    instance_id=instance_id,
                    metadata=meta,
                )
            case FolderCreate() as payload:
                _require_item(change, validate_title(payload.title))
                _require_item(change, validate_position(payload.position))
                return self.store.upsert_entity(
                    EntityKind.FOLDER,
                    owner_id,
                    target,
                    {
                        "title": payload.title,
                        "parent_local_id": payload.parent_id,
                        "position": payload.position,
                    },
                    added_at=payload.date_added,
                    instance_id=instance_id,
                    metadata=meta,
                )
            case BookmarkUpdate() | FolderUpdate() as payload:
                fields = payload.model_dump(
                    exclude={"type"}, exclude_none=True
                )
                if not fields:
                    raise _item_error(change, "Update carries no fields")
                _require_item(change, validate_title(fields.get("title")))
                _require_item(change, validate_position(fields.get("position")))
                if "url" in fields:
                    _require_item(change, validate_url(fields["url"]))
                version = self.store.update_entity(
                    entity_kind,
                    owner_id,
                    target,
                    fields,
                    change=ChangeKind.UPDATE,
                    instance_id=instance_id,
                    metadata=meta,
                )
            case EntityMove() as payload:
                _require_item(change, validate_position(payload.position))
                self._check_move_target(change, owner_id, payload.parent_id)
                version = self.store.update_entity(
                    entity_kind,
                    owner_id,
                    target,
                    {
                        "parent_local_id": payload.parent_id,
                        "position": payload.position,
                    },
                    change=ChangeKind.MOVE,
                    instance_id=instance_id,
                    metadata=meta,
                )
            case EntityDelete():
                version = self.store.tombstone(
                    entity_kind,
                    owner_id,
                    target,
                    instance_id=instance_id,
                    metadata=meta,
                )
                # Hosts report a removed folder once for its whole subtree.
                if version is not None and entity_kind == EntityKind.FOLDER:
                    for kind, local_id in self.store.descendant_ids(
                        owner_id, target
                    ):
                        self.store.tombstone(
                            kind,
                            owner_id,
                            local_id,
                            instance_id=instance_id,
                            metadata=meta,
                        )
            case _:
                raise _item_error(
                    change, f"Unsupported payload '{change.payload.type}'"
                )

        if version is None:
            raise _item_error(
                change, f"{entity_kind.value.capitalize()} '{target}' not found"
            )
        return version

    def _check_move_target(
        self, change: ChangeRecord, owner_id: str, parent_id: str
    ) -> None:
        """Reject moves that would put a folder inside itself."""
        if parent_id == change.target_id:
            raise _item_error(change, "Cannot move an item into itself")
        if change.entity_kind != EntityKind.FOLDER:
            return
        seen: set[str] = set()
        current: str | None = parent_id
        while current is not None and current not in seen:
            if current == change.target_id:
                raise _item_error(
                    change, "Cannot move a folder into its own descendant"
                )
            seen.add(current)
            row = self.store.get_entity(EntityKind.FOLDER, owner_id, current)
            current = row["parent_local_id"] if row else None

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def history(self, owner_id: str, limit: int = 10) -> list[dict]:
        return [
            entry.to_wire()
            for entry in self.store.list_history(owner_id, limit=limit)
        ]

    def stats(self) -> dict[str, Any]:
        return self.store.stats()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _require(check: tuple[bool, str]) -> None:
    valid, message = check
    if not valid:
        raise ValueError(message)


def _require_item(change: ChangeRecord, check: tuple[bool, str]) -> None:
    valid, message = check
    if not valid:
        raise _item_error(change, message)


def _item_error(change: ChangeRecord, message: str) -> IngestItemError:
    return IngestItemError(change.target_id, change.kind.value, message)


def _item_failure(exc: IngestItemError) -> ItemResult:
    kind = exc.kind if exc.kind in ChangeKind.__members__ else None
    return ItemResult(
        item_id=exc.item_id,
        kind=ChangeKind(kind) if kind else None,
        success=False,
        error=exc.message,
    )


def _parse_change(raw: ChangeRecord | dict[str, Any], index: int) -> ChangeRecord:
    if isinstance(raw, ChangeRecord):
        return raw
    if not isinstance(raw, dict):
        raise IngestItemError(f"#{index}", "UNKNOWN", "Change must be an object")
    try:
        return ChangeRecord.model_validate(raw)
    except PydanticValidationError as exc:
        item_id = str(raw.get("targetId") or raw.get("id") or f"#{index}")
        kind = str(raw.get("type") or "UNKNOWN")
        message = "; ".join(err["msg"] for err in exc.errors())
        raise IngestItemError(item_id, kind, f"Invalid change: {message}") from exc
