"""Pydantic models for the bookmark sync engine.

Defines the data contracts shared by the local agent and the ingest
server:

- ``ChangeKind`` / ``EntityKind``: what happened, and to which kind of node.
- Change payloads: a tagged union over the known ``(kind, entity_kind)``
  pairs, discriminated on ``type``.
- ``ChangeRecord``: one captured local mutation.
- ``DeviceIdentity`` / ``DeviceMetadata``: who produced a change.
- Wire results: ``StatusResult``, ``ItemResult``, ``RemoteChange``,
  ``SubmitResult``.
- ``SyncReport``: aggregate outcome of one orchestrator attempt.

All models are frozen.  Wire keys are camelCase (``alias_generator``);
Python code always uses the snake_case field names.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field, model_validator
from pydantic.alias_generators import to_camel

_WIRE_CONFIG = {
    "frozen": True,
    "populate_by_name": True,
    "alias_generator": to_camel,
}


class WireModel(BaseModel):
    """Frozen base model serialised with camelCase keys on the wire."""

    model_config = _WIRE_CONFIG

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class ChangeKind(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    MOVE = "MOVE"


class EntityKind(str, Enum):
    BOOKMARK = "bookmark"
    FOLDER = "folder"


class EntityStatus(str, Enum):
    ACTIVE = "active"
    DELETED = "deleted"


class SyncOutcome(str, Enum):
    """Action reported by the ingest server for a submission."""

    INITIAL_IMPORT_COMPLETE = "INITIAL_IMPORT_COMPLETE"
    SYNC_COMPLETE = "SYNC_COMPLETE"
    NEED_INITIAL_IMPORT = "NEED_INITIAL_IMPORT"


class SyncPhase(str, Enum):
    """States of the sync orchestrator."""

    IDLE = "idle"
    CHECKING_STATUS = "checking_status"
    INITIAL_IMPORT = "initial_import"
    INCREMENTAL_SYNC = "incremental_sync"
    APPLYING_REMOTE = "applying_remote"
    ERROR = "error"


class HistoryKind(str, Enum):
    INITIAL_IMPORT = "INITIAL_IMPORT"
    SYNC = "SYNC"


class HistoryStatus(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    PARTIAL = "PARTIAL"


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


class DeviceIdentity(WireModel):
    """Owner and instance ids, generated once and persisted by the agent.

    Attributes:
        owner_id: Stable id of the user owning the bookmark tree.
        instance_id: Stable id of this agent installation.
    """

    owner_id: str
    instance_id: str


class DeviceMetadata(WireModel):
    """Descriptive metadata attached to every change and submission."""

    instance_id: str
    owner_id: str
    device_id: str | None = None
    browser_name: str | None = None
    browser_version: str | None = None
    os: str | None = None
    os_version: str | None = None
    user_agent: str | None = None
    timestamp: str | None = None


# ---------------------------------------------------------------------------
# Change payloads (tagged union)
# ---------------------------------------------------------------------------


class BookmarkCreate(WireModel):
    type: Literal["bookmark_create"] = "bookmark_create"
    title: str = ""
    url: str
    parent_id: str | None = None
    position: int = 0
    date_added: int | None = None


class FolderCreate(WireModel):
    type: Literal["folder_create"] = "folder_create"
    title: str = ""
    parent_id: str | None = None
    position: int = 0
    date_added: int | None = None


class BookmarkUpdate(WireModel):
    type: Literal["bookmark_update"] = "bookmark_update"
    title: str | None = None
    url: str | None = None
    position: int | None = None


class FolderUpdate(WireModel):
    type: Literal["folder_update"] = "folder_update"
    title: str | None = None
    position: int | None = None


class EntityMove(WireModel):
    type: Literal["move"] = "move"
    parent_id: str
    position: int = 0
    old_parent_id: str | None = None
    old_position: int | None = None


class EntityDelete(WireModel):
    type: Literal["delete"] = "delete"
    parent_id: str | None = None
    position: int | None = None


ChangePayload = Annotated[
    Union[
        BookmarkCreate,
        FolderCreate,
        BookmarkUpdate,
        FolderUpdate,
        EntityMove,
        EntityDelete,
    ],
    Field(discriminator="type"),
]

# Payload tag expected for each (kind, entity_kind) pair.
PAYLOAD_TAGS: dict[tuple[ChangeKind, EntityKind], str] = {
    (ChangeKind.CREATE, EntityKind.BOOKMARK): "bookmark_create",
    (ChangeKind.CREATE, EntityKind.FOLDER): "folder_create",
    (ChangeKind.UPDATE, EntityKind.BOOKMARK): "bookmark_update",
    (ChangeKind.UPDATE, EntityKind.FOLDER): "folder_update",
    (ChangeKind.MOVE, EntityKind.BOOKMARK): "move",
    (ChangeKind.MOVE, EntityKind.FOLDER): "move",
    (ChangeKind.DELETE, EntityKind.BOOKMARK): "delete",
    (ChangeKind.DELETE, EntityKind.FOLDER): "delete",
}


class ChangeRecord(WireModel):
    """One captured local mutation, queued until the server acknowledges it.

    Attributes:
        id: Queue-assigned record id (uuid4 hex).
        kind: CREATE, UPDATE, DELETE or MOVE.
        entity_kind: ``bookmark`` or ``folder``.
        target_id: Host node id the change applies to.
        payload: Kind-specific payload; its ``type`` tag must match
            ``PAYLOAD_TAGS[(kind, entity_kind)]``.
        captured_at: ISO 8601 timestamp of the host notification.
        device_metadata: Metadata of the capturing agent.
    """

    id: str
    kind: ChangeKind = Field(alias="type")
    entity_kind: EntityKind
    target_id: str
    payload: ChangePayload = Field(alias="data")
    captured_at: str
    device_metadata: DeviceMetadata | None = Field(
        default=None, alias="metadata"
    )

    @model_validator(mode="after")
    def _check_payload_tag(self) -> ChangeRecord:
        expected = PAYLOAD_TAGS[(self.kind, self.entity_kind)]
        if self.payload.type != expected:
            raise ValueError(
                f"{self.kind.value} {self.entity_kind.value} change "
                f"requires a '{expected}' payload, got '{self.payload.type}'"
            )
        return self


# ---------------------------------------------------------------------------
# Initial import entries
# ---------------------------------------------------------------------------


class FolderData(WireModel):
    id: str
    title: str = ""
    parent_id: str | None = None
    position: int = 0
    date_added: int | None = None


class BookmarkData(WireModel):
    id: str
    title: str = ""
    url: str
    parent_id: str | None = None
    position: int = 0
    date_added: int | None = None


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class BatchRequest(WireModel):
    """Incremental batch submitted to ``POST /api/v1/sync``."""

    owner_id: str
    instance_id: str | None = None
    changes: list[ChangeRecord] = []
    since: str | None = None
    timestamp: str | None = None
    metadata: DeviceMetadata | None = None


class InitialImportRequest(WireModel):
    """Full tree upload submitted to ``POST /api/v1/sync/initial``."""

    owner_id: str
    instance_id: str | None = None
    folders: list[FolderData] = []
    bookmarks: list[BookmarkData] = []
    metadata: DeviceMetadata | None = None


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class Counts(WireModel):
    adds: int = 0
    updates: int = 0
    moves: int = 0
    deletes: int = 0

    @property
    def total(self) -> int:
        return self.adds + self.updates + self.moves + self.deletes


class StatusResult(WireModel):
    needs_initial_import: bool = Field(alias="needsInitialSync")
    remote_pending: Counts = Field(
        default_factory=Counts, alias="pendingChanges"
    )


class ItemResult(WireModel):
    """Outcome of one change in a batch.

    Attributes:
        item_id: ``target_id`` of the change.
        kind: Change kind, when it could be parsed.
        success: ``False`` when the change raised an item error.
        version: Entity version after the write, on success.
        error: Failure message, on error.
    """

    item_id: str
    kind: ChangeKind | None = None
    success: bool = True
    version: int | None = None
    error: str | None = None


class RemoteChange(WireModel):
    """Current server state of an entity changed by another instance."""

    entity_kind: EntityKind
    target_id: str
    title: str = ""
    url: str | None = None
    parent_id: str | None = None
    position: int = 0
    status: EntityStatus = EntityStatus.ACTIVE
    version: int = 1
    updated_at: str | None = None

    @property
    def deleted(self) -> bool:
        return self.status == EntityStatus.DELETED


class Imported(WireModel):
    folders: int = 0
    bookmarks: int = 0


class SubmitResult(WireModel):
    """Parsed ``data`` of a successful submission response."""

    outcome: SyncOutcome = Field(alias="action")
    changes_applied: int = 0
    applied_results: list[ItemResult] = Field(
        default_factory=list, alias="results"
    )
    remote_changes: list[RemoteChange] = Field(
        default_factory=list, alias="changes"
    )
    imported: Imported | None = None
    cursor: str | None = None


class HistoryError(WireModel):
    kind: str
    item_id: str | None = None
    message: str


class HistoryEntry(WireModel):
    id: int
    owner_id: str
    instance_id: str | None = None
    kind: HistoryKind
    changes_count: int
    status: HistoryStatus
    bookmarks_processed: int = 0
    folders_processed: int = 0
    created_at: str
    errors: list[HistoryError] = []


# ---------------------------------------------------------------------------
# Orchestrator report
# ---------------------------------------------------------------------------


class SyncReport(BaseModel):
    """Aggregate report for one orchestrator attempt.

    Attributes:
        outcome: Final server action for the attempt.
        owner_id: Owner the attempt ran for.
        started_at: ISO 8601 timestamp when the attempt started.
        completed_at: ISO 8601 timestamp when it finished.
        changes_sent: Number of queued changes submitted.
        acknowledged: Number of queued changes removed after success.
        applied_results: Per-item results returned by the server.
        remote_applied: Remote changes applied through the host.
        remote_failed: Error messages for remote changes that failed.
        imported: Counts for an initial import, if one ran.
    """

    outcome: SyncOutcome
    owner_id: str
    started_at: str
    completed_at: str | None = None
    changes_sent: int = 0
    acknowledged: int = 0
    applied_results: list[ItemResult] = []
    remote_applied: int = 0
    remote_failed: list[str] = []
    imported: Imported | None = None

    model_config = {"frozen": True}

    @property
    def item_errors(self) -> list[ItemResult]:
        return [r for r in self.applied_results if not r.success]

    @property
    def item_successes(self) -> list[ItemResult]:
        return [r for r in self.applied_results if r.success]

    @property
    def clean(self) -> bool:
        """True when no item or remote apply-back failed."""
        return not self.item_errors and not self.remote_failed

    def summary(self) -> str:
        """Return a one-line summary string."""
        if self.outcome == SyncOutcome.INITIAL_IMPORT_COMPLETE:
            imported = self.imported or Imported()
            return (
                f"Initial import: {imported.folders} folders, "
                f"{imported.bookmarks} bookmarks"
            )
        return (
            f"Sync: {self.changes_sent} sent, "
            f"{len(self.item_errors)} rejected, "
            f"{self.remote_applied} remote applied, "
            f"{len(self.remote_failed)} remote failed"
        )
