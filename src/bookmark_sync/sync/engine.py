"""Sync orchestrator: one negotiated sync attempt at a time.

``SyncOrchestrator.sync()`` drives the state machine::

    IDLE -> CHECKING_STATUS -> INITIAL_IMPORT | INCREMENTAL_SYNC
         -> APPLYING_REMOTE -> IDLE

``ERROR`` is entered from any state when the attempt fails, and the
orchestrator always returns to ``IDLE`` afterwards, including when the
awaiting task is cancelled.

1. Drains pending host notifications into the queue.
2. Asks the server whether the owner needs an initial import.
3. Either uploads the whole host tree, or submits every pending change
   as one batch.  A batch answered with ``NEED_INITIAL_IMPORT`` falls
   back to an initial import.
4. Acknowledges exactly the records that were submitted, advances
   ``last_sync`` and the remote cursor.
5. Applies remote changes through the host, one at a time, with echo
   suppression armed for the target node.

Error handling: a transport failure aborts the attempt and acknowledges
nothing.  A remote change that cannot be applied is logged and recorded
in the report; the remaining changes are still applied.
"""

from __future__ import annotations

import asyncio
import logging
import platform
from datetime import datetime, timezone

from ..core.async_utils import run_sync
from ..core.client import SyncClient
from ..errors import SyncInProgressError, TransportError
from .capture import ChangeCapture
from .host import BookmarkHost, BookmarkNode
from .models import (
    BatchRequest,
    BookmarkData,
    DeviceIdentity,
    DeviceMetadata,
    EntityKind,
    FolderData,
    InitialImportRequest,
    RemoteChange,
    SyncOutcome,
    SyncPhase,
    SyncReport,
)
from .state import LocalQueueStore

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def flatten_tree(
    roots: list[BookmarkNode],
) -> tuple[list[FolderData], list[BookmarkData]]:
    """Flatten a host tree into folder and bookmark lists.

    Walks depth-first so every folder precedes its descendants; each entry
    keeps its parent id and its index within the parent.
    """
    folders: list[FolderData] = []
    bookmarks: list[BookmarkData] = []

    def _walk(node: BookmarkNode, parent_id: str | None, index: int) -> None:
        if node.kind == EntityKind.FOLDER:
            folders.append(
                FolderData(
                    id=node.id,
                    title=node.title,
                    parent_id=parent_id,
                    position=index,
                    date_added=node.date_added,
                )
            )
            for child_index, child in enumerate(node.children):
                _walk(child, node.id, child_index)
        else:
            bookmarks.append(
                BookmarkData(
                    id=node.id,
                    title=node.title,
                    url=node.url or "",
                    parent_id=parent_id,
                    position=index,
                    date_added=node.date_added,
                )
            )

    for root_index, root in enumerate(roots):
        _walk(root, root.parent_id, root_index)
    return folders, bookmarks


class SyncOrchestrator:
    """Run sync attempts for one agent.

    Args:
        client: Transport client for the ingest server.
        queue_store: Durable local queue and identity store.
        host: Host bookmark tree.
        capture: Change capture attached to *host*.
        owner_scope: ``"owner"`` scopes server entities by owner id,
            ``"instance"`` by instance id.
        owner_seed: Owner id used if the identity does not exist yet.
        browser_name: Overrides the host-reported browser name.
        browser_version: Overrides the host-reported browser version.
    """

    def __init__(
        self,
        client: SyncClient,
        queue_store: LocalQueueStore,
        host: BookmarkHost,
        capture: ChangeCapture,
        owner_scope: str = "owner",
        owner_seed: str | None = None,
        browser_name: str | None = None,
        browser_version: str | None = None,
    ) -> None:
        self.client = client
        self.queue_store = queue_store
        self.host = host
        self.capture = capture
        self.owner_scope = owner_scope
        self.owner_seed = owner_seed
        self.browser_name = browser_name
        self.browser_version = browser_version
        self.state = SyncPhase.IDLE
        self._identity: DeviceIdentity | None = None

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    @property
    def identity(self) -> DeviceIdentity:
        if self._identity is None:
            self._identity = self.queue_store.get_identity(self.owner_seed)
        return self._identity

    @property
    def owner_id(self) -> str:
        """Id that scopes this agent's entities on the server."""
        if self.owner_scope == "instance":
            return self.identity.instance_id
        return self.identity.owner_id

    def device_metadata(self) -> DeviceMetadata:
        info = self.host.client_info()
        return DeviceMetadata(
            instance_id=self.identity.instance_id,
            owner_id=self.identity.owner_id,
            device_id=platform.node() or None,
            browser_name=self.browser_name or info.get("browser_name"),
            browser_version=self.browser_version or info.get("browser_version"),
            os=platform.system() or None,
            os_version=platform.release() or None,
            user_agent=info.get("user_agent"),
            timestamp=_now(),
        )

    # ------------------------------------------------------------------
    # Main entry point
    # ------------------------------------------------------------------

    async def sync(self) -> SyncReport:
        """Run one sync attempt.

        Returns:
            A ``SyncReport``; per-item server rejections are listed in
            ``applied_results`` for the caller to judge.

        Raises:
            SyncInProgressError: If an attempt is already running.
            TransportError: If the server could not be reached or
                rejected a request.  Nothing was acknowledged.
        """
        if self.state != SyncPhase.IDLE:
            raise SyncInProgressError(
                f"Sync already in progress (state: {self.state.value})"
            )

        started_at = _now()
        self._transition(SyncPhase.CHECKING_STATUS)
        try:
            await self.capture.drain()
            status = await run_sync(
                self.client.status,
                self.owner_id,
                self.identity.instance_id,
                self.queue_store.get_cursor(),
            )
            if status.needs_initial_import:
                return await self._initial_import(started_at)
            return await self._incremental_sync(started_at)
        except asyncio.CancelledError:
            self._transition(SyncPhase.ERROR)
            logger.warning("Sync attempt cancelled")
            raise
        except Exception as exc:
            self._transition(SyncPhase.ERROR)
            logger.error("Sync attempt failed: %s", exc)
            raise
        finally:
            self._transition(SyncPhase.IDLE)

    def _transition(self, phase: SyncPhase) -> None:
        if phase != self.state:
            logger.debug("Sync state %s -> %s", self.state.value, phase.value)
        self.state = phase

    # ------------------------------------------------------------------
    # Initial import
    # ------------------------------------------------------------------

    async def _initial_import(self, started_at: str) -> SyncReport:
        self._transition(SyncPhase.INITIAL_IMPORT)
        # Records queued before the snapshot are superseded by it.
        superseded = [c.id for c in self.queue_store.list_pending()]
        folders, bookmarks = flatten_tree(await self.host.get_tree())
        logger.info(
            "Uploading initial import: %d folders, %d bookmarks",
            len(folders),
            len(bookmarks),
        )
        request = InitialImportRequest(
            owner_id=self.owner_id,
            instance_id=self.identity.instance_id,
            folders=folders,
            bookmarks=bookmarks,
            metadata=self.device_metadata(),
        )
        result = await run_sync(self.client.submit, request)
        if result.outcome != SyncOutcome.INITIAL_IMPORT_COMPLETE:
            raise TransportError(
                f"Unexpected initial import outcome {result.outcome.value}"
            )

        dropped = self.queue_store.acknowledge(superseded)
        self.queue_store.set_last_sync()
        if result.cursor is not None:
            self.queue_store.set_cursor(result.cursor)
        return SyncReport(
            outcome=result.outcome,
            owner_id=self.owner_id,
            started_at=started_at,
            completed_at=_now(),
            acknowledged=dropped,
            imported=result.imported,
        )

    # ------------------------------------------------------------------
    # Incremental sync
    # ------------------------------------------------------------------

    async def _incremental_sync(self, started_at: str) -> SyncReport:
        self._transition(SyncPhase.INCREMENTAL_SYNC)
        batch = self.queue_store.list_pending()
        request = BatchRequest(
            owner_id=self.owner_id,
            instance_id=self.identity.instance_id,
            changes=batch,
            since=self.queue_store.get_cursor(),
            timestamp=_now(),
            metadata=self.device_metadata(),
        )
        logger.info("Submitting batch of %d change(s)", len(batch))
        result = await run_sync(self.client.submit, request)

        if result.outcome == SyncOutcome.NEED_INITIAL_IMPORT:
            logger.warning(
                "Server has no entities for %s; falling back to initial import",
                self.owner_id,
            )
            return await self._initial_import(started_at)

        # Records captured while the batch was in flight stay queued.
        acknowledged = self.queue_store.acknowledge([c.id for c in batch])
        self.queue_store.set_last_sync()

        for item in result.applied_results:
            if not item.success:
                logger.warning(
                    "Server rejected %s for %s: %s",
                    item.kind.value if item.kind else "change",
                    item.item_id,
                    item.error,
                )

        applied, failed = await self._apply_remote(result.remote_changes)
        # The cursor only moves once every remote change is in the host;
        # otherwise the next attempt fetches the failed ones again.
        if result.cursor is not None and not failed:
            self.queue_store.set_cursor(result.cursor)
        elif failed:
            logger.warning(
                "Keeping cursor %s so %d failed remote change(s) are fetched again",
                self.queue_store.get_cursor(),
                len(failed),
            )
        return SyncReport(
            outcome=result.outcome,
            owner_id=self.owner_id,
            started_at=started_at,
            completed_at=_now(),
            changes_sent=len(batch),
            acknowledged=acknowledged,
            applied_results=result.applied_results,
            remote_applied=applied,
            remote_failed=failed,
        )

    # ------------------------------------------------------------------
    # Apply-back
    # ------------------------------------------------------------------

    async def _apply_remote(
        self, changes: list[RemoteChange]
    ) -> tuple[int, list[str]]:
        if not changes:
            return 0, []
        self._transition(SyncPhase.APPLYING_REMOTE)
        applied = 0
        remaining = list(changes)
        # A change can depend on one later in the list (a folder moved
        # under a folder created afterwards); repeat while passes progress.
        while True:
            deferred: list[tuple[RemoteChange, Exception]] = []
            for change in remaining:
                try:
                    async with self.capture.suppress(change.target_id):
                        await self._apply_one(change)
                    applied += 1
                except Exception as exc:
                    deferred.append((change, exc))
            if not deferred or len(deferred) == len(remaining):
                break
            logger.debug("Retrying %d deferred remote change(s)", len(deferred))
            remaining = [change for change, _ in deferred]

        failed: list[str] = []
        for change, exc in deferred:
            logger.error(
                "Error applying remote change to %s: %s",
                change.target_id,
                exc,
            )
            failed.append(f"{change.target_id}: {exc}")
        logger.info(
            "Applied %d remote change(s), %d failed", applied, len(failed)
        )
        return applied, failed

    async def _apply_one(self, change: RemoteChange) -> None:
        """Bring the host node in line with the server's state for it."""
        node = await self.host.get_node(change.target_id)

        if change.deleted:
            if node is not None:
                await self.host.remove(change.target_id)
            return

        is_bookmark = change.entity_kind == EntityKind.BOOKMARK
        if node is None:
            await self.host.create(
                change.target_id,
                change.parent_id,
                change.title,
                url=change.url if is_bookmark else None,
                index=change.position,
            )
            return

        new_url = change.url if is_bookmark and change.url != node.url else None
        if node.title != change.title or new_url is not None:
            await self.host.update(
                change.target_id, title=change.title, url=new_url
            )
        if node.parent_id != change.parent_id or node.index != change.position:
            await self.host.move(
                change.target_id, change.parent_id, change.position
            )
