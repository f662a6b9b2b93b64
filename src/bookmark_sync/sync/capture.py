"""Change capture: host notifications in, durable change records out.

``ChangeCapture.notify`` is the host-facing listener.  It runs the echo
check synchronously, so a notification raised while the engine applies a
remote change for the same node never reaches the inbound queue.  Accepted
notifications are normalized and appended to the local queue store by a
single consumer (``run`` or ``drain``), preserving notification order.

Normalization:

- created  -> CREATE
- changed  -> UPDATE
- moved    -> MOVE when the parent changes; UPDATE carrying the new
  position when only the index within the same parent changes; dropped
  when neither changes
- removed  -> DELETE

A durable append that fails drops the change and logs it; there is no
in-memory fallback.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from pydantic import ValidationError as PydanticValidationError

from ..errors import CaptureError, QueueError
from .host import BookmarkHost, TreeEvent, TreeEventType
from .models import (
    BookmarkCreate,
    BookmarkUpdate,
    ChangeKind,
    ChangeRecord,
    DeviceMetadata,
    EntityDelete,
    EntityKind,
    EntityMove,
    FolderCreate,
    FolderUpdate,
)
from .state import LocalQueueStore, new_record_id

logger = logging.getLogger(__name__)


class ChangeCapture:
    """Turn host notifications into queued ``ChangeRecord``s.

    Args:
        queue_store: Durable queue the records are appended to.
        metadata_factory: Returns the ``DeviceMetadata`` attached to each
            record; ``None`` attaches nothing.
    """

    def __init__(
        self,
        queue_store: LocalQueueStore,
        metadata_factory: Callable[[], DeviceMetadata] | None = None,
    ) -> None:
        self.queue_store = queue_store
        self._metadata_factory = metadata_factory
        self._inbox: asyncio.Queue[TreeEvent] = asyncio.Queue()
        self._suppressed: dict[str, int] = {}
        self.captured = 0
        self.echoes_dropped = 0
        self.rejected = 0

    def attach(self, host: BookmarkHost) -> None:
        host.subscribe(self.notify)

    # ------------------------------------------------------------------
    # Host-facing side
    # ------------------------------------------------------------------

    def notify(self, event: TreeEvent | dict) -> bool:
        """Accept one host notification; returns ``False`` if it was dropped."""
        if not isinstance(event, TreeEvent):
            try:
                event = TreeEvent.model_validate(event)
            except PydanticValidationError as exc:
                self.rejected += 1
                logger.warning(
                    "Dropping malformed notification: %s",
                    CaptureError(str(exc)),
                )
                return False

        if event.node_id in self._suppressed:
            self.echoes_dropped += 1
            logger.debug(
                "Suppressed echo %s for node %s", event.event.value, event.node_id
            )
            return False

        self._inbox.put_nowait(event)
        return True

    @asynccontextmanager
    async def suppress(self, node_id: str) -> AsyncIterator[None]:
        """Drop notifications for *node_id* while the block runs.

        The id is released when the block exits, whether the apply-back
        call succeeded or raised.
        """
        self._suppressed[node_id] = self._suppressed.get(node_id, 0) + 1
        try:
            yield
        finally:
            remaining = self._suppressed[node_id] - 1
            if remaining:
                self._suppressed[node_id] = remaining
            else:
                del self._suppressed[node_id]

    def is_suppressed(self, node_id: str) -> bool:
        return node_id in self._suppressed

    @property
    def backlog(self) -> int:
        return self._inbox.qsize()

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Consume notifications forever (cancel the task to stop)."""
        while True:
            event = await self._inbox.get()
            try:
                self.process(event)
            finally:
                self._inbox.task_done()

    async def drain(self) -> int:
        """Process every notification already queued; returns records captured."""
        before = self.captured
        while not self._inbox.empty():
            event = self._inbox.get_nowait()
            try:
                self.process(event)
            finally:
                self._inbox.task_done()
        return self.captured - before

    def process(self, event: TreeEvent) -> ChangeRecord | None:
        """Normalize and enqueue one event; errors are logged, not raised."""
        try:
            record = self.normalize(event)
        except CaptureError as exc:
            self.rejected += 1
            logger.warning(
                "Dropping %s notification for %s: %s",
                event.event.value,
                event.node_id,
                exc,
            )
            return None
        if record is None:
            return None

        try:
            self.queue_store.enqueue(record)
        except QueueError as exc:
            logger.error(
                "Lost %s change for %s, queue append failed: %s",
                record.kind.value,
                record.target_id,
                exc,
            )
            return None
        self.captured += 1
        return record

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    def normalize(self, event: TreeEvent) -> ChangeRecord | None:
        """Map a notification onto a change record.

        Returns:
            The record, or ``None`` for a move that changes nothing.

        Raises:
            CaptureError: If the notification lacks what its type needs.
        """
        if not event.node_id:
            raise CaptureError("notification has no node id")

        match event.event:
            case TreeEventType.CREATED:
                kind = ChangeKind.CREATE
                entity_kind = event.entity_kind or (
                    EntityKind.FOLDER if event.url is None else EntityKind.BOOKMARK
                )
                if entity_kind == EntityKind.BOOKMARK:
                    if not event.url:
                        raise CaptureError("created bookmark has no url")
                    payload = BookmarkCreate(
                        title=event.title or "",
                        url=event.url,
                        parent_id=event.parent_id,
                        position=event.index or 0,
                        date_added=event.date_added,
                    )
                else:
                    payload = FolderCreate(
                        title=event.title or "",
                        parent_id=event.parent_id,
                        position=event.index or 0,
                        date_added=event.date_added,
                    )
            case TreeEventType.CHANGED:
                kind = ChangeKind.UPDATE
                entity_kind = event.entity_kind or (
                    EntityKind.FOLDER if event.url is None else EntityKind.BOOKMARK
                )
                if event.title is None and event.url is None:
                    raise CaptureError("change notification carries no fields")
                if entity_kind == EntityKind.BOOKMARK:
                    payload = BookmarkUpdate(title=event.title, url=event.url)
                else:
                    if event.title is None:
                        raise CaptureError("folder change carries no title")
                    payload = FolderUpdate(title=event.title)
            case TreeEventType.MOVED:
                entity_kind = self._require_kind(event)
                if event.parent_id is None or event.index is None:
                    raise CaptureError("move notification lacks parent or index")
                if event.parent_id == event.old_parent_id:
                    if event.index == event.old_index:
                        logger.debug("Ignoring no-op move of %s", event.node_id)
                        return None
                    kind = ChangeKind.UPDATE
                    payload = (
                        BookmarkUpdate(position=event.index)
                        if entity_kind == EntityKind.BOOKMARK
                        else FolderUpdate(position=event.index)
                    )
                else:
                    kind = ChangeKind.MOVE
                    payload = EntityMove(
                        parent_id=event.parent_id,
                        position=event.index,
                        old_parent_id=event.old_parent_id,
                        old_position=event.old_index,
                    )
            case TreeEventType.REMOVED:
                kind = ChangeKind.DELETE
                entity_kind = self._require_kind(event)
                payload = EntityDelete(
                    parent_id=event.parent_id, position=event.index
                )
            case _:
                raise CaptureError(f"unknown notification type {event.event}")

        try:
            return ChangeRecord(
                id=new_record_id(),
                kind=kind,
                entity_kind=entity_kind,
                target_id=event.node_id,
                payload=payload,
                captured_at=event.timestamp
                or datetime.now(timezone.utc).isoformat(),
                device_metadata=(
                    self._metadata_factory() if self._metadata_factory else None
                ),
            )
        except PydanticValidationError as exc:
            raise CaptureError(str(exc)) from exc

    @staticmethod
    def _require_kind(event: TreeEvent) -> EntityKind:
        if event.entity_kind is None:
            raise CaptureError(
                f"{event.event.value} notification has no entity kind"
            )
        return event.entity_kind
