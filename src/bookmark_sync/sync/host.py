"""Host bookmark tree interface.

The sync engine never owns the bookmark tree.  It talks to a *host*
(a browser extension bridge, a file, a test double) through the
``BookmarkHost`` protocol:

- the host raises ``TreeEvent`` notifications for every mutation, whoever
  caused it, through a listener registered with ``subscribe()``;
- the engine applies remote changes back with ``create``/``update``/
  ``move``/``remove``;
- ``get_tree()`` returns the whole tree for an initial import.

``MemoryBookmarkTree`` is a complete in-memory host that can be loaded
from and saved to a JSON document.  The command-line agent and the tests
use it.
"""

from __future__ import annotations

import json
import logging
import platform
import uuid
from collections.abc import Callable
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import BaseModel

from .models import EntityKind

logger = logging.getLogger(__name__)


class TreeEventType(str, Enum):
    CREATED = "created"
    CHANGED = "changed"
    MOVED = "moved"
    REMOVED = "removed"


class TreeEvent(BaseModel):
    """A host mutation notification.

    Attributes:
        event: What happened to the node.
        node_id: Host node id.
        entity_kind: ``bookmark`` or ``folder``; inferred from ``url`` when
            the host does not say.
        parent_id: Parent after the mutation (before it, for ``removed``).
        index: Position within the parent after the mutation.
        old_parent_id: Parent before a move.
        old_index: Position before a move.
        title: Node title, for ``created`` and ``changed``.
        url: Bookmark URL, for ``created`` and ``changed``.
        date_added: Creation time in epoch milliseconds.
        timestamp: ISO 8601 time of the notification.
    """

    event: TreeEventType
    node_id: str
    entity_kind: EntityKind | None = None
    parent_id: str | None = None
    index: int | None = None
    old_parent_id: str | None = None
    old_index: int | None = None
    title: str | None = None
    url: str | None = None
    date_added: int | None = None
    timestamp: str | None = None

    model_config = {"frozen": True}


class BookmarkNode(BaseModel):
    """One node of a host tree snapshot; folders have ``url=None``."""

    id: str
    title: str = ""
    url: str | None = None
    parent_id: str | None = None
    index: int = 0
    date_added: int | None = None
    children: list[BookmarkNode] = []

    @property
    def kind(self) -> EntityKind:
        return EntityKind.FOLDER if self.url is None else EntityKind.BOOKMARK


TreeListener = Callable[[TreeEvent], None]


@runtime_checkable
class BookmarkHost(Protocol):
    """Operations the sync engine needs from the host tree."""

    def subscribe(self, listener: TreeListener) -> None: ...

    async def get_tree(self) -> list[BookmarkNode]: ...

    async def get_node(self, node_id: str) -> BookmarkNode | None: ...

    async def create(
        self,
        node_id: str,
        parent_id: str | None,
        title: str,
        url: str | None = None,
        index: int | None = None,
    ) -> str: ...

    async def update(
        self, node_id: str, title: str | None = None, url: str | None = None
    ) -> None: ...

    async def move(
        self, node_id: str, parent_id: str | None, index: int | None = None
    ) -> None: ...

    async def remove(self, node_id: str) -> None: ...

    def client_info(self) -> dict[str, str | None]: ...


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


class MemoryBookmarkTree:
    """In-memory ``BookmarkHost`` that emits events like a browser does.

    Nodes are kept in a flat dict; ordering lives in per-parent child
    lists (``None`` is the list of roots).  Every mutation, including
    those made by the sync engine, notifies all listeners.
    """

    def __init__(
        self,
        browser_name: str | None = "memory",
        browser_version: str | None = None,
    ) -> None:
        self._nodes: dict[str, dict] = {}
        self._children: dict[str | None, list[str]] = {None: []}
        self._listeners: list[TreeListener] = []
        self.browser_name = browser_name
        self.browser_version = browser_version

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def subscribe(self, listener: TreeListener) -> None:
        self._listeners.append(listener)

    def _emit(self, event: TreeEvent) -> None:
        for listener in list(self._listeners):
            listener(event)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def walk(self) -> list[str]:
        """All node ids, depth-first, parents before children."""
        order: list[str] = []
        stack = list(reversed(self._children[None]))
        while stack:
            node_id = stack.pop()
            order.append(node_id)
            stack.extend(reversed(self._children.get(node_id, [])))
        return order

    def children_of(self, parent_id: str | None) -> list[str]:
        return list(self._children.get(parent_id, []))

    def snapshot(self, node_id: str) -> BookmarkNode:
        data = self._nodes[node_id]
        siblings = self._children.get(data["parent_id"], [])
        return BookmarkNode(
            id=node_id,
            title=data["title"],
            url=data["url"],
            parent_id=data["parent_id"],
            index=siblings.index(node_id),
            date_added=data["date_added"],
            children=[self.snapshot(c) for c in self._children.get(node_id, [])],
        )

    async def get_tree(self) -> list[BookmarkNode]:
        return [self.snapshot(root) for root in self._children[None]]

    async def get_node(self, node_id: str) -> BookmarkNode | None:
        if node_id not in self._nodes:
            return None
        return self.snapshot(node_id)

    def client_info(self) -> dict[str, str | None]:
        return {
            "browser_name": self.browser_name,
            "browser_version": self.browser_version,
            "user_agent": f"bookmark-sync/{platform.python_version()}",
        }

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def create(
        self,
        node_id: str | None,
        parent_id: str | None,
        title: str,
        url: str | None = None,
        index: int | None = None,
        date_added: int | None = None,
    ) -> str:
        node_id = node_id or uuid.uuid4().hex[:12]
        if node_id in self._nodes:
            raise ValueError(f"Node '{node_id}' already exists")
        self._require_folder(parent_id)
        self._nodes[node_id] = {
            "title": title,
            "url": url,
            "parent_id": parent_id,
            "date_added": date_added or _now_ms(),
        }
        if url is None:
            self._children[node_id] = []
        position = self._insert(parent_id, node_id, index)
        self._emit(
            TreeEvent(
                event=TreeEventType.CREATED,
                node_id=node_id,
                entity_kind=(
                    EntityKind.FOLDER if url is None else EntityKind.BOOKMARK
                ),
                parent_id=parent_id,
                index=position,
                title=title,
                url=url,
                date_added=self._nodes[node_id]["date_added"],
                timestamp=_now_iso(),
            )
        )
        return node_id

    async def update(
        self, node_id: str, title: str | None = None, url: str | None = None
    ) -> None:
        data = self._get(node_id)
        if url is not None and data["url"] is None:
            raise ValueError(f"Folder '{node_id}' cannot have a URL")
        if title is not None:
            data["title"] = title
        if url is not None:
            data["url"] = url
        self._emit(
            TreeEvent(
                event=TreeEventType.CHANGED,
                node_id=node_id,
                entity_kind=self._kind(node_id),
                parent_id=data["parent_id"],
                index=self._index(node_id),
                title=data["title"],
                url=data["url"],
                timestamp=_now_iso(),
            )
        )

    async def move(
        self, node_id: str, parent_id: str | None, index: int | None = None
    ) -> None:
        data = self._get(node_id)
        self._require_folder(parent_id)
        ancestor = parent_id
        while ancestor is not None:
            if ancestor == node_id:
                raise ValueError("Cannot move a folder into itself")
            ancestor = self._nodes[ancestor]["parent_id"]

        old_parent = data["parent_id"]
        old_index = self._index(node_id)
        self._children[old_parent].remove(node_id)
        data["parent_id"] = parent_id
        position = self._insert(parent_id, node_id, index)
        self._emit(
            TreeEvent(
                event=TreeEventType.MOVED,
                node_id=node_id,
                entity_kind=self._kind(node_id),
                parent_id=parent_id,
                index=position,
                old_parent_id=old_parent,
                old_index=old_index,
                timestamp=_now_iso(),
            )
        )

    async def remove(self, node_id: str) -> None:
        """Remove a node and its whole subtree; one event for the root."""
        data = self._get(node_id)
        kind = self._kind(node_id)
        index = self._index(node_id)
        self._children[data["parent_id"]].remove(node_id)
        self._drop_subtree(node_id)
        self._emit(
            TreeEvent(
                event=TreeEventType.REMOVED,
                node_id=node_id,
                entity_kind=kind,
                parent_id=data["parent_id"],
                index=index,
                timestamp=_now_iso(),
            )
        )

    def _drop_subtree(self, node_id: str) -> None:
        for child in self._children.pop(node_id, []):
            self._drop_subtree(child)
        del self._nodes[node_id]

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _get(self, node_id: str) -> dict:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise KeyError(f"Node '{node_id}' not found") from None

    def _kind(self, node_id: str) -> EntityKind:
        if self._nodes[node_id]["url"] is None:
            return EntityKind.FOLDER
        return EntityKind.BOOKMARK

    def _index(self, node_id: str) -> int:
        parent = self._nodes[node_id]["parent_id"]
        return self._children[parent].index(node_id)

    def _require_folder(self, parent_id: str | None) -> None:
        if parent_id is None:
            return
        if parent_id not in self._nodes:
            raise KeyError(f"Parent '{parent_id}' not found")
        if self._nodes[parent_id]["url"] is not None:
            raise ValueError(f"Parent '{parent_id}' is not a folder")

    def _insert(self, parent_id: str | None, node_id: str, index: int | None) -> int:
        siblings = self._children.setdefault(parent_id, [])
        if index is None or index > len(siblings):
            index = len(siblings)
        siblings.insert(max(index, 0), node_id)
        return siblings.index(node_id)

    # ------------------------------------------------------------------
    # JSON persistence
    # ------------------------------------------------------------------

    def to_dict(self) -> dict:
        return {
            "roots": [
                self.snapshot(root).model_dump(exclude={"parent_id", "index"})
                for root in self._children[None]
            ]
        }

    def save(self, path: Path) -> None:
        Path(path).write_text(
            json.dumps(self.to_dict(), indent=2), encoding="utf-8"
        )

    @classmethod
    def from_dict(cls, data: dict, **kwargs) -> MemoryBookmarkTree:
        """Build a tree from ``{"roots": [node, ...]}`` without emitting events."""
        tree = cls(**kwargs)

        def _add(raw: dict, parent_id: str | None) -> None:
            node_id = str(raw["id"])
            url = raw.get("url")
            tree._nodes[node_id] = {
                "title": raw.get("title", ""),
                "url": url,
                "parent_id": parent_id,
                "date_added": raw.get("date_added"),
            }
            tree._children.setdefault(parent_id, []).append(node_id)
            if url is None:
                tree._children[node_id] = []
                for child in raw.get("children", []):
                    _add(child, node_id)

        for root in data.get("roots", []):
            _add(root, None)
        return tree

    @classmethod
    def load(cls, path: Path, **kwargs) -> MemoryBookmarkTree:
        with open(path, encoding="utf-8") as fh:
            return cls.from_dict(json.load(fh), **kwargs)


def diff_trees(
    old: MemoryBookmarkTree, new: MemoryBookmarkTree
) -> list[TreeEvent]:
    """Derive the notifications that turn *old* into *new*.

    Used when the tree lives in a file edited outside the agent: the last
    synced snapshot is compared with the current file.  Creations are
    emitted parents first; removals only for the top-most removed node,
    as a host would report them.
    """
    events: list[TreeEvent] = []
    now = _now_iso()

    for node_id in new.walk():
        data = new._nodes[node_id]
        if node_id not in old:
            events.append(
                TreeEvent(
                    event=TreeEventType.CREATED,
                    node_id=node_id,
                    entity_kind=new._kind(node_id),
                    parent_id=data["parent_id"],
                    index=new._index(node_id),
                    title=data["title"],
                    url=data["url"],
                    date_added=data["date_added"],
                    timestamp=now,
                )
            )
            continue

        before = old._nodes[node_id]
        if before["title"] != data["title"] or before["url"] != data["url"]:
            events.append(
                TreeEvent(
                    event=TreeEventType.CHANGED,
                    node_id=node_id,
                    entity_kind=new._kind(node_id),
                    parent_id=data["parent_id"],
                    index=new._index(node_id),
                    title=data["title"],
                    url=data["url"],
                    timestamp=now,
                )
            )
        old_index, index = old._index(node_id), new._index(node_id)
        if before["parent_id"] != data["parent_id"] or old_index != index:
            events.append(
                TreeEvent(
                    event=TreeEventType.MOVED,
                    node_id=node_id,
                    entity_kind=new._kind(node_id),
                    parent_id=data["parent_id"],
                    index=index,
                    old_parent_id=before["parent_id"],
                    old_index=old_index,
                    timestamp=now,
                )
            )

    for node_id in old.walk():
        if node_id in new:
            continue
        parent = old._nodes[node_id]["parent_id"]
        if parent is None or parent in new:
            events.append(
                TreeEvent(
                    event=TreeEventType.REMOVED,
                    node_id=node_id,
                    entity_kind=old._kind(node_id),
                    parent_id=parent,
                    index=old._index(node_id),
                    timestamp=now,
                )
            )
    return events
