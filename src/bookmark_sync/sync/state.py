"""Local queue store: durable change queue and agent identity.

Everything the agent must survive a restart with lives in one JSON file,
``<state_dir>/agent_state.json``:

* ``changes`` -- unacknowledged ``ChangeRecord`` wire dicts, FIFO.
* ``identity`` -- owner and instance ids, generated once.
* ``last_sync`` / ``cursor`` -- bookkeeping for incremental syncs.

Key design choices:

* **Atomic writes** -- every mutation writes a temp file then calls
  ``os.replace()`` so readers never see partial data.
* **No silent recovery** -- an unreadable or corrupt state file raises
  ``QueueError``; it is never replaced with an empty queue.
* **Write before publish** -- the in-memory copy is only updated after the
  file write succeeded, so a failed ``enqueue`` leaves no trace.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
import uuid
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from ..errors import QueueError
from .models import ChangeKind, ChangeRecord, Counts, DeviceIdentity

logger = logging.getLogger(__name__)

STATE_FILENAME = "agent_state.json"
STATE_VERSION = 1


def new_record_id() -> str:
    return uuid.uuid4().hex


class LocalQueueStore:
    """Durable FIFO of captured changes plus agent identity.

    Args:
        state_dir: Directory for the state file (created on first write).
    """

    def __init__(self, state_dir: Path) -> None:
        self._state_dir = Path(state_dir).expanduser()
        self._state: dict | None = None

    @property
    def path(self) -> Path:
        return self._state_dir / STATE_FILENAME

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def enqueue(self, change: ChangeRecord) -> str:
        """Append *change* durably and return its id.

        Raises:
            QueueError: If the state file cannot be written.
        """
        state = self._mutable()
        state["changes"].append(change.to_wire())
        self._save(state)
        logger.debug(
            "Enqueued %s %s %s (%s)",
            change.kind.value,
            change.entity_kind.value,
            change.target_id,
            change.id,
        )
        return change.id

    def list_pending(self) -> list[ChangeRecord]:
        """Return unacknowledged changes in capture order."""
        pending = []
        for raw in self._load()["changes"]:
            try:
                pending.append(ChangeRecord.model_validate(raw))
            except PydanticValidationError as exc:
                raise QueueError(
                    f"Corrupt change record in {self.path}: {exc}"
                ) from exc
        return pending

    def acknowledge(self, up_to: str | Iterable[str]) -> int:
        """Remove acknowledged changes.

        Args:
            up_to: Either the id of the last record of the acknowledged
                batch (it and everything before it is removed), or an
                explicit collection of ids.

        Returns:
            Number of records removed.
        """
        state = self._mutable()
        changes = state["changes"]
        if isinstance(up_to, str):
            ids = [c["id"] for c in changes]
            if up_to not in ids:
                logger.warning("Acknowledged change %s is not queued", up_to)
                return 0
            cut = ids.index(up_to) + 1
            state["changes"] = changes[cut:]
        else:
            acked = set(up_to)
            state["changes"] = [c for c in changes if c["id"] not in acked]
        removed = len(changes) - len(state["changes"])
        if removed:
            self._save(state)
        logger.debug("Acknowledged %d change(s)", removed)
        return removed

    def pending_counts(self) -> Counts:
        tally = {kind: 0 for kind in ChangeKind}
        for raw in self._load()["changes"]:
            tally[ChangeKind(raw["type"])] += 1
        return Counts(
            adds=tally[ChangeKind.CREATE],
            updates=tally[ChangeKind.UPDATE],
            moves=tally[ChangeKind.MOVE],
            deletes=tally[ChangeKind.DELETE],
        )

    # ------------------------------------------------------------------
    # Identity and bookkeeping
    # ------------------------------------------------------------------

    def get_identity(self, owner_seed: str | None = None) -> DeviceIdentity:
        """Return the persisted identity, creating it on first call.

        Args:
            owner_seed: Owner id to use if the identity does not exist yet.
                Ignored once an identity has been persisted.
        """
        raw = self._load().get("identity")
        if raw:
            return DeviceIdentity.model_validate(raw)

        identity = DeviceIdentity(
            owner_id=owner_seed or str(uuid.uuid4()),
            instance_id=str(uuid.uuid4()),
        )
        state = self._mutable()
        state["identity"] = identity.model_dump()
        self._save(state)
        logger.info(
            "Created device identity: owner=%s instance=%s",
            identity.owner_id,
            identity.instance_id,
        )
        return identity

    def get_last_sync(self) -> str | None:
        return self._load().get("last_sync")

    def set_last_sync(self, timestamp: str | None = None) -> str:
        state = self._mutable()
        state["last_sync"] = timestamp or datetime.now(timezone.utc).isoformat()
        self._save(state)
        return state["last_sync"]

    def get_cursor(self) -> str | None:
        return self._load().get("cursor")

    def set_cursor(self, cursor: str | None) -> None:
        state = self._mutable()
        state["cursor"] = cursor
        self._save(state)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _empty(self) -> dict:
        return {
            "version": STATE_VERSION,
            "identity": None,
            "last_sync": None,
            "cursor": None,
            "changes": [],
        }

    def _load(self) -> dict:
        if self._state is not None:
            return self._state
        if not self.path.exists():
            self._state = self._empty()
            return self._state
        try:
            with open(self.path, encoding="utf-8") as fh:
                state = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            raise QueueError(f"Cannot read queue state {self.path}: {exc}") from exc
        if not isinstance(state, dict) or not isinstance(
            state.get("changes"), list
        ):
            raise QueueError(f"Queue state {self.path} is malformed")
        self._state = state
        return state

    def _mutable(self) -> dict:
        return copy.deepcopy(self._load())

    def _save(self, state: dict) -> None:
        """Persist *state* atomically, then make it the in-memory copy."""
        try:
            self._state_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(
                dir=str(self._state_dir), suffix=".tmp"
            )
        except OSError as exc:
            raise QueueError(f"Cannot write queue state: {exc}") from exc
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(state, fh, indent=2)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, self.path)
        except BaseException as exc:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            if isinstance(exc, OSError):
                raise QueueError(f"Cannot write queue state: {exc}") from exc
            raise
        self._state = state
