"""Local sync agent.

Modules:

- ``models``   -- change records, wire results and reports.
- ``host``     -- ``BookmarkHost`` protocol, ``TreeEvent`` and the
  in-memory ``MemoryBookmarkTree``.
- ``state``    -- ``LocalQueueStore``: durable FIFO queue and identity.
- ``capture``  -- ``ChangeCapture``: notifications to queued changes, with
  echo suppression.
- ``engine``   -- ``SyncOrchestrator``: status negotiation, initial import,
  incremental batches and remote apply-back.
- ``agent``    -- ``SyncAgent``: long-running capture and periodic sync.
- ``reporter`` -- text and JSON output.

``engine`` and ``agent`` depend on the transport client and are imported
from their modules directly.

Usage example
-------------
::

    from bookmark_sync.config import load_agent_config
    from bookmark_sync.sync import MemoryBookmarkTree, format_sync_report
    from bookmark_sync.sync.agent import SyncAgent

    tree = MemoryBookmarkTree.load(Path("bookmarks.json"))
    agent = SyncAgent(load_agent_config(), tree)
    report = await agent.sync_once()
    print(format_sync_report(report))
"""

from .capture import ChangeCapture
from .host import BookmarkHost, BookmarkNode, MemoryBookmarkTree, TreeEvent
from .models import ChangeRecord, SyncPhase, SyncReport
from .reporter import format_sync_report, report_to_json
from .state import LocalQueueStore

__all__ = [
    "BookmarkHost",
    "BookmarkNode",
    "ChangeCapture",
    "ChangeRecord",
    "LocalQueueStore",
    "MemoryBookmarkTree",
    "SyncPhase",
    "SyncReport",
    "TreeEvent",
    "format_sync_report",
    "report_to_json",
]
