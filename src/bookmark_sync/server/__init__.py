"""Remote ingest server.

Modules:

- ``db``     -- SQLite connection and schema.
- ``store``  -- ``EntityStore``: entities, history ledger, client instances.
- ``ingest`` -- ``IngestService``: status, initial import, incremental batch.
- ``api``    -- HTTP handler exposing the ingest service.
- ``app``    -- server creation and lifecycle.
"""

from .ingest import IngestService
from .store import EntityStore

__all__ = ["EntityStore", "IngestService"]
