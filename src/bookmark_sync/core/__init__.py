"""Transport primitives shared by the sync agent and the CLI."""

from .async_utils import run_sync
from .client import SyncClient

__all__ = ["SyncClient", "run_sync"]
