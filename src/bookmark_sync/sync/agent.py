"""Long-running sync agent: capture loop plus periodic sync attempts."""

from __future__ import annotations

import asyncio
import contextlib
import logging

from ..config import AgentConfig
from ..core.client import SyncClient
from ..errors import BookmarkSyncError, SyncInProgressError
from .capture import ChangeCapture
from .engine import SyncOrchestrator
from .host import BookmarkHost
from .models import SyncReport
from .state import LocalQueueStore

logger = logging.getLogger(__name__)


class SyncAgent:
    """Wire capture, queue, transport and orchestrator for one host tree.

    Args:
        config: Agent configuration.
        host: Host bookmark tree; capture subscribes to it immediately.
        client: Transport client; built from *config* when omitted.
    """

    def __init__(
        self,
        config: AgentConfig,
        host: BookmarkHost,
        client: SyncClient | None = None,
    ) -> None:
        self.config = config
        self.host = host
        self.queue_store = LocalQueueStore(config.state_dir)
        self.client = client or SyncClient(config)
        self.capture = ChangeCapture(
            self.queue_store, metadata_factory=self._metadata
        )
        self.capture.attach(host)
        self.orchestrator = SyncOrchestrator(
            client=self.client,
            queue_store=self.queue_store,
            host=host,
            capture=self.capture,
            owner_scope=config.owner_scope,
            owner_seed=config.owner_id,
            browser_name=config.browser_name,
            browser_version=config.browser_version,
        )

    def _metadata(self):
        return self.orchestrator.device_metadata()

    async def sync_once(self) -> SyncReport | None:
        """Run one attempt; returns ``None`` if one is already running."""
        try:
            return await self.orchestrator.sync()
        except SyncInProgressError as exc:
            logger.info("Skipping sync: %s", exc)
            return None

    async def run(self, stop: asyncio.Event | None = None) -> None:
        """Consume notifications and, with ``auto_sync``, sync periodically.

        A failed periodic attempt is logged and tried again at the next
        interval.  Returns when *stop* is set.
        """
        stop = stop or asyncio.Event()
        consumer = asyncio.create_task(self.capture.run(), name="capture")
        logger.info(
            "Sync agent started (auto_sync=%s, interval=%ss)",
            self.config.auto_sync,
            self.config.sync_interval_s,
        )
        try:
            while not stop.is_set():
                if self.config.auto_sync:
                    try:
                        report = await self.sync_once()
                    except BookmarkSyncError as exc:
                        logger.warning("Periodic sync failed: %s", exc)
                    else:
                        if report is not None:
                            logger.info(report.summary())
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(
                        stop.wait(), timeout=self.config.sync_interval_s
                    )
        finally:
            consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await consumer
            await self.capture.drain()
            logger.info("Sync agent stopped")
