"""Tests for sync.agent -- SyncAgent wiring and the periodic loop."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, Mock

from bookmark_sync.errors import SyncInProgressError, TransportError
from bookmark_sync.sync.agent import SyncAgent
from bookmark_sync.sync.models import SyncPhase


class TestSyncAgent:
    """Tests for SyncAgent."""

    async def test_wires_capture_to_host(self, agent_config, tree):
        agent = SyncAgent(agent_config, tree, client=Mock())
        await tree.create("F1", None, "Bar")
        await agent.capture.drain()

        [record] = agent.queue_store.list_pending()
        assert record.target_id == "F1"
        assert record.device_metadata.owner_id == agent.orchestrator.owner_id

    async def test_sync_once_skips_when_busy(self, agent_config, tree):
        agent = SyncAgent(agent_config, tree, client=Mock())
        agent.orchestrator.sync = AsyncMock(side_effect=SyncInProgressError("busy"))
        assert await agent.sync_once() is None

    async def test_run_stops_and_drains(self, agent_config, tree):
        agent = SyncAgent(agent_config, tree, client=Mock())
        stop = asyncio.Event()
        runner = asyncio.create_task(agent.run(stop))

        await tree.create("F1", None, "Bar")
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(runner, timeout=2)

        assert len(agent.queue_store.list_pending()) == 1

    async def test_periodic_failures_are_logged_not_raised(
        self, agent_config, tree, caplog
    ):
        agent_config.auto_sync = True
        agent = SyncAgent(agent_config, tree, client=Mock())
        stop = asyncio.Event()

        async def failing_sync():
            stop.set()
            raise TransportError("server down")

        agent.orchestrator.sync = failing_sync
        await asyncio.wait_for(agent.run(stop), timeout=2)

        assert "Periodic sync failed: server down" in caplog.text
        assert agent.orchestrator.state == SyncPhase.IDLE
