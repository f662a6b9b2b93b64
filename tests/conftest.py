"""Shared pytest fixtures for bookmark-sync tests."""

from pathlib import Path

import pytest
from dotenv import load_dotenv

from bookmark_sync.config import AgentConfig
from bookmark_sync.server.ingest import IngestService
from bookmark_sync.server.store import EntityStore
from bookmark_sync.sync.host import MemoryBookmarkTree
from bookmark_sync.sync.models import (
    ChangeKind,
    ChangeRecord,
    DeviceMetadata,
    EntityKind,
)
from bookmark_sync.sync.state import LocalQueueStore, new_record_id

load_dotenv()


def pytest_addoption(parser):
    """Add custom CLI options for test filtering."""
    parser.addoption(
        "--run-live",
        action="store_true",
        default=False,
        help="Run tests that require a running ingest server",
    )


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "live: mark test as requiring a running ingest server"
    )


def pytest_collection_modifyitems(config, items):
    """Skip live tests unless --run-live is passed."""
    if config.getoption("--run-live"):
        return
    skip_live = pytest.mark.skip(reason="need --run-live option to run")
    for item in items:
        if "live" in item.keywords:
            item.add_marker(skip_live)


# ---------------------------------------------------------------------------
# Server side
# ---------------------------------------------------------------------------


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "server.sqlite"


@pytest.fixture
def store(db_path: Path):
    """An EntityStore on a fresh database file."""
    entity_store = EntityStore(db_path)
    yield entity_store
    entity_store.close()


@pytest.fixture
def service(store: EntityStore) -> IngestService:
    return IngestService(store)


@pytest.fixture
def metadata() -> DeviceMetadata:
    return DeviceMetadata(
        instance_id="inst-a",
        owner_id="owner-1",
        browser_name="firefox",
        browser_version="128.0",
        os="Linux",
    )


# ---------------------------------------------------------------------------
# Agent side
# ---------------------------------------------------------------------------


@pytest.fixture
def agent_config(tmp_path: Path) -> AgentConfig:
    return AgentConfig(
        server_url="http://sync.example.com",
        state_dir=tmp_path / "state",
    )


@pytest.fixture
def queue_store(tmp_path: Path) -> LocalQueueStore:
    return LocalQueueStore(tmp_path / "state")


@pytest.fixture
def tree() -> MemoryBookmarkTree:
    return MemoryBookmarkTree(browser_name="firefox", browser_version="128.0")


@pytest.fixture
def make_change():
    """Factory for ChangeRecord objects from a wire-style payload dict."""

    def _make(
        kind: ChangeKind,
        entity_kind: EntityKind,
        target_id: str,
        payload: dict,
        record_id: str | None = None,
    ) -> ChangeRecord:
        return ChangeRecord(
            id=record_id or new_record_id(),
            kind=kind,
            entity_kind=entity_kind,
            target_id=target_id,
            payload=payload,
            captured_at="2026-01-01T00:00:00+00:00",
        )

    return _make
