"""Unified configuration schema for bookmark_sync.

Defines Pydantic models for the YAML config structure with dedicated
sections for the agent, the ingest server, and logging.

Usage:
    from bookmark_sync.config_schema import build_config

    raw = load_hierarchical_config()
    unified = build_config(raw)
    fallbacks = unified.agent_fallbacks()
"""

from __future__ import annotations

import logging
from typing import Literal

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class AgentSection(BaseModel):
    """Local sync agent settings.

    All fields are optional so env vars and CLI args can supply them at
    runtime instead.
    """

    server_url: str | None = Field(
        default=None, description="Ingest server base URL"
    )
    state_dir: str | None = Field(
        default=None, description="Directory holding the change queue"
    )
    connect_timeout: float = Field(default=10.0, gt=0, le=300)
    read_timeout: float = Field(default=60.0, gt=0, le=3600)
    sync_interval_s: int = Field(
        default=300,
        ge=10,
        le=86400,
        description="Seconds between automatic syncs",
    )
    auto_sync: bool = Field(default=False, description="Enable periodic sync")
    owner_scope: Literal["owner", "instance"] = Field(
        default="owner",
        description="Which id scopes server entities",
    )
    owner_id: str | None = Field(
        default=None, description="Owner id seed, honoured on first run only"
    )
    browser_name: str | None = None
    browser_version: str | None = None
    debug: bool = False

    model_config = {"frozen": True}


class ServerSection(BaseModel):
    """Ingest server settings."""

    host: str = Field(default="127.0.0.1", description="Bind address")
    port: int = Field(default=8787, ge=0, le=65535)
    db_path: str | None = Field(default=None, description="SQLite file")
    max_body_bytes: int = Field(default=10 * 1024 * 1024, ge=1024)
    max_changes: int = Field(default=5000, ge=1)
    debug: bool = False

    model_config = {"frozen": True}


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
        format: ``text`` or ``json``.
    """

    level: str | None = Field(default=None, description="Log level")
    file: str | None = Field(default=None, description="Log file path")
    format: Literal["text", "json"] = Field(default="text")

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Top-level unified config
# ---------------------------------------------------------------------------


class UnifiedConfig(BaseModel):
    """Top-level unified configuration.

    Every section has defaults, so ``UnifiedConfig()`` (zero-config) is
    always valid.
    """

    agent: AgentSection = Field(default_factory=AgentSection)
    server: ServerSection = Field(default_factory=ServerSection)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}

    def agent_fallbacks(self) -> dict:
        """Non-None agent values, for ``load_agent_config(yaml_fallbacks=...)``."""
        return {
            k: v for k, v in self.agent.model_dump().items() if v is not None
        }

    def server_fallbacks(self) -> dict:
        return {
            k: v for k, v in self.server.model_dump().items() if v is not None
        }


def build_config(raw_data: dict) -> UnifiedConfig:
    """Construct a ``UnifiedConfig`` from the raw dict returned by
    ``load_hierarchical_config()``.

    Missing sections get defaults.
    """
    if not raw_data:
        return UnifiedConfig()

    return UnifiedConfig(**raw_data)
