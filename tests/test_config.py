"""Tests for bookmark_sync.config -- env-var config loading and validation.

NOT to be confused with test_config_loader.py (hierarchical YAML config)
or test_config_schema.py (Pydantic models).  This tests the runtime
bootstrap path: validate_*_config() and load_*_config().
"""

import os
from pathlib import Path

import pytest

from bookmark_sync.config import (
    AgentConfig,
    ServerConfig,
    load_agent_config,
    load_server_config,
    validate_agent_config,
    validate_server_config,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("BOOKMARK_SYNC_"):
            monkeypatch.delenv(key, raising=False)


# -------------------------------------------------------------------------
# validate_agent_config()
# -------------------------------------------------------------------------


class TestValidateAgentConfig:
    """Tests for validate_agent_config()."""

    def test_valid_config_normalized(self, tmp_path):
        config = AgentConfig(
            server_url=" https://sync.example.com/ ", state_dir=tmp_path
        )
        validate_agent_config(config)
        assert config.server_url == "https://sync.example.com"

    def test_state_dir_expanded(self):
        config = AgentConfig(server_url="http://localhost:8787", state_dir="~/x")
        validate_agent_config(config)
        assert config.state_dir == Path("~/x").expanduser()

    def test_invalid_scheme(self):
        config = AgentConfig(server_url="ftp://sync.example.com")
        with pytest.raises(ValueError, match="must start with http:// or https://"):
            validate_agent_config(config)

    def test_missing_host(self):
        config = AgentConfig(server_url="http://")
        with pytest.raises(ValueError, match="hostname"):
            validate_agent_config(config)

    def test_invalid_owner_scope(self):
        config = AgentConfig(server_url="http://localhost", owner_scope="team")
        with pytest.raises(ValueError, match="owner scope"):
            validate_agent_config(config)

    def test_interval_floor(self):
        config = AgentConfig(server_url="http://localhost", sync_interval_s=5)
        with pytest.raises(ValueError, match="at least 10 seconds"):
            validate_agent_config(config)

    def test_timeouts_positive(self):
        config = AgentConfig(server_url="http://localhost", read_timeout=0)
        with pytest.raises(ValueError, match="Timeouts"):
            validate_agent_config(config)


class TestValidateServerConfig:
    """Tests for validate_server_config()."""

    def test_defaults_valid(self):
        validate_server_config(ServerConfig())

    def test_port_range(self):
        with pytest.raises(ValueError, match="Invalid port"):
            validate_server_config(ServerConfig(port=70000))

    def test_max_changes(self):
        with pytest.raises(ValueError, match="max changes"):
            validate_server_config(ServerConfig(max_changes=0))


# -------------------------------------------------------------------------
# load_agent_config() / load_server_config()
# -------------------------------------------------------------------------


class TestLoadAgentConfig:
    """Tests for load_agent_config() precedence."""

    def test_missing_url_raises(self):
        with pytest.raises(ValueError, match="Server URL not found"):
            load_agent_config()

    def test_cli_beats_env_beats_yaml(self, monkeypatch):
        monkeypatch.setenv("BOOKMARK_SYNC_SERVER_URL", "http://env.example.com")
        fallbacks = {"server_url": "http://yaml.example.com"}

        assert (
            load_agent_config(yaml_fallbacks=fallbacks).server_url
            == "http://env.example.com"
        )
        assert (
            load_agent_config(
                server_url="http://cli.example.com", yaml_fallbacks=fallbacks
            ).server_url
            == "http://cli.example.com"
        )

    def test_yaml_fallbacks_used(self, tmp_path):
        config = load_agent_config(
            yaml_fallbacks={
                "server_url": "http://yaml.example.com",
                "state_dir": str(tmp_path),
                "sync_interval_s": 60,
                "owner_scope": "instance",
                "owner_id": "alice",
                "browser_name": "chromium",
            }
        )
        assert config.state_dir == tmp_path
        assert config.sync_interval_s == 60
        assert config.owner_scope == "instance"
        assert config.owner_id == "alice"
        assert config.browser_name == "chromium"

    def test_env_numbers_and_bools(self, monkeypatch):
        monkeypatch.setenv("BOOKMARK_SYNC_SERVER_URL", "http://localhost:8787")
        monkeypatch.setenv("BOOKMARK_SYNC_INTERVAL", "30")
        monkeypatch.setenv("BOOKMARK_SYNC_READ_TIMEOUT", "2.5")
        monkeypatch.setenv("BOOKMARK_SYNC_AUTO_SYNC", "yes")

        config = load_agent_config()
        assert config.sync_interval_s == 30
        assert config.read_timeout == 2.5
        assert config.auto_sync is True

    def test_env_number_out_of_range(self, monkeypatch):
        monkeypatch.setenv("BOOKMARK_SYNC_SERVER_URL", "http://localhost:8787")
        monkeypatch.setenv("BOOKMARK_SYNC_INTERVAL", "abc")
        with pytest.raises(ValueError, match="BOOKMARK_SYNC_INTERVAL"):
            load_agent_config()

    def test_env_false_overrides_yaml_true(self, monkeypatch):
        monkeypatch.setenv("BOOKMARK_SYNC_AUTO_SYNC", "false")
        config = load_agent_config(
            server_url="http://localhost", yaml_fallbacks={"auto_sync": True}
        )
        assert config.auto_sync is False


class TestLoadServerConfig:
    """Tests for load_server_config()."""

    def test_defaults(self):
        config = load_server_config()
        assert config.host == "127.0.0.1"
        assert config.port == 8787
        assert config.max_changes == 5000

    def test_explicit_port_zero(self, tmp_path):
        config = load_server_config(port=0, db_path=str(tmp_path / "db.sqlite"))
        assert config.port == 0
        assert config.db_path == tmp_path / "db.sqlite"

    def test_env_and_yaml(self, monkeypatch):
        monkeypatch.setenv("BOOKMARK_SYNC_PORT", "9000")
        config = load_server_config(
            yaml_fallbacks={"host": "0.0.0.0", "port": 1234, "max_changes": 10}
        )
        assert config.port == 9000
        assert config.host == "0.0.0.0"
        assert config.max_changes == 10
