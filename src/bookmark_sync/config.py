"""Runtime configuration for the sync agent and the ingest server.

Reads settings from CLI args, environment variables, .env files, and YAML
config file fallbacks.

Precedence (highest to lowest):
    CLI args > Environment variables > .env file > YAML config > Built-in defaults

Agent environment variables:
    BOOKMARK_SYNC_SERVER_URL: Ingest server base URL (required)
    BOOKMARK_SYNC_STATE_DIR: Local queue/identity directory (default: ~/.bookmark_sync)
    BOOKMARK_SYNC_CONNECT_TIMEOUT: Connect timeout in seconds (default: 10)
    BOOKMARK_SYNC_READ_TIMEOUT: Read timeout in seconds (default: 60)
    BOOKMARK_SYNC_INTERVAL: Seconds between automatic syncs (default: 300)
    BOOKMARK_SYNC_AUTO_SYNC: Enable periodic sync (default: false)
    BOOKMARK_SYNC_OWNER_SCOPE: "owner" or "instance" (default: owner)
    BOOKMARK_SYNC_OWNER_ID: Owner id seed used on first run only (optional)

Server environment variables:
    BOOKMARK_SYNC_HOST: Bind address (default: 127.0.0.1)
    BOOKMARK_SYNC_PORT: Bind port (default: 8787)
    BOOKMARK_SYNC_DB: SQLite database path (default: ~/.bookmark_sync/server.sqlite)
    BOOKMARK_SYNC_MAX_BODY_BYTES: Largest accepted request body (default: 10 MiB)
    BOOKMARK_SYNC_MAX_CHANGES: Largest accepted batch (default: 5000)
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = Path("~/.bookmark_sync")
DEFAULT_DB_PATH = Path("~/.bookmark_sync/server.sqlite")
OWNER_SCOPES = ("owner", "instance")


@dataclass
class AgentConfig:
    server_url: str
    state_dir: Path = DEFAULT_STATE_DIR
    connect_timeout: float = 10.0
    read_timeout: float = 60.0
    sync_interval_s: int = 300
    auto_sync: bool = False
    owner_scope: str = "owner"
    owner_id: str | None = None
    browser_name: str | None = None
    browser_version: str | None = None
    debug: bool = False


@dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8787
    db_path: Path = DEFAULT_DB_PATH
    max_body_bytes: int = 10 * 1024 * 1024
    max_changes: int = 5000
    debug: bool = False


def validate_agent_config(config: AgentConfig) -> None:
    """Validate agent configuration values and raise ValueError if invalid.

    Normalizes the server URL (whitespace, trailing slash) and expands the
    state directory in place.
    """
    config.server_url = config.server_url.strip()

    if not config.server_url.startswith(("http://", "https://")):
        raise ValueError(
            f"Invalid server URL '{config.server_url}': must start with http:// or https://"
        )

    parsed = urlparse(config.server_url)
    if not parsed.hostname:
        raise ValueError(
            f"Invalid server URL '{config.server_url}': URL must include a hostname"
        )

    config.server_url = config.server_url.removesuffix("/")
    config.state_dir = Path(config.state_dir).expanduser()

    if config.owner_scope not in OWNER_SCOPES:
        raise ValueError(
            f"Invalid owner scope '{config.owner_scope}': must be one of "
            f"{', '.join(OWNER_SCOPES)}"
        )

    if config.connect_timeout <= 0 or config.read_timeout <= 0:
        raise ValueError("Timeouts must be positive numbers of seconds")

    if config.sync_interval_s < 10:
        raise ValueError(
            f"Invalid sync interval {config.sync_interval_s}: must be at least 10 seconds"
        )


def validate_server_config(config: ServerConfig) -> None:
    if not config.host.strip():
        raise ValueError("Server host cannot be empty. Set BOOKMARK_SYNC_HOST.")
    if not (0 <= config.port <= 65535):
        raise ValueError(
            f"Invalid port {config.port}: must be a number between 0 and 65535"
        )
    config.db_path = Path(config.db_path).expanduser()
    if config.max_body_bytes < 1024:
        raise ValueError(
            f"Invalid max body size {config.max_body_bytes}: must be at least 1024 bytes"
        )
    if config.max_changes < 1:
        raise ValueError(
            f"Invalid max changes {config.max_changes}: must be at least 1"
        )


# ---------------------------------------------------------------------------
# Source resolution helpers
# ---------------------------------------------------------------------------


def _get_bool_env(key: str) -> bool | None:
    """Return True/False from env var, or None if unset."""
    val = os.getenv(key)
    if val is None:
        return None
    return val.lower() in ("true", "1", "yes", "on")


def _resolve_bool(cli: bool, env_key: str, fb: dict, name: str) -> bool:
    if cli:
        return True
    env_val = _get_bool_env(env_key)
    if env_val is not None:
        return env_val
    return bool(fb.get(name, False))


def _resolve_number(
    env_key: str,
    fb: dict,
    name: str,
    default: float,
    low: float,
    high: float,
    cast=int,
):
    """Resolve a numeric setting: env > YAML > default, range-checked."""
    raw = os.getenv(env_key)
    if raw is None:
        return cast(fb.get(name, default))
    try:
        value = cast(raw)
    except ValueError:
        raise ValueError(
            f"Invalid {env_key} '{raw}': must be a number between {low} and {high}"
        ) from None
    if not (low <= value <= high):
        raise ValueError(
            f"Invalid {env_key} '{raw}': must be a number between {low} and {high}"
        )
    return value


# ---------------------------------------------------------------------------
# Loaders
# ---------------------------------------------------------------------------


def load_agent_config(
    server_url: str | None = None,
    state_dir: str | None = None,
    auto_sync: bool = False,
    debug: bool = False,
    yaml_fallbacks: dict | None = None,
) -> AgentConfig:
    """Load agent configuration with unified precedence.

    Resolution order for each field (highest to lowest):
        CLI arg > env var / .env > yaml_fallbacks > built-in default

    The caller is responsible for calling ``load_dotenv()`` before this
    function so that .env values are available via ``os.getenv()``.

    Args:
        server_url: Override ingest server URL.
        state_dir: Override local state directory.
        auto_sync: Enable periodic sync (CLI flag).
        debug: Enable debug logging (CLI flag).
        yaml_fallbacks: Dict of values from the YAML ``agent`` section.

    Returns:
        Validated AgentConfig instance.

    Raises:
        ValueError: If the server URL is missing or any value is invalid.
    """
    fb = yaml_fallbacks or {}

    final_url = (
        server_url or os.getenv("BOOKMARK_SYNC_SERVER_URL") or fb.get("server_url")
    )
    if not final_url:
        raise ValueError(
            "Server URL not found. Set BOOKMARK_SYNC_SERVER_URL environment variable, "
            "pass --server-url CLI argument, or add 'server_url' to config.yml."
        )

    final_state_dir = (
        state_dir
        or os.getenv("BOOKMARK_SYNC_STATE_DIR")
        or fb.get("state_dir")
        or DEFAULT_STATE_DIR
    )

    config = AgentConfig(
        server_url=final_url,
        state_dir=Path(final_state_dir),
        connect_timeout=_resolve_number(
            "BOOKMARK_SYNC_CONNECT_TIMEOUT", fb, "connect_timeout", 10.0, 0.1, 300, float
        ),
        read_timeout=_resolve_number(
            "BOOKMARK_SYNC_READ_TIMEOUT", fb, "read_timeout", 60.0, 0.1, 3600, float
        ),
        sync_interval_s=_resolve_number(
            "BOOKMARK_SYNC_INTERVAL", fb, "sync_interval_s", 300, 10, 86400
        ),
        auto_sync=_resolve_bool(auto_sync, "BOOKMARK_SYNC_AUTO_SYNC", fb, "auto_sync"),
        owner_scope=(
            os.getenv("BOOKMARK_SYNC_OWNER_SCOPE") or fb.get("owner_scope") or "owner"
        ),
        owner_id=os.getenv("BOOKMARK_SYNC_OWNER_ID") or fb.get("owner_id"),
        browser_name=fb.get("browser_name"),
        browser_version=fb.get("browser_version"),
        debug=_resolve_bool(debug, "BOOKMARK_SYNC_DEBUG", fb, "debug"),
    )

    validate_agent_config(config)

    return config


def load_server_config(
    host: str | None = None,
    port: int | None = None,
    db_path: str | None = None,
    debug: bool = False,
    yaml_fallbacks: dict | None = None,
) -> ServerConfig:
    """Load ingest server configuration with the same precedence as the agent."""
    fb = yaml_fallbacks or {}

    if port is not None:
        final_port = port
    else:
        final_port = _resolve_number("BOOKMARK_SYNC_PORT", fb, "port", 8787, 0, 65535)

    config = ServerConfig(
        host=host or os.getenv("BOOKMARK_SYNC_HOST") or fb.get("host") or "127.0.0.1",
        port=final_port,
        db_path=Path(
            db_path
            or os.getenv("BOOKMARK_SYNC_DB")
            or fb.get("db_path")
            or DEFAULT_DB_PATH
        ),
        max_body_bytes=_resolve_number(
            "BOOKMARK_SYNC_MAX_BODY_BYTES",
            fb,
            "max_body_bytes",
            10 * 1024 * 1024,
            1024,
            1024 * 1024 * 1024,
        ),
        max_changes=_resolve_number(
            "BOOKMARK_SYNC_MAX_CHANGES", fb, "max_changes", 5000, 1, 1_000_000
        ),
        debug=_resolve_bool(debug, "BOOKMARK_SYNC_DEBUG", fb, "debug"),
    )

    validate_server_config(config)

    return config
