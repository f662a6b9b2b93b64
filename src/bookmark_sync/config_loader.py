"""
YAML configuration discovery and loading for bookmark_sync.

Config files are discovered by convention, may pull in other files with
``!include``, and may reference environment variables as ``${VAR}`` or
``${VAR:-default}``.  When several files exist the project-level one wins
per top-level section.

Usage:
    from bookmark_sync.config_loader import load_hierarchical_config

    raw = load_hierarchical_config()
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

CONFIG_ENV_VAR = "BOOKMARK_SYNC_CONFIG"
PROJECT_DIR_NAME = ".bookmark_sync"

# ---------------------------------------------------------------------------
# Env var interpolation
# ---------------------------------------------------------------------------

# ${VAR} or ${VAR:-default}
_ENV_VAR_PATTERN = re.compile(r"\$\{([^}:]+?)(?::-(.*?))?\}")


def interpolate_env_vars(value: str) -> str:
    """Substitute ``${VAR}`` / ``${VAR:-default}`` in *value*.

    An unset or empty variable falls back to *default*, or to ``""`` when
    no default is given.  An unterminated ``${`` is left as is.
    """

    def _substitute(match: re.Match) -> str:
        name, default = match.group(1), match.group(2)
        current = os.environ.get(name)
        if current:
            return current
        return default if default is not None else ""

    return _ENV_VAR_PATTERN.sub(_substitute, value)


def _interpolate_tree(node: Any) -> Any:
    if isinstance(node, str):
        return interpolate_env_vars(node)
    if isinstance(node, dict):
        return {key: _interpolate_tree(val) for key, val in node.items()}
    if isinstance(node, list):
        return [_interpolate_tree(item) for item in node]
    return node


# ---------------------------------------------------------------------------
# !include support
# ---------------------------------------------------------------------------


class ConfigLoader(yaml.SafeLoader):
    """SafeLoader with an ``!include`` tag.

    A subclass keeps the global ``yaml.SafeLoader`` untouched.  Each load
    carries the chain of files being read to catch circular includes.
    """


def _construct_include(loader: ConfigLoader, node: yaml.ScalarNode) -> Any:
    target = Path(loader.construct_scalar(node))
    if not target.is_absolute():
        target = Path(loader.name).resolve().parent / target
    target = target.resolve()

    chain: list[Path] = getattr(loader, "_include_stack", [])
    if target in chain:
        cycle = " -> ".join(str(p) for p in [*chain, target])
        raise ValueError(f"Circular include detected: {cycle}")
    if not target.exists():
        raise FileNotFoundError(
            f"Include file not found: {target} "
            f"(referenced from {Path(loader.name).resolve()})"
        )
    return load_yaml_file(target, _include_stack=[*chain, target])


ConfigLoader.add_constructor("!include", _construct_include)


def load_yaml_file(
    path: Path, *, _include_stack: list[Path] | None = None
) -> Any:
    """Parse one YAML file with ``!include`` support (no interpolation)."""
    path = path.resolve()
    with open(path, "r", encoding="utf-8") as fh:
        loader = ConfigLoader(fh)
        loader._include_stack = _include_stack or [path]  # type: ignore[attr-defined]
        try:
            return loader.get_single_data()
        finally:
            loader.dispose()


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


def discover_config_files() -> list[Path]:
    """Return existing config files, highest precedence first.

    Search order:
        1. ``BOOKMARK_SYNC_CONFIG`` env var (explicit single path)
        2. ``.bookmark_sync/config.yml`` in CWD
        3. ``.bookmark_sync/config.yaml`` in CWD
        4. ``~/.config/bookmark_sync/config.yml``
    """
    candidates: list[Path] = []

    explicit = os.environ.get(CONFIG_ENV_VAR)
    if explicit:
        candidates.append(Path(explicit).expanduser().resolve())

    project_dir = Path.cwd() / PROJECT_DIR_NAME
    candidates.append(project_dir / "config.yml")
    candidates.append(project_dir / "config.yaml")
    candidates.append(Path.home() / ".config" / "bookmark_sync" / "config.yml")

    return [p for p in candidates if p.exists()]


# ---------------------------------------------------------------------------
# Bootstrapping
# ---------------------------------------------------------------------------

_STARTER_CONFIG = """\
# bookmark-sync configuration
#
# Every value can also be set through BOOKMARK_SYNC_* environment
# variables, which take precedence over this file.
#
# agent:
#   server_url: http://127.0.0.1:8787
#   state_dir: ~/.bookmark_sync
#   sync_interval_s: 300
#   auto_sync: false
#   owner_scope: owner        # or "instance"
#   owner_id: ${BOOKMARK_SYNC_OWNER_ID:-}
#
# server:
#   host: 127.0.0.1
#   port: 8787
#   db_path: ~/.bookmark_sync/server.sqlite
#   max_changes: 5000
#
# logging:
#   level: INFO
#   file: null
#   format: text
"""


def ensure_config(target: Path | None = None) -> Path:
    """Return the active config file, writing a starter file if none exists.

    Args:
        target: Where to create the starter file.  Defaults to
            ``CWD / .bookmark_sync / config.yml``.
    """
    existing = discover_config_files()
    if existing:
        logger.debug("Config file already exists: %s", existing[0])
        return existing[0]

    config_path = target or Path.cwd() / PROJECT_DIR_NAME / "config.yml"
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(_STARTER_CONFIG, encoding="utf-8")
    logger.info("Created starter config: %s", config_path)
    return config_path


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------


def load_hierarchical_config(paths: list[Path] | None = None) -> dict[str, Any]:
    """Load and merge config files ("project wins").

    Files are applied from lowest to highest precedence; a top-level key
    from a higher-precedence file replaces the whole section.  Env var
    interpolation runs after the merge.

    Args:
        paths: Files in precedence order; defaults to
            ``discover_config_files()``.

    Returns:
        The merged dict, or ``{}`` when no file exists.
    """
    if paths is None:
        paths = discover_config_files()

    if not paths:
        logger.debug("No config files found, using defaults")
        return {}

    merged: dict[str, Any] = {}
    for path in reversed(paths):
        logger.debug("Loading config: %s", path)
        try:
            data = load_yaml_file(path)
        except Exception:
            logger.exception("Failed to load config file %s", path)
            raise

        if isinstance(data, dict):
            merged.update(data)
        elif data is not None:
            logger.warning(
                "Config file %s has non-dict root (%s), skipping",
                path,
                type(data).__name__,
            )

    return _interpolate_tree(merged)
