"""Common utilities and global state for the CLI.

Contains project directory management, config loading and construction of
the objects commands operate on.
This module should NOT import from the command modules to avoid circular imports.
"""
from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Optional

from rich.console import Console

from agent_relay.config import RelayConfig, load_config
from agent_relay.utils.fs import ensure_dir

if TYPE_CHECKING:
    from agent_relay.coordinator import Coordinator

# ============================================================================
# Global State
# ============================================================================

# Global project directory override (set via --project flag)
_project_dir: Optional[str] = None

# Explicit config file (set via --config flag)
_config_path: Optional[str] = None

# Console singleton
_console: Optional[Console] = None


def get_project_dir() -> Optional[str]:
    """Get the project directory override if set."""
    return _project_dir


def set_project_dir(path: Optional[str]) -> None:
    """Set the project directory override."""
    global _project_dir
    _project_dir = path


def set_config_path(path: Optional[str]) -> None:
    """Set an explicit config file path."""
    global _config_path
    _config_path = path


def get_console() -> Console:
    """Get or create the console singleton."""
    global _console
    if _console is None:
        _console = Console()
    return _console


# ============================================================================
# Config Helpers
# ============================================================================


def get_config_or_default() -> RelayConfig:
    """
    Load config.yaml, falling back to defaults when there is none.

    An explicitly given --config file must exist.

    Raises:
        ConfigError: If the config file is invalid, or --config is missing.
    """
    if _config_path is not None:
        return load_config(_config_path)

    base = Path(_project_dir or ".")
    candidate = base / "config.yaml"
    if candidate.is_file():
        return load_config(str(candidate))

    # No config file - use defaults rooted at the project directory
    return RelayConfig(repo_root=str(base))


def init_relay_directory(config: RelayConfig) -> None:
    """Initialize the .relay directory structure if it doesn't exist."""
    ensure_dir(config.store_path)
    ensure_dir(config.logs_path)


def build_coordinator(config: RelayConfig, scope: str = "relay") -> Coordinator:
    """Create a Coordinator logging to the given scope (usually a session id)."""
    from agent_relay.coordinator import Coordinator
    from agent_relay.logger import get_logger

    return Coordinator.from_config(config, logger=get_logger(scope, config))
