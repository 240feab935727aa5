"""
Configuration loading and validation for Agent Relay.

This module handles:
- Loading config.yaml from the repo root
- Environment variable resolution (${VAR} syntax)
- Validation of numeric fields
- Default values for optional fields
- Caching of the loaded configuration
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from agent_relay.errors import ConfigError


@dataclass
class ModelConfig:
    """External model CLI configuration."""
    binary: str = "claude"                     # Path to the model CLI binary
    args: list[str] = field(default_factory=lambda: ["--output-format", "json"])
    max_turns: int = 6                         # Maximum conversation turns
    timeout_seconds: int = 600                 # Per-call timeout in seconds


@dataclass
class RetryConfig:
    """Retry policy for role invocations and context appends."""
    max_invocation_attempts: int = 2           # First try plus one automatic retry
    max_append_attempts: int = 3               # Re-read and retry on append conflict


@dataclass
class TimeoutConfig:
    """Blocking-point timeouts."""
    role_seconds: float = 1800.0               # Whole role invocation
    store_lock_seconds: float = 10.0           # Context log lock acquisition
    poll_interval_seconds: float = 0.5         # Cancellation polling while waiting


@dataclass
class CoordinatorConfig:
    """Coordinator dispatch settings."""
    max_planning_rounds: int = 3               # Dispatches before planning is declared stuck
    max_workers: int = 4                       # Concurrent role invocations


@dataclass
class RuleSource:
    """A convention document applied to paths matching ``glob``."""
    glob: str
    path: Optional[str] = None                 # File holding the rule text
    text: Optional[str] = None                 # Inline rule text


@dataclass
class RelayConfig:
    """
    Main configuration for Agent Relay.

    This is the top-level config loaded from config.yaml.
    """
    # Paths
    repo_root: str = "."
    relay_dir: str = ".relay"

    # Nested configurations
    model: ModelConfig = field(default_factory=ModelConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    timeouts: TimeoutConfig = field(default_factory=TimeoutConfig)
    coordinator: CoordinatorConfig = field(default_factory=CoordinatorConfig)

    # Role contract definitions overriding the built-in table (raw mappings)
    roles: list[dict[str, Any]] = field(default_factory=list)
    rules: list[RuleSource] = field(default_factory=list)

    def __post_init__(self) -> None:
        """Convert paths to absolute paths based on repo_root."""
        self.repo_root = str(Path(self.repo_root).absolute())

    @property
    def relay_path(self) -> Path:
        """Absolute path to the .relay directory."""
        return Path(self.repo_root) / self.relay_dir

    @property
    def store_path(self) -> Path:
        """Absolute path to the artifact store root."""
        return self.relay_path / "store"

    @property
    def logs_path(self) -> Path:
        """Absolute path to logs directory."""
        return self.relay_path / "logs"


# Module-level cache for the loaded configuration
_config_cache: Optional[RelayConfig] = None


def _resolve_env_vars(value: Any) -> Any:
    """
    Resolve environment variables in a value.

    Supports ${VAR} syntax for environment variable substitution.
    Returns the original value if it's not a string.
    """
    if isinstance(value, str):
        pattern = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*)\}')

        def replace(match: re.Match) -> str:
            var_name = match.group(1)
            env_value = os.environ.get(var_name)
            if env_value is None:
                raise ConfigError(f"Environment variable ${{{var_name}}} is not set")
            return env_value

        return pattern.sub(replace, value)

    if isinstance(value, dict):
        return {k: _resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [_resolve_env_vars(item) for item in value]

    return value


def _positive(section: str, name: str, value: Any) -> Any:
    """Validate a positive numeric setting."""
    if not isinstance(value, (int, float)) or isinstance(value, bool) or value <= 0:
        raise ConfigError(f"{section}.{name} must be a positive number, got {value!r}")
    return value


def _parse_model_config(data: dict[str, Any]) -> ModelConfig:
    """Parse model configuration from dict."""
    defaults = ModelConfig()
    args = data.get("args", defaults.args)
    if not isinstance(args, list):
        raise ConfigError("model.args must be a list")
    return ModelConfig(
        binary=data.get("binary", defaults.binary),
        args=[str(a) for a in args],
        max_turns=_positive("model", "max_turns", data.get("max_turns", defaults.max_turns)),
        timeout_seconds=_positive(
            "model", "timeout_seconds", data.get("timeout_seconds", defaults.timeout_seconds)
        ),
    )


def _parse_retry_config(data: dict[str, Any]) -> RetryConfig:
    """Parse retry configuration from dict."""
    return RetryConfig(
        max_invocation_attempts=_positive(
            "retry", "max_invocation_attempts", data.get("max_invocation_attempts", 2)
        ),
        max_append_attempts=_positive(
            "retry", "max_append_attempts", data.get("max_append_attempts", 3)
        ),
    )


def _parse_timeout_config(data: dict[str, Any]) -> TimeoutConfig:
    """Parse timeout configuration from dict."""
    return TimeoutConfig(
        role_seconds=_positive("timeouts", "role_seconds", data.get("role_seconds", 1800.0)),
        store_lock_seconds=_positive(
            "timeouts", "store_lock_seconds", data.get("store_lock_seconds", 10.0)
        ),
        poll_interval_seconds=_positive(
            "timeouts", "poll_interval_seconds", data.get("poll_interval_seconds", 0.5)
        ),
    )


def _parse_coordinator_config(data: dict[str, Any]) -> CoordinatorConfig:
    """Parse coordinator configuration from dict."""
    return CoordinatorConfig(
        max_planning_rounds=_positive(
            "coordinator", "max_planning_rounds", data.get("max_planning_rounds", 3)
        ),
        max_workers=_positive("coordinator", "max_workers", data.get("max_workers", 4)),
    )


def _parse_rules(data: Any) -> list[RuleSource]:
    """Parse rule document sources from a list of mappings."""
    if data is None:
        return []
    if not isinstance(data, list):
        raise ConfigError("rules must be a list")

    rules = []
    for item in data:
        if not isinstance(item, dict) or not item.get("glob"):
            raise ConfigError(f"Each rule needs a glob: {item!r}")
        if not item.get("path") and item.get("text") is None:
            raise ConfigError(f"Rule for {item['glob']} needs a path or text")
        rules.append(RuleSource(glob=item["glob"], path=item.get("path"), text=item.get("text")))
    return rules


def parse_config(data: dict[str, Any]) -> RelayConfig:
    """
    Build a RelayConfig from already-loaded mapping data.

    Raises:
        ConfigError: If a section is malformed.
    """
    data = _resolve_env_vars(data)

    roles = data.get("roles", [])
    if not isinstance(roles, list):
        raise ConfigError("roles must be a list")

    return RelayConfig(
        repo_root=data.get("repo_root", "."),
        relay_dir=data.get("relay_dir", ".relay"),
        model=_parse_model_config(data.get("model") or {}),
        retry=_parse_retry_config(data.get("retry") or {}),
        timeouts=_parse_timeout_config(data.get("timeouts") or {}),
        coordinator=_parse_coordinator_config(data.get("coordinator") or {}),
        roles=roles,
        rules=_parse_rules(data.get("rules")),
    )


def load_config(config_path: Optional[str] = None) -> RelayConfig:
    """
    Load configuration from config.yaml.

    Args:
        config_path: Optional path to config file. If not provided,
                     looks for config.yaml in current directory.

    Returns:
        RelayConfig: Loaded and validated configuration.

    Raises:
        ConfigError: If config is invalid or cannot be loaded.
    """
    if config_path is None:
        config_path = "config.yaml"

    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, "r") as f:
            raw_data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Invalid YAML in config file: {e}")

    if raw_data is None:
        raw_data = {}
    if not isinstance(raw_data, dict):
        raise ConfigError("Configuration file must contain a mapping")

    # A relative repo_root is relative to the config file, not the cwd
    repo_root = Path(str(raw_data.get("repo_root", ".")))
    if not repo_root.is_absolute():
        raw_data["repo_root"] = str(path.parent / repo_root)

    return parse_config(raw_data)


def get_config(config_path: Optional[str] = None, force_reload: bool = False) -> RelayConfig:
    """
    Get the cached configuration, loading it if necessary.

    Args:
        config_path: Optional path to config file.
        force_reload: If True, reload configuration even if cached.

    Returns:
        RelayConfig: The loaded configuration.

    Raises:
        ConfigError: If config is invalid or cannot be loaded.
    """
    global _config_cache

    if _config_cache is None or force_reload:
        _config_cache = load_config(config_path)

    return _config_cache


def clear_config_cache() -> None:
    """Clear the configuration cache. Useful for testing."""
    global _config_cache
    _config_cache = None
