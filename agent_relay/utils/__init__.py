"""Utility modules for Agent Relay."""

from agent_relay.utils.fs import (
    FileSystemError,
    append_line,
    ensure_dir,
    is_within,
    read_file,
    safe_write,
)

__all__ = [
    "FileSystemError",
    "append_line",
    "ensure_dir",
    "is_within",
    "read_file",
    "safe_write",
]
