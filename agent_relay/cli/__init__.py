"""CLI package for agent-relay.

Modules:
    app.py      - Main Typer app, global options, command registration
    session.py  - Session commands (start, run, status, cancel, log, sessions, roles)
    display.py  - Rich formatting utilities (format_phase, show_status, etc.)
    common.py   - Shared helpers (get_console, get_config_or_default, build_coordinator)
    ux.py       - Exit codes and error formatting

Usage:
    from agent_relay.cli import app, cli_main  # Main exports
"""
from agent_relay.cli.app import app, cli_main

__all__ = ["app", "cli_main"]
