"""Main Typer app definition and routing.

This is the canonical entry point for the CLI. The app and its global
options are defined here; commands are registered by cli/session.py.
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer

from agent_relay import __version__
from agent_relay.cli.common import get_console, set_config_path, set_project_dir

# Create Typer app
app = typer.Typer(
    name="agent-relay",
    help="Coordinate role-restricted agents through a shared file-backed store",
    add_completion=False,
)

# Rich console for output - use singleton from common module
console = get_console()


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        console.print(f"agent-relay version {__version__}")
        raise typer.Exit()


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    project: Optional[str] = typer.Option(
        None,
        "--project",
        "-p",
        help="Project directory to operate on (default: current directory)",
    ),
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to config.yaml (default: <project>/config.yaml if present)",
    ),
    version: bool = typer.Option(
        False,
        "--version",
        "-v",
        help="Show version and exit",
        callback=version_callback,
        is_eager=True,
    ),
) -> None:
    """
    Agent Relay - multi-agent task coordination.

    Planners, an executor, a reviewer and a refactorer work on a task in
    turn, sharing state only through the session store under .relay/.
    """
    set_project_dir(None)
    set_config_path(config)
    if project:
        # Validate that the project directory exists
        project_path = Path(project)
        if not project_path.is_dir():
            console.print(f"[red]Error: Project directory not found: {project}[/red]")
            raise typer.Exit(2)
        set_project_dir(str(project_path.absolute()))

    # If no subcommand and no --help, show help
    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(0)


# =========================================================================
# Command Registration
# =========================================================================
# Importing the module registers its commands on ``app``; it must come
# after the app is defined
import agent_relay.cli.session  # noqa: F401, E402


def cli_main() -> None:
    """Entry point for the CLI."""
    app()


__all__ = ["app", "cli_main"]
