"""Session commands.

Registered on the main app (imported by cli/app.py after the app object
exists):

    agent-relay start TASK --feature NAME --plan ui --plan logic [--run]
    agent-relay run SESSION_ID
    agent-relay status SESSION_ID [--json]
    agent-relay cancel SESSION_ID [--reason TEXT]
    agent-relay log SESSION_ID [--limit N] [--json]
    agent-relay sessions
    agent-relay roles [--json]
"""
from __future__ import annotations

import json
from typing import Optional

import typer
from rich.table import Table

from agent_relay.artifact_store import get_store
from agent_relay.cli.app import app
from agent_relay.cli.common import (
    build_coordinator,
    get_config_or_default,
    get_console,
    init_relay_directory,
)
from agent_relay.cli.display import format_phase, show_log, show_roles, show_status
from agent_relay.cli.ux import (
    EXIT_FAILED,
    EXIT_SUCCESS,
    exit_code_for_phase,
    exit_with_error,
    exit_with_relay_error,
)
from agent_relay.config import RelayConfig
from agent_relay.context import SessionContextManager
from agent_relay.errors import ConfigError, RelayError
from agent_relay.models import Phase, model_to_json
from agent_relay.roles import get_registry
from agent_relay.utils.fs import FileSystemError

console = get_console()


def _load_config() -> RelayConfig:
    """Load config or exit with the invalid-invocation code."""
    try:
        config = get_config_or_default()
        init_relay_directory(config)
        return config
    except ConfigError as e:
        exit_with_relay_error(e, hint="Check config.yaml or the --config path")
    except FileSystemError as e:
        exit_with_error("STORE", str(e), exit_code=EXIT_FAILED)


def _drive(config: RelayConfig, session_id: str) -> None:
    """Run a session to a terminal phase, print its status and exit."""
    coordinator = build_coordinator(config, scope=session_id)
    try:
        with console.status(f"Running session {session_id}..."):
            phase = coordinator.run(session_id)
    except KeyboardInterrupt:
        console.print("[yellow]Interrupted, cancelling session[/yellow]")
        phase = coordinator.cancel(session_id, "interrupted from the terminal")
    except RelayError as e:
        exit_with_relay_error(e)

    show_status(console, coordinator.status(session_id))
    raise typer.Exit(exit_code_for_phase(phase))


@app.command()
def start(
    task: str = typer.Argument(..., help="Description of the task to carry out."),
    feature: str = typer.Option(
        ..., "--feature", "-f", help="Feature name the plans are keyed by."
    ),
    plan: Optional[list[str]] = typer.Option(
        None, "--plan", help="Plan type required before execution (repeatable)."
    ),
    refactor: bool = typer.Option(
        False, "--refactor", help="Refactor after a review without major findings."
    ),
    review: bool = typer.Option(
        True, "--review/--no-review", help="Review the implementation after execution."
    ),
    run: bool = typer.Option(
        False, "--run/--no-run", help="Drive the session to DONE or FAILED right away."
    ),
) -> None:
    """
    Start a session for a task and print its id.
    """
    config = _load_config()
    coordinator = build_coordinator(config)
    try:
        session_id = coordinator.start_session(
            task, feature, plan or [], refactor=refactor, review=review
        )
    except RelayError as e:
        exit_with_relay_error(e, hint="Feature and plan types use letters, digits, '.', '_', ':' and '-'")

    console.print(f"[green]Started session[/green] {session_id}")
    if run:
        _drive(config, session_id)


@app.command("run")
def run_session(
    session_id: str = typer.Argument(..., help="Session to drive."),
) -> None:
    """
    Drive an existing session until it is DONE or FAILED.

    Exits 0 when the session is done and 1 when it failed.
    """
    config = _load_config()
    _drive(config, session_id)


@app.command()
def status(
    session_id: str = typer.Argument(..., help="Session to inspect."),
    json_output: bool = typer.Option(False, "--json", help="Print status as JSON."),
) -> None:
    """
    Show phase, pending roles, last entry and last error of a session.
    """
    config = _load_config()
    coordinator = build_coordinator(config, scope=session_id)
    try:
        session_status = coordinator.status(session_id)
    except RelayError as e:
        exit_with_relay_error(e)

    if json_output:
        typer.echo(model_to_json(session_status.to_dict(), indent=2))
    else:
        show_status(console, session_status)
    raise typer.Exit(exit_code_for_phase(session_status.phase))


@app.command()
def cancel(
    session_id: str = typer.Argument(..., help="Session to cancel."),
    reason: str = typer.Option("cancelled by user", "--reason", "-r", help="Why it is cancelled."),
) -> None:
    """
    Cancel a session: it moves to FAILED and partial artifacts are kept.
    """
    config = _load_config()
    coordinator = build_coordinator(config, scope=session_id)
    try:
        before = coordinator.context.current_phase(session_id)
        phase = coordinator.cancel(session_id, reason)
    except RelayError as e:
        exit_with_relay_error(e)

    if before.is_terminal or phase == Phase.DONE:
        console.print(f"Session {session_id} already finished: ", format_phase(phase))
    else:
        console.print(f"[yellow]Cancelled session[/yellow] {session_id}")
        show_status(console, coordinator.status(session_id))
    raise typer.Exit(EXIT_SUCCESS)


@app.command()
def log(
    session_id: str = typer.Argument(..., help="Session whose context log to print."),
    limit: Optional[int] = typer.Option(
        None, "--limit", "-n", help="Only show the last N entries."
    ),
    json_output: bool = typer.Option(False, "--json", help="Print entries as JSON lines."),
) -> None:
    """
    Print the context log of a session.
    """
    config = _load_config()
    context = SessionContextManager(get_store(config))
    try:
        entries = context.read(session_id).entries()
    except RelayError as e:
        exit_with_relay_error(e)

    if limit is not None:
        entries = entries[-limit:] if limit > 0 else []

    if json_output:
        for entry in entries:
            typer.echo(json.dumps(entry.to_dict()))
        return

    if not entries:
        console.print(f"[dim]No entries for session '{session_id}'[/dim]")
        return
    show_log(console, session_id, entries)


@app.command()
def sessions() -> None:
    """
    List sessions with their current phase.
    """
    config = _load_config()
    context = SessionContextManager(get_store(config))
    try:
        session_ids = context.list_sessions()
        rows = []
        for session_id in session_ids:
            record = context.load(session_id)
            rows.append((record, context.current_phase(session_id)))
    except RelayError as e:
        exit_with_relay_error(e)

    if not rows:
        console.print("[dim]No sessions yet. Start one with 'agent-relay start'.[/dim]")
        return

    table = Table(title="Sessions", show_header=True, header_style="bold")
    table.add_column("Session", style="cyan")
    table.add_column("Feature")
    table.add_column("Plans")
    table.add_column("Phase")
    table.add_column("Task")
    for record, phase in rows:
        table.add_row(
            record.session_id,
            record.feature,
            ", ".join(record.plan_types) or "-",
            format_phase(phase),
            record.task,
        )
    console.print(table)

    failed = sum(1 for _, phase in rows if phase == Phase.FAILED)
    if failed:
        console.print(f"[red]{failed} failed[/red] of {len(rows)}")


@app.command()
def roles(
    json_output: bool = typer.Option(False, "--json", help="Print contracts as JSON."),
) -> None:
    """
    List role contracts and loaded rule documents.
    """
    config = _load_config()
    try:
        registry = get_registry(config)
    except RelayError as e:
        exit_with_relay_error(e, hint="Check the roles and rules sections of config.yaml")

    if json_output:
        typer.echo(json.dumps([c.to_dict() for c in registry.contracts()], indent=2))
        return

    show_roles(console, registry.contracts())
    for rule in registry.rules:
        console.print(f"[dim]rules for {rule.glob} from {rule.source}[/dim]")


__all__ = ["start", "run_session", "status", "cancel", "log", "sessions", "roles"]
