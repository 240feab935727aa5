"""Display helpers and formatters for the CLI.

Contains Rich formatting utilities for phases, session status, context logs
and role contracts.
This module should NOT import from the command modules to avoid circular imports.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Iterable

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from agent_relay.models import EntryKind, Phase, Severity

if TYPE_CHECKING:
    from agent_relay.models import ContextEntry, ReviewReport, SessionStatus
    from agent_relay.roles import RoleContract

# Phase display names and colors
PHASE_DISPLAY: dict[Phase, tuple[str, str]] = {
    Phase.PLANNING: ("Planning", "yellow"),
    Phase.READY_FOR_EXECUTION: ("Ready for Execution", "blue"),
    Phase.EXECUTING: ("Executing", "cyan bold"),
    Phase.REVIEWING: ("Reviewing", "magenta"),
    Phase.REFACTORING: ("Refactoring", "cyan"),
    Phase.DONE: ("Done", "green bold"),
    Phase.FAILED: ("Failed", "red bold"),
}

# Context entry kind colors
KIND_STYLE: dict[EntryKind, str] = {
    EntryKind.NOTE: "white",
    EntryKind.TRANSITION: "blue",
    EntryKind.FAILURE: "red",
    EntryKind.COMPLETION: "green",
    EntryKind.CANCEL: "red bold",
}

SEVERITY_STYLE: dict[Severity, str] = {
    Severity.MAJOR: "red bold",
    Severity.MEDIUM: "yellow",
    Severity.MINOR: "dim",
}


def format_phase(phase: Phase) -> Text:
    """Format a phase enum as colored text."""
    display_name, style = PHASE_DISPLAY.get(phase, (phase.name, "white"))
    return Text(display_name, style=style)


def format_entry_kind(kind: EntryKind) -> Text:
    return Text(kind.value, style=KIND_STYLE.get(kind, "white"))


def _truncate(text: str, length: int = 120) -> str:
    text = " ".join(text.split())
    return text if len(text) <= length else text[: length - 3] + "..."


def show_report(console: Console, report: ReviewReport) -> None:
    """Print a review report with its findings."""
    counts = ", ".join(f"{k}: {v}" for k, v in report.severity_counts.items())
    table = Table(
        title=f"Review {report.report_id} ({counts})",
        show_header=True,
        header_style="bold",
    )
    table.add_column("Severity", no_wrap=True)
    table.add_column("Path", style="cyan")
    table.add_column("Rule", style="dim")
    table.add_column("Finding")
    for finding in report.findings:
        table.add_row(
            Text(finding.severity.value, style=SEVERITY_STYLE[finding.severity]),
            finding.path or "-",
            finding.rule or "-",
            finding.description,
        )
    console.print(table)
    if report.summary:
        console.print(f"[dim]{report.summary}[/dim]")


def show_status(console: Console, status: SessionStatus) -> None:
    """Print the status panel of a session."""
    lines = Text()
    lines.append("Phase: ")
    lines.append_text(format_phase(status.phase))
    lines.append("\nPending roles: ")
    lines.append(", ".join(status.pending_roles) if status.pending_roles else "none")

    if status.last_entry is not None:
        entry = status.last_entry
        lines.append(f"\nLast entry: [{entry.seq}] {entry.role} ({entry.kind.value}) ")
        lines.append(_truncate(entry.content, 80), style="dim")

    if status.last_error:
        lines.append("\nLast error: ")
        lines.append(
            f"[{status.last_error.get('error_kind')}] {status.last_error.get('message')}",
            style="red",
        )

    if status.artifacts:
        lines.append("\nArtifacts: ")
        lines.append(", ".join(status.artifacts), style="cyan")

    console.print(Panel(lines, title=f"Session {status.session_id}", expand=False))

    if status.report is not None:
        show_report(console, status.report)


def show_log(console: Console, session_id: str, entries: Iterable[ContextEntry]) -> None:
    """Print a context log as a table."""
    table = Table(title=f"Context log for {session_id}", show_header=True, header_style="bold")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Time", style="dim", no_wrap=True)
    table.add_column("Role", style="cyan")
    table.add_column("Phase")
    table.add_column("Kind")
    table.add_column("Content")

    for entry in entries:
        table.add_row(
            str(entry.seq),
            entry.timestamp[:19].replace("T", " "),
            entry.role,
            format_phase(entry.phase),
            format_entry_kind(entry.kind),
            _truncate(entry.content),
        )
    console.print(table)


def show_roles(console: Console, contracts: Iterable[RoleContract]) -> None:
    """Print role contracts as a table."""
    table = Table(title="Role contracts", show_header=True, header_style="bold")
    table.add_column("Role", style="cyan")
    table.add_column("Phases")
    table.add_column("Capabilities")
    table.add_column("Requires")
    table.add_column("Produces")

    for contract in contracts:
        table.add_row(
            contract.name,
            ", ".join(sorted(p.value for p in contract.phases)),
            ", ".join(sorted(c.value for c in contract.capabilities)),
            ", ".join(sorted(contract.required_inputs)) or "-",
            ", ".join(sorted(contract.produces)) or "-",
        )
    console.print(table)
