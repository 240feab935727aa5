"""CLI UX utilities for consistent behavior across commands.

Provides:
- Semantic exit codes
- Consistent error formatting
- Mapping from relay errors and session phases to exit codes
"""
from __future__ import annotations

from typing import NoReturn, Optional

import typer

from agent_relay.errors import ErrorKind, RelayError
from agent_relay.models import Phase

# Semantic exit codes
EXIT_SUCCESS = 0         # Session reached DONE, or the command succeeded
EXIT_FAILED = 1          # Session reached FAILED
EXIT_INVALID = 2         # Unknown session, malformed request, bad config

# Error kinds caused by the invocation itself rather than the session
INVALID_KINDS = frozenset({
    ErrorKind.NOT_FOUND,
    ErrorKind.CONFIG,
    ErrorKind.INVALID,
    ErrorKind.UNKNOWN_ROLE,
})


def format_error(
    code: str,
    message: str,
    *,
    expected: Optional[str] = None,
    got: Optional[str] = None,
    hint: Optional[str] = None,
) -> str:
    """Format error message consistently.

    Standard format:
        Error: [CODE] Message
          Expected: ...
          Got: ...
          Hint: ...
    """
    lines = [f"Error: [{code}] {message}"]

    if expected:
        lines.append(f"  Expected: {expected}")
    if got:
        lines.append(f"  Got: {got}")
    if hint:
        lines.append(f"  Hint: {hint}")

    return "\n".join(lines)


def exit_with_error(
    code: str,
    message: str,
    *,
    expected: Optional[str] = None,
    got: Optional[str] = None,
    hint: Optional[str] = None,
    exit_code: int = EXIT_INVALID,
) -> NoReturn:
    """Print formatted error and exit."""
    typer.echo(
        format_error(code, message, expected=expected, got=got, hint=hint),
        err=True
    )
    raise typer.Exit(exit_code)


def exit_code_for_phase(phase: Phase) -> int:
    """Exit code reporting a session phase."""
    return EXIT_FAILED if phase == Phase.FAILED else EXIT_SUCCESS


def exit_code_for_error(error: RelayError) -> int:
    """Exit code for an error that aborted a command."""
    return EXIT_INVALID if error.kind in INVALID_KINDS else EXIT_FAILED


def exit_with_relay_error(error: RelayError, hint: Optional[str] = None) -> NoReturn:
    """Print a relay error in the standard format and exit."""
    exit_with_error(
        error.kind.value.upper(),
        str(error),
        hint=hint,
        exit_code=exit_code_for_error(error),
    )
