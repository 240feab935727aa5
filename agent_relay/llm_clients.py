"""
External model CLI wrapper for Agent Relay.

This module provides a Python interface to the model CLI that backs every
role:
- ModelCliRunner class for executing prompts
- JSON output parsing
- Timeout handling with graceful termination
- Cancellation while the subprocess is running
"""

from __future__ import annotations

import json
import subprocess
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional

from agent_relay.errors import ErrorKind, RelayError
from agent_relay.models import ModelResult

if TYPE_CHECKING:
    from agent_relay.agents.base import CancellationToken
    from agent_relay.config import RelayConfig
    from agent_relay.logger import RelayLogger


class ModelInvocationError(RelayError):
    """Raised when the model CLI invocation fails."""

    kind = ErrorKind.ROLE_INVOCATION

    def __init__(
        self,
        message: str,
        stderr: str = "",
        returncode: int = -1
    ) -> None:
        super().__init__(message)
        self.stderr = stderr
        self.returncode = returncode


class ModelTimeoutError(ModelInvocationError):
    """Raised when the model CLI times out."""

    kind = ErrorKind.TIMEOUT


class ModelCancelledError(ModelInvocationError):
    """Raised when the cancellation token fires while the CLI runs."""

    kind = ErrorKind.CANCELLED


@dataclass
class ModelCliRunner:
    """
    Runner for the external model CLI.

    Executes prompts as a subprocess and parses its JSON output. The
    subprocess is polled so a cancellation token can stop it early.
    """

    config: RelayConfig
    logger: Optional[RelayLogger] = None

    def _build_command(
        self,
        prompt: str,
        *,
        max_turns: Optional[int] = None,
        allowed_tools: Optional[list[str]] = None,
    ) -> list[str]:
        """
        Build the CLI command.

        Args:
            prompt: The prompt to send.
            max_turns: Maximum conversation turns.
            allowed_tools: List of allowed tools.

        Returns:
            List of command arguments.
        """
        cmd = [
            self.config.model.binary,
            *self.config.model.args,
            "--max-turns", str(max_turns or self.config.model.max_turns),
        ]

        # None: default tools; []: no tools at all
        if allowed_tools is not None:
            cmd.extend(["--allowedTools", ",".join(allowed_tools)])

        # Separator keeps prompts starting with "-" from being read as options
        cmd.extend(["--", prompt])

        return cmd

    def _parse_output(self, stdout: str) -> dict[str, Any]:
        """
        Parse JSON output from the CLI.

        Raises:
            ModelInvocationError: If output is not valid JSON.
        """
        try:
            data = json.loads(stdout)
        except json.JSONDecodeError as e:
            raise ModelInvocationError(
                f"Failed to parse model output as JSON: {e}",
                stderr=stdout[:500],
            )
        if not isinstance(data, dict):
            raise ModelInvocationError("Model output is not a JSON object", stderr=stdout[:500])
        return data

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info"
    ) -> None:
        """Log an event if logger is configured."""
        if self.logger:
            self.logger.log(event_type, data, level=level)

    def _stop(self, proc: subprocess.Popen) -> None:
        """Terminate the subprocess, killing it if it does not exit."""
        proc.terminate()
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()

    def run(
        self,
        prompt: str,
        *,
        max_turns: Optional[int] = None,
        allowed_tools: Optional[list[str]] = None,
        working_dir: Optional[str] = None,
        timeout: Optional[float] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ModelResult:
        """
        Execute a prompt using the model CLI.

        Args:
            prompt: The prompt to send.
            max_turns: Maximum conversation turns (overrides config).
            allowed_tools: List of allowed tools for this invocation.
            working_dir: Working directory (defaults to repo_root).
            timeout: Timeout in seconds (overrides config).
            cancel_token: Token checked while waiting for the subprocess.

        Returns:
            ModelResult with response and metadata.

        Raises:
            ModelInvocationError: If the CLI fails.
            ModelTimeoutError: If the CLI times out.
            ModelCancelledError: If the token is cancelled first.
        """
        cmd = self._build_command(prompt, max_turns=max_turns, allowed_tools=allowed_tools)
        cwd = working_dir or self.config.repo_root
        timeout_seconds = timeout or self.config.model.timeout_seconds
        poll = self.config.timeouts.poll_interval_seconds

        self._log("model_invocation_start", {
            "prompt_length": len(prompt),
            "allowed_tools": allowed_tools,
            "timeout": timeout_seconds,
        })

        try:
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                cwd=cwd,
            )
        except OSError as e:
            self._log("model_invocation_error", {"error": str(e)}, level="error")
            raise ModelInvocationError(f"Cannot start model CLI: {e}")

        deadline = time.monotonic() + timeout_seconds
        while True:
            try:
                stdout, stderr = proc.communicate(timeout=poll)
                break
            except subprocess.TimeoutExpired:
                if cancel_token is not None and cancel_token.cancelled:
                    self._stop(proc)
                    self._log("model_invocation_cancelled", {}, level="warn")
                    raise ModelCancelledError("Model CLI cancelled")
                if time.monotonic() >= deadline:
                    self._stop(proc)
                    self._log("model_invocation_timeout", {
                        "timeout_seconds": timeout_seconds,
                    }, level="error")
                    raise ModelTimeoutError(
                        f"Model CLI timed out after {timeout_seconds} seconds"
                    )

        if proc.returncode != 0:
            self._log("model_invocation_error", {
                "returncode": proc.returncode,
                "stderr": stderr[:500] if stderr else "",
            }, level="error")
            raise ModelInvocationError(
                f"Model CLI exited with code {proc.returncode}",
                stderr=stderr,
                returncode=proc.returncode,
            )

        data = self._parse_output(stdout)

        # Error subtypes (e.g. max turns reached) come back with exit code 0
        subtype = data.get("subtype", "")
        if subtype.startswith("error_"):
            self._log("model_invocation_error_subtype", {
                "subtype": subtype,
                "num_turns": data.get("num_turns", 0),
            }, level="error")
            raise ModelInvocationError(
                f"Model CLI returned error: {subtype}",
                stderr=f"subtype={subtype}, num_turns={data.get('num_turns', 0)}",
                returncode=0,
            )

        result = ModelResult(
            text=data.get("result", ""),
            total_cost_usd=data.get("total_cost_usd", 0.0),
            num_turns=data.get("num_turns", 0),
            duration_ms=data.get("duration_ms", 0),
            raw=data,
        )

        self._log("model_invocation_complete", {
            "cost_usd": result.total_cost_usd,
            "num_turns": result.num_turns,
            "duration_ms": result.duration_ms,
        })

        return result
