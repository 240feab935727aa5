"""
Capability-guarded tools handed to role runners.

Every operation on the target project tree goes through RoleTools, which
checks the role contract before touching anything and refuses paths that
resolve outside the project root.

The model CLI itself only receives research tools; edits and commands it
proposes come back in its reply and are applied here.
"""
from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from agent_relay.errors import ToolError, UnauthorizedError
from agent_relay.models import Capability
from agent_relay.utils.fs import FileSystemError, is_within, read_file, safe_write

if TYPE_CHECKING:
    from agent_relay.logger import RelayLogger
    from agent_relay.roles import RoleContract, RoleRegistry


# Model CLI tool names for the research capabilities
MODEL_TOOLS: dict[Capability, str] = {
    Capability.READ: "Read",
    Capability.SEARCH_GLOB: "Glob",
    Capability.SEARCH_TEXT: "Grep",
}

# Directories never searched
SKIP_DIRS = frozenset({".git", ".relay", "node_modules", "__pycache__", ".next"})


def model_tools_for(contract: RoleContract) -> list[str]:
    """Research tools the model may use directly under ``contract``."""
    return [name for cap, name in MODEL_TOOLS.items() if contract.allows(cap)]


@dataclass
class CommandResult:
    """Outcome of a shell command."""
    command: str
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class RoleTools:
    """
    Project tree access for one role invocation.

    ModelRoleAgent only uses the write, edit and command tools; the model
    researches through its own CLI tools. read_file, search_text and
    search_glob serve runners that work in-process, such as runners
    registered for a role through ``Coordinator(runners=...)``.
    """

    def __init__(
        self,
        registry: RoleRegistry,
        role: str,
        root: str | Path,
        logger: Optional[RelayLogger] = None,
        command_timeout: float = 300.0,
    ) -> None:
        self.registry = registry
        self.role = role
        self.root = Path(root).resolve()
        self.logger = logger
        self.command_timeout = command_timeout
        self._touched: list[str] = []

    def _log(
        self,
        event_type: str,
        data: Optional[dict] = None,
        level: str = "info"
    ) -> None:
        """Log an event if logger is configured."""
        if self.logger:
            log_data = {"component": "tools", "role": self.role}
            if data:
                log_data.update(data)
            self.logger.log(event_type, log_data, level=level)

    @property
    def touched(self) -> list[str]:
        """Project-relative paths written or edited, in first-touch order."""
        return list(self._touched)

    def _require(self, capability: Capability, detail: str = "") -> None:
        try:
            self.registry.require(self.role, capability, detail)
        except UnauthorizedError:
            self._log("capability_denied", {
                "capability": capability.value,
                "detail": detail,
            }, level="warn")
            raise

    def _resolve(self, path: str | Path, capability: Capability) -> Path:
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self.root / candidate
        if not is_within(self.root, candidate):
            self._log("path_denied", {"path": str(path)}, level="warn")
            raise UnauthorizedError(
                self.role, capability.value, f"path outside project root: {path}"
            )
        return candidate.resolve()

    def _relative(self, path: Path) -> str:
        return path.relative_to(self.root).as_posix()

    def _touch(self, path: Path) -> None:
        rel = self._relative(path)
        if rel not in self._touched:
            self._touched.append(rel)

    # Research

    def read_file(self, path: str) -> str:
        """
        Read a project file.

        Raises:
            UnauthorizedError: Without the read capability or outside the root.
            ToolError: If the file cannot be read.
        """
        self._require(Capability.READ, path)
        target = self._resolve(path, Capability.READ)
        try:
            return read_file(target)
        except FileSystemError as e:
            raise ToolError(str(e))

    def _walk(self, pattern: str) -> list[Path]:
        matches = []
        for candidate in self.root.glob(pattern):
            rel_parts = candidate.relative_to(self.root).parts
            if any(part in SKIP_DIRS for part in rel_parts):
                continue
            if candidate.is_file():
                matches.append(candidate)
        return sorted(matches)

    def search_glob(self, pattern: str) -> list[str]:
        """Project-relative paths of files matching a glob pattern."""
        self._require(Capability.SEARCH_GLOB, pattern)
        return [self._relative(p) for p in self._walk(pattern)]

    def search_text(self, pattern: str, glob: str = "**/*") -> list[tuple[str, int, str]]:
        """
        Regex search over project files.

        Returns:
            (path, line number, line) for each matching line.

        Raises:
            ToolError: If ``pattern`` is not a valid regex.
        """
        self._require(Capability.SEARCH_TEXT, pattern)
        try:
            regex = re.compile(pattern)
        except re.error as e:
            raise ToolError(f"Invalid search pattern {pattern!r}: {e}")

        hits = []
        for path in self._walk(glob):
            try:
                lines = path.read_text(encoding="utf-8").splitlines()
            except (OSError, UnicodeDecodeError):
                continue
            for number, line in enumerate(lines, start=1):
                if regex.search(line):
                    hits.append((self._relative(path), number, line))
        return hits

    # Changes

    def write_new_file(self, path: str, content: str) -> None:
        """
        Create a file that does not exist yet.

        Raises:
            UnauthorizedError: Without write-new-file, outside the root, or
                               if the file already exists.
        """
        self._require(Capability.WRITE_NEW_FILE, path)
        target = self._resolve(path, Capability.WRITE_NEW_FILE)
        if target.exists():
            raise UnauthorizedError(
                self.role, Capability.WRITE_NEW_FILE.value, f"file already exists: {path}"
            )
        try:
            safe_write(target, content)
        except FileSystemError as e:
            raise ToolError(str(e))
        self._touch(target)
        self._log("file_written", {"path": self._relative(target)})

    def edit_file(self, path: str, old_text: str, new_text: str) -> None:
        """
        Replace the first occurrence of ``old_text`` in an existing file.

        Raises:
            UnauthorizedError: Without edit-existing-file, outside the root, or
                               if the file does not exist.
            ToolError: If ``old_text`` is not present.
        """
        self._require(Capability.EDIT_EXISTING_FILE, path)
        target = self._resolve(path, Capability.EDIT_EXISTING_FILE)
        if not target.is_file():
            raise UnauthorizedError(
                self.role, Capability.EDIT_EXISTING_FILE.value, f"file does not exist: {path}"
            )
        try:
            content = read_file(target)
            if old_text not in content:
                raise ToolError(f"text to replace not found in {path}")
            safe_write(target, content.replace(old_text, new_text, 1))
        except FileSystemError as e:
            raise ToolError(str(e))
        self._touch(target)
        self._log("file_edited", {"path": self._relative(target)})

    def run_command(self, command: str, timeout: Optional[float] = None) -> CommandResult:
        """
        Run a shell command in the project root.

        Raises:
            UnauthorizedError: Without execute-shell.
            ToolError: If the command cannot start or times out.
        """
        self._require(Capability.EXECUTE_SHELL, command)
        wait = timeout or self.command_timeout
        self._log("command_start", {"command": command, "timeout": wait})
        try:
            proc = subprocess.run(
                command,
                shell=True,
                capture_output=True,
                text=True,
                cwd=self.root,
                timeout=wait,
            )
        except subprocess.TimeoutExpired:
            self._log("command_timeout", {"command": command}, level="error")
            raise ToolError(f"command timed out after {wait}s: {command}")
        except OSError as e:
            raise ToolError(f"cannot run {command!r}: {e}")

        return CommandResult(
            command=command,
            returncode=proc.returncode,
            stdout=proc.stdout,
            stderr=proc.stderr,
        )
