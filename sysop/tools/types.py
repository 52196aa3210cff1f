"""
sysop.tools.types — Data types shared by the execution engine and MCP.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from enum import Enum


class ToolKind(str, Enum):
    """What a registered capability does; selects the executor branch."""

    SHELL = "shell"
    CODE = "code"
    FILE_READ = "file_read"
    FILE_WRITE = "file_write"
    FILE_SEARCH = "file_search"
    MCP = "mcp"


class ExecutionStatus(str, Enum):
    """Terminal outcome of one execution attempt."""

    COMPLETED = "completed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"
    REFUSED = "refused"
    FAILED = "failed"
    DRY_RUN = "dry_run"


@dataclass(frozen=True)
class OutputLimits:
    """Byte and line ceilings applied to combined stdout/stderr."""

    max_bytes: int = 32_768
    max_lines: int = 400


@dataclass
class ExecutionResult:
    """Outcome of one tool execution.

    Attributes
    ----------
    status : ExecutionStatus
        How the attempt ended.  A nonzero exit code is still ``COMPLETED``.
    exit_code : int | None
        Process exit status (``None`` when no process ran or it was killed).
    stdout : str
        Captured standard output (or the text result of a file operation).
    stderr : str
        Captured standard error, or the failure / refusal message.
    truncated : bool
        True when a byte or line ceiling cut the captured output short.
    duration : float
        Wall-clock seconds.
    """

    status: ExecutionStatus
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    truncated: bool = False
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == ExecutionStatus.COMPLETED and not self.exit_code

    # ---- constructors ----------------------------------------------------

    @classmethod
    def refused(cls, reason: str) -> ExecutionResult:
        return cls(status=ExecutionStatus.REFUSED, stderr=reason)

    @classmethod
    def failed(cls, reason: str, duration: float = 0.0) -> ExecutionResult:
        return cls(status=ExecutionStatus.FAILED, stderr=reason, duration=duration)

    @classmethod
    def dry_run(cls, description: str) -> ExecutionResult:
        return cls(status=ExecutionStatus.DRY_RUN, stdout=f"Would run: {description}")

    @classmethod
    def text(cls, content: str, duration: float = 0.0, truncated: bool = False) -> ExecutionResult:
        """A completed non-process result (file read, search, MCP reply)."""
        return cls(
            status=ExecutionStatus.COMPLETED,
            exit_code=0,
            stdout=content,
            truncated=truncated,
            duration=duration,
        )

    # ---- rendering -------------------------------------------------------

    def to_tool_content(self) -> str:
        """Render the result as the text the model reads in a tool message."""
        if self.status == ExecutionStatus.REFUSED:
            return f"[REFUSED] {self.stderr}"
        if self.status == ExecutionStatus.FAILED:
            return f"[ERROR] {self.stderr}"
        if self.status == ExecutionStatus.DRY_RUN:
            return f"[SAFE MODE] {self.stdout} (not executed)"

        parts: list[str] = []
        if self.status == ExecutionStatus.CANCELLED:
            parts.append("[CANCELLED] Interrupted by the user.")
        elif self.status == ExecutionStatus.TIMED_OUT:
            parts.append(f"[TIMED OUT] Killed after {self.duration:.0f}s.")
        elif self.exit_code is not None:
            parts.append(f"[EXIT CODE: {self.exit_code}]")

        if self.stdout:
            parts.append(self.stdout.rstrip("\n"))
        if self.stderr:
            parts.append(f"[STDERR]\n{self.stderr.rstrip()}")
        if not self.stdout and not self.stderr:
            parts.append("(no output)")
        if self.truncated:
            parts.append("[OUTPUT TRUNCATED: output limit reached, the rest was discarded]")
        return "\n".join(parts)


@dataclass
class ExecutionContext:
    """Runtime values injected into tool functions as ``_ctx``."""

    limits: OutputLimits
    cancel: asyncio.Event | None = None
    timeout: float | None = None
    grace: float = 2.0
    python: str = "python3"
