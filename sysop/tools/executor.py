"""
sysop.tools.executor — The execution engine for local operations.

``ExecutionEngine.execute(kind, payload, cancel)`` runs exactly one shell
command, Python snippet, file read, file write or file search and returns
an ``ExecutionResult``.  It does no safety assessment of its own; the
agent loop only calls it after the policy has cleared the invocation.
"""

from __future__ import annotations

import asyncio
import inspect
from typing import Any

from sysop.config import ExecutionSettings
from sysop.errors import ToolExecutionError
from sysop.log import get_logger
from sysop.tools.registry import get_tool_for_kind
from sysop.tools.types import (
    ExecutionContext,
    ExecutionResult,
    OutputLimits,
    ToolKind,
)

log = get_logger(__name__)

LOCAL_KINDS = frozenset(
    {ToolKind.SHELL, ToolKind.CODE, ToolKind.FILE_READ, ToolKind.FILE_WRITE, ToolKind.FILE_SEARCH}
)


class ExecutionEngine:
    """Runs local tool operations under the configured limits.

    Parameters
    ----------
    settings : ExecutionSettings
        Output ceilings, timeout, cancellation grace and interpreter.
    """

    def __init__(self, settings: ExecutionSettings) -> None:
        self.settings = settings
        self.limits = OutputLimits(
            max_bytes=settings.max_output_bytes,
            max_lines=settings.max_output_lines,
        )
        self._python = settings.python_executable()

    def _context(self, cancel: asyncio.Event | None) -> ExecutionContext:
        return ExecutionContext(
            limits=self.limits,
            cancel=cancel,
            timeout=self.settings.timeout,
            grace=self.settings.cancel_grace,
            python=self._python,
        )

    async def execute(
        self,
        kind: ToolKind,
        payload: dict[str, Any],
        cancel: asyncio.Event | None = None,
    ) -> ExecutionResult:
        """Run one local operation.

        Parameters
        ----------
        kind :
            One of the local ``ToolKind`` values.
        payload :
            Tool arguments (already validated against the registry schema).
        cancel :
            Event that, once set, aborts a running shell/code execution.

        Raises
        ------
        ToolExecutionError
            Spawn or I/O failure.  No partial result is produced.
        """
        if kind not in LOCAL_KINDS:
            raise ValueError(f"{kind} is not a local operation")

        entry = get_tool_for_kind(kind)
        ctx = self._context(cancel)
        log.info("execute", tool=entry.name, kind=kind.value)

        try:
            result = entry.func(**payload, _ctx=ctx)
            if inspect.isawaitable(result):
                result = await result
        except TypeError as exc:
            raise ToolExecutionError(f"Bad arguments for {entry.name}: {exc}") from exc
        except ToolExecutionError as exc:
            log.warning("execute_failed", tool=entry.name, error=str(exc))
            raise
        except (OSError, ValueError) as exc:
            log.warning("execute_failed", tool=entry.name, error=str(exc))
            raise ToolExecutionError(f"{entry.name} failed: {exc}") from exc
        return result
