"""
sysop.tools.shell_exec — Shell command and Python snippet execution.

Commands run through ``sh -c`` (PowerShell on Windows), snippets through
the configured interpreter with ``-c``.  Both are cancellable and their
output is bounded; see ``sysop.tools.process``.

The safety policy has already assessed the arguments by the time these
functions run.
"""

from __future__ import annotations

import os
import sys

from sysop.tools.process import run_process
from sysop.tools.registry import tool
from sysop.tools.types import ExecutionContext, ExecutionResult, ToolKind


def _shell_argv(cmd: str) -> list[str]:
    if sys.platform == "win32":
        return ["powershell", "-NoProfile", "-NonInteractive", "-Command", cmd]
    return ["/bin/sh", "-c", cmd]


@tool(
    name="run_cmd",
    kind=ToolKind.SHELL,
    description=(
        "Run a non-interactive shell command and return its exit code and output. "
        "Interactive programs (editors, pagers, top, ssh) are refused."
    ),
)
async def run_cmd(cmd: str, cwd: str = ".", *, _ctx: ExecutionContext) -> ExecutionResult:
    """Run *cmd* in a subprocess and return the captured result.

    Parameters
    ----------
    cmd : str
        The shell command line to execute.
    cwd : str
        Working directory for the command.
    """
    return await run_process(
        _shell_argv(cmd),
        limits=_ctx.limits,
        cancel=_ctx.cancel,
        timeout=_ctx.timeout,
        grace=_ctx.grace,
        cwd=os.path.expanduser(cwd or "."),
    )


@tool(
    name="run_python",
    kind=ToolKind.CODE,
    description="Execute a Python 3 snippet and return its output.",
)
async def run_python(code: str, *, _ctx: ExecutionContext) -> ExecutionResult:
    """Run *code* with ``python -c``.

    Parameters
    ----------
    code : str
        Python source to execute.  Print anything you want to see.
    """
    return await run_process(
        [_ctx.python, "-c", code],
        limits=_ctx.limits,
        cancel=_ctx.cancel,
        timeout=_ctx.timeout,
        grace=_ctx.grace,
    )
