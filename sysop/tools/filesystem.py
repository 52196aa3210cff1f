"""
sysop.tools.filesystem — Bounded file read, write and name search.

These run synchronously and cannot be cancelled; each one is bounded
(read size, search hit count) so it finishes quickly.  I/O problems raise
``ToolExecutionError``, which the agent reports back to the model.
"""

from __future__ import annotations

import fnmatch
import os
import time
from pathlib import Path

from sysop.errors import ToolExecutionError
from sysop.tools.process import OutputCapture
from sysop.tools.registry import tool
from sysop.tools.types import ExecutionContext, ExecutionResult, ToolKind

MAX_SEARCH_RESULTS = 200

# Directories never worth descending into
_SKIP_DIRS = {".git", ".hg", ".svn", "__pycache__", "node_modules", ".venv", ".mypy_cache"}


def _describe(exc: Exception) -> str:
    if isinstance(exc, OSError) and exc.strerror:
        return exc.strerror
    return str(exc)


@tool(name="read_file", kind=ToolKind.FILE_READ, description="Read a text file.")
def read_file(path: str, *, _ctx: ExecutionContext) -> ExecutionResult:
    """Read the file at *path*, up to the output limits.

    Parameters
    ----------
    path : str
        File to read (``~`` is expanded).
    """
    start = time.monotonic()
    try:
        target = Path(path).expanduser()
        if not target.is_file():
            raise ToolExecutionError(f"Not a file: {target}")
        with open(target, "rb") as fh:
            head = fh.read(_ctx.limits.max_bytes + 1)
    except (OSError, ValueError, RuntimeError) as exc:
        raise ToolExecutionError(f"Cannot read {path}: {_describe(exc)}") from exc

    if b"\x00" in head[:8192]:
        raise ToolExecutionError(f"Refusing to read binary file: {target}")

    capture = OutputCapture(_ctx.limits)
    capture.feed("stdout", head)
    return ExecutionResult.text(
        capture.text("stdout"),
        duration=time.monotonic() - start,
        truncated=capture.truncated,
    )


@tool(
    name="write_file",
    kind=ToolKind.FILE_WRITE,
    description="Write content to a file, creating parent directories (overwrites).",
)
def write_file(path: str, content: str, *, _ctx: ExecutionContext) -> ExecutionResult:
    """Write *content* to *path*.

    Parameters
    ----------
    path : str
        Destination file (``~`` is expanded).
    content : str
        Full new file content.
    """
    start = time.monotonic()
    try:
        target = Path(path).expanduser().resolve()
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
    except (OSError, ValueError, RuntimeError) as exc:
        raise ToolExecutionError(f"Cannot write {path}: {_describe(exc)}") from exc
    size = len(content.encode("utf-8"))
    return ExecutionResult.text(
        f"Wrote {size} bytes to {target}", duration=time.monotonic() - start
    )


@tool(
    name="search",
    kind=ToolKind.FILE_SEARCH,
    description="Recursively find files whose name matches a glob pattern (e.g. '*.log').",
)
def search(pattern: str, directory: str = ".", *, _ctx: ExecutionContext) -> ExecutionResult:
    """Find files under *directory* whose name matches *pattern*.

    Parameters
    ----------
    pattern : str
        Filename glob such as ``*.conf`` or ``nginx*``.
    directory : str
        Root directory of the search.
    """
    start = time.monotonic()
    try:
        root = Path(directory).expanduser()
        if not root.is_dir():
            raise ToolExecutionError(f"Not a directory: {root}")
    except (OSError, ValueError, RuntimeError) as exc:
        raise ToolExecutionError(f"Cannot search {directory}: {_describe(exc)}") from exc

    hits: list[str] = []
    truncated = False
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in _SKIP_DIRS)
        for name in sorted(filenames):
            if fnmatch.fnmatch(name, pattern):
                if len(hits) >= MAX_SEARCH_RESULTS:
                    truncated = True
                    break
                hits.append(str(Path(dirpath, name)))
        if truncated:
            break

    if not hits:
        body = f"No files matching '{pattern}' under {root}"
    else:
        body = f"Found {len(hits)} file(s) matching '{pattern}':\n" + "\n".join(hits)
    return ExecutionResult.text(body, duration=time.monotonic() - start, truncated=truncated)
