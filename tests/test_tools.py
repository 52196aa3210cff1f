"""Tests for sysop.tools — registry, output capture, process runner and built-in tools."""

from __future__ import annotations

import asyncio
import sys
import time
from pathlib import Path
from unittest.mock import patch

import pytest

# This import triggers auto-registration of all built-in tools
import sysop.tools  # noqa: F401
from sysop.config import ExecutionSettings
from sysop.errors import ToolExecutionError
from sysop.tools.executor import ExecutionEngine
from sysop.tools.filesystem import MAX_SEARCH_RESULTS
from sysop.tools.process import OutputCapture, run_process
from sysop.tools.registry import (
    REGISTRY_NAMES,
    ToolEntry,
    get_all_tools,
    get_tool,
    get_tool_for_kind,
    get_tool_schemas,
    tool,
)
from sysop.tools.types import (
    ExecutionResult,
    ExecutionStatus,
    OutputLimits,
    ToolKind,
)

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="uses /bin/sh")


def _engine(**overrides: object) -> ExecutionEngine:
    return ExecutionEngine(ExecutionSettings(**overrides))


class TestToolRegistry:
    """Verify the @tool decorator and the closed catalogue."""

    def test_catalogue_is_exactly_the_six_capabilities(self) -> None:
        assert set(get_all_tools()) == set(REGISTRY_NAMES)
        assert REGISTRY_NAMES == {"run_cmd", "run_python", "read_file", "write_file", "search", "mcp"}

    def test_get_tool_returns_entry(self) -> None:
        entry = get_tool("read_file")
        assert isinstance(entry, ToolEntry)
        assert entry.kind == ToolKind.FILE_READ

    def test_get_tool_missing_returns_none(self) -> None:
        assert get_tool("delete_everything") is None

    def test_registering_outside_catalogue_fails(self) -> None:
        with pytest.raises(ValueError, match="closed tool catalogue"):
            tool(name="launch_app", kind=ToolKind.SHELL)

    def test_schema_hides_context_parameter(self) -> None:
        entry = get_tool("run_cmd")
        assert entry is not None
        params = entry.schema.parameters
        assert set(params["properties"]) == {"cmd", "cwd"}
        assert params["required"] == ["cmd"]
        assert params["properties"]["cwd"]["default"] == "."
        assert "shell command" in params["properties"]["cmd"]["description"]

    def test_mcp_schema(self) -> None:
        entry = get_tool("mcp")
        assert entry is not None
        props = entry.schema.parameters["properties"]
        assert props["arguments"]["type"] == "object"
        assert entry.schema.parameters["required"] == ["server", "tool"]

    def test_every_kind_has_one_entry(self) -> None:
        for kind in ToolKind:
            assert get_tool_for_kind(kind).kind == kind

    def test_schemas_for_all_tools(self) -> None:
        assert {s.name for s in get_tool_schemas()} == set(REGISTRY_NAMES)


class TestArgumentChecks:
    def setup_method(self) -> None:
        entry = get_tool("run_cmd")
        assert entry is not None
        self.entry = entry

    def test_valid_arguments(self) -> None:
        assert self.entry.check_arguments({"cmd": "ls", "cwd": "/tmp"}) == []

    def test_missing_required(self) -> None:
        assert self.entry.check_arguments({}) == ["missing required argument 'cmd'"]

    def test_unexpected_argument(self) -> None:
        assert "unexpected argument 'shell'" in self.entry.check_arguments({"cmd": "ls", "shell": "zsh"})

    def test_wrong_type(self) -> None:
        assert self.entry.check_arguments({"cmd": ["ls", "-l"]}) == ["argument 'cmd' must be string"]


class TestOutputCapture:
    """Truncation law: within both ceilings the content is byte-exact."""

    def test_within_limits_is_exact(self) -> None:
        capture = OutputCapture(OutputLimits(max_bytes=100, max_lines=10))
        capture.feed("stdout", b"one\ntwo\n")
        capture.feed("stderr", b"warn\n")
        assert capture.raw("stdout") == b"one\ntwo\n"
        assert capture.raw("stderr") == b"warn\n"
        assert not capture.truncated

    def test_byte_ceiling(self) -> None:
        capture = OutputCapture(OutputLimits(max_bytes=10, max_lines=100))
        capture.feed("stdout", b"x" * 8)
        capture.feed("stderr", b"y" * 8)
        assert capture.byte_count == 10
        assert capture.raw("stdout") + capture.raw("stderr") == b"x" * 8 + b"yy"
        assert capture.truncated

    def test_line_ceiling(self) -> None:
        capture = OutputCapture(OutputLimits(max_bytes=10_000, max_lines=3))
        capture.feed("stdout", b"".join(f"line {i}\n".encode() for i in range(10)))
        assert capture.line_count == 3
        assert capture.raw("stdout") == b"line 0\nline 1\nline 2\n"
        assert capture.truncated

    def test_exactly_at_ceiling_is_not_truncated(self) -> None:
        capture = OutputCapture(OutputLimits(max_bytes=6, max_lines=2))
        capture.feed("stdout", b"ab\ncd\n")
        assert not capture.truncated
        assert capture.raw("stdout") == b"ab\ncd\n"

    def test_frozen_capture_ignores_input(self) -> None:
        capture = OutputCapture(OutputLimits())
        capture.feed("stdout", b"before\n")
        capture.freeze()
        capture.feed("stdout", b"after\n")
        assert capture.raw("stdout") == b"before\n"

    def test_split_multibyte_character_is_dropped(self) -> None:
        capture = OutputCapture(OutputLimits(max_bytes=2, max_lines=10))
        capture.feed("stdout", "aé".encode("utf-8"))
        assert capture.text("stdout") == "a"


@posix_only
class TestRunProcess:
    async def test_exit_code_and_streams(self) -> None:
        result = await run_process(
            ["/bin/sh", "-c", "echo out; echo err >&2; exit 3"], limits=OutputLimits()
        )
        assert result.status == ExecutionStatus.COMPLETED
        assert result.exit_code == 3
        assert result.stdout == "out\n"
        assert result.stderr == "err\n"
        assert not result.ok

    async def test_spawn_failure_raises(self) -> None:
        with pytest.raises(ToolExecutionError, match="Cannot start"):
            await run_process(["/definitely/not/a/binary"], limits=OutputLimits())

    async def test_large_output_is_truncated(self) -> None:
        result = await run_process(
            ["/bin/sh", "-c", "i=0; while [ $i -lt 5000 ]; do echo line $i; i=$((i+1)); done"],
            limits=OutputLimits(max_bytes=1000, max_lines=20),
        )
        assert result.truncated
        assert result.stdout.count("\n") == 20
        assert result.exit_code == 0

    async def test_cancel_stops_within_grace(self) -> None:
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.3, cancel.set)
        started = time.monotonic()
        result = await run_process(
            ["/bin/sh", "-c", "echo started; sleep 30; echo never"],
            limits=OutputLimits(),
            cancel=cancel,
            grace=1.0,
        )
        assert result.status == ExecutionStatus.CANCELLED
        assert result.exit_code is None
        assert "never" not in result.stdout
        assert time.monotonic() - started < 5

    async def test_term_resistant_child_is_killed(self) -> None:
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.3, cancel.set)
        result = await run_process(
            ["/bin/sh", "-c", "trap '' TERM; sleep 30"],
            limits=OutputLimits(),
            cancel=cancel,
            grace=0.5,
        )
        assert result.status == ExecutionStatus.CANCELLED

    async def test_timeout(self) -> None:
        result = await run_process(
            ["/bin/sh", "-c", "sleep 30"], limits=OutputLimits(), timeout=0.3, grace=0.5
        )
        assert result.status == ExecutionStatus.TIMED_OUT
        assert "[TIMED OUT]" in result.to_tool_content()


class TestExecutionResult:
    def test_tool_content_for_completed(self) -> None:
        result = ExecutionResult(status=ExecutionStatus.COMPLETED, exit_code=1, stderr="nope\n")
        assert result.to_tool_content() == "[EXIT CODE: 1]\n[STDERR]\nnope"

    def test_tool_content_marks_truncation(self) -> None:
        result = ExecutionResult.text("partial", truncated=True)
        assert result.to_tool_content().endswith("the rest was discarded]")

    def test_refused_and_dry_run(self) -> None:
        assert ExecutionResult.refused("no").to_tool_content() == "[REFUSED] no"
        assert "not executed" in ExecutionResult.dry_run("run_cmd(cmd='ls')").to_tool_content()


class TestFilesystemTools:
    async def test_write_then_read(self, tmp_path: Path) -> None:
        engine = _engine()
        target = tmp_path / "nested" / "notes.txt"
        written = await engine.execute(
            ToolKind.FILE_WRITE, {"path": str(target), "content": "hello\n"}
        )
        assert written.ok
        assert "Wrote 6 bytes" in written.stdout

        read = await engine.execute(ToolKind.FILE_READ, {"path": str(target)})
        assert read.stdout == "hello\n"
        assert not read.truncated

    async def test_read_respects_limits(self, tmp_path: Path) -> None:
        target = tmp_path / "big.log"
        target.write_text("".join(f"{i}\n" for i in range(100)))
        result = await _engine(max_output_lines=5).execute(ToolKind.FILE_READ, {"path": str(target)})
        assert result.stdout == "0\n1\n2\n3\n4\n"
        assert result.truncated

    async def test_read_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ToolExecutionError, match="Not a file"):
            await _engine().execute(ToolKind.FILE_READ, {"path": str(tmp_path / "nope")})

    async def test_overlong_path_is_tool_error(self) -> None:
        with pytest.raises(ToolExecutionError):
            await _engine().execute(ToolKind.FILE_READ, {"path": "a" * 5000})

    @pytest.mark.parametrize(
        "kind,payload",
        [
            (ToolKind.FILE_READ, {"path": "notes\x00.txt"}),
            (ToolKind.FILE_WRITE, {"path": "out\x00.txt", "content": "x"}),
            (ToolKind.FILE_SEARCH, {"pattern": "*.log", "directory": "logs\x00"}),
        ],
    )
    async def test_null_byte_paths_are_tool_errors(self, kind: ToolKind, payload: dict) -> None:
        with pytest.raises(ToolExecutionError):
            await _engine().execute(kind, payload)

    async def test_unexpected_os_error_is_wrapped(self, tmp_path: Path) -> None:
        target = tmp_path / "notes.txt"
        target.write_text("hello")
        with patch("sysop.tools.filesystem.OutputCapture.feed", side_effect=OSError(5, "Input/output error")):
            with pytest.raises(ToolExecutionError, match="read_file failed"):
                await _engine().execute(ToolKind.FILE_READ, {"path": str(target)})

    async def test_read_binary_refused(self, tmp_path: Path) -> None:
        target = tmp_path / "blob.bin"
        target.write_bytes(b"\x00\x01\x02")
        with pytest.raises(ToolExecutionError, match="binary"):
            await _engine().execute(ToolKind.FILE_READ, {"path": str(target)})

    async def test_search(self, tmp_path: Path) -> None:
        (tmp_path / "a.log").write_text("")
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "b.log").write_text("")
        (tmp_path / "c.txt").write_text("")
        (tmp_path / ".git").mkdir()
        (tmp_path / ".git" / "d.log").write_text("")

        result = await _engine().execute(
            ToolKind.FILE_SEARCH, {"pattern": "*.log", "directory": str(tmp_path)}
        )
        assert "Found 2 file(s)" in result.stdout
        assert "d.log" not in result.stdout

    async def test_search_is_capped(self, tmp_path: Path) -> None:
        for i in range(MAX_SEARCH_RESULTS + 5):
            (tmp_path / f"f{i}.tmp").write_text("")
        result = await _engine().execute(
            ToolKind.FILE_SEARCH, {"pattern": "*.tmp", "directory": str(tmp_path)}
        )
        assert result.truncated
        assert f"Found {MAX_SEARCH_RESULTS} file(s)" in result.stdout


@posix_only
class TestExecutionEngine:
    async def test_run_cmd_in_cwd(self, tmp_path: Path) -> None:
        result = await _engine().execute(ToolKind.SHELL, {"cmd": "pwd", "cwd": str(tmp_path)})
        assert result.stdout.strip() == str(tmp_path.resolve())

    async def test_run_python(self) -> None:
        result = await _engine(python=sys.executable).execute(ToolKind.CODE, {"code": "print(6 * 7)"})
        assert result.stdout.strip() == "42"

    async def test_bad_cwd_is_tool_error(self, tmp_path: Path) -> None:
        with pytest.raises(ToolExecutionError):
            await _engine().execute(ToolKind.SHELL, {"cmd": "ls", "cwd": str(tmp_path / "missing")})

    async def test_cancel_event_is_honoured(self) -> None:
        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.2, cancel.set)
        result = await _engine(cancel_grace=0.5).execute(ToolKind.SHELL, {"cmd": "sleep 30"}, cancel)
        assert result.status == ExecutionStatus.CANCELLED

    async def test_mcp_is_not_local(self) -> None:
        with pytest.raises(ValueError):
            await _engine().execute(ToolKind.MCP, {"server": "x", "tool": "y"})
