"""Tests for sysop.mcp — server table, transports and the supervisor."""

from __future__ import annotations

import asyncio
import json
import sys
import time
from pathlib import Path
from typing import Any, Callable

import httpx
import pytest

from sysop.errors import (
    ConfigError,
    McpConnectionError,
    McpError,
    McpProtocolError,
    McpServerError,
    McpServerExists,
    McpServerNotFound,
    McpTimeout,
    McpUnavailable,
)
from sysop.mcp import ConnectionState, McpConfig, McpServerConfig, McpSupervisor
from sysop.mcp.transport import HttpTransport, _parse_sse
from sysop.tools.types import ExecutionStatus

FAKE_SERVER = Path(__file__).with_name("fake_mcp_server.py")

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="process groups are POSIX-only")


def _fake(name: str = "fake", **env: str) -> McpServerConfig:
    return McpServerConfig(name=name, command=sys.executable, args=[str(FAKE_SERVER)], env=env)


def _broken(name: str = "broken") -> McpServerConfig:
    return McpServerConfig(name=name, command=sys.executable, args=["-c", "import sys; sys.exit(3)"])


async def _wait_for(predicate: Callable[[], bool], timeout: float = 10.0) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.02)


# ---------------------------------------------------------------------------
# Server table
# ---------------------------------------------------------------------------


class TestMcpConfig:
    def test_missing_file_means_no_servers(self) -> None:
        assert McpConfig.load().servers == {}

    def test_added_servers_are_persisted(self, sysop_home: Path) -> None:
        config = McpConfig.load()
        config.add_server("fs", "npx", ["-y", "@modelcontextprotocol/server-filesystem", "/srv"], {"NODE_ENV": "production"})
        config.add_http_server("tracker", "https://mcp.example.com/mcp", {"Authorization": "Bearer t"})

        assert (sysop_home / "mcp.yaml").exists()
        loaded = McpConfig.load()
        fs = loaded.get("fs")
        assert fs.transport == "stdio"
        assert fs.args[-1] == "/srv"
        assert fs.env == {"NODE_ENV": "production"}
        tracker = loaded.get("tracker")
        assert tracker.transport == "http"
        assert tracker.headers == {"Authorization": "Bearer t"}
        assert tracker.describe() == "http https://mcp.example.com/mcp"

    def test_duplicate_add_is_rejected(self) -> None:
        config = McpConfig.load()
        config.add_server("fs", "npx")
        with pytest.raises(McpServerExists):
            config.add_server("fs", "uvx")
        with pytest.raises(McpServerExists):
            config.add_http_server("fs", "https://x.test/mcp")

    def test_remove(self) -> None:
        config = McpConfig.load()
        config.add_server("fs", "npx")
        config.remove_server("fs")
        assert McpConfig.load().servers == {}
        with pytest.raises(McpServerNotFound):
            config.remove_server("fs")

    def test_env_management(self) -> None:
        config = McpConfig.load()
        config.add_server("gh", "github-mcp")
        config.set_env("gh", "GITHUB_TOKEN", "secret")
        assert McpConfig.load().get("gh").env == {"GITHUB_TOKEN": "secret"}
        assert config.remove_env("gh", "GITHUB_TOKEN") is True
        assert config.remove_env("gh", "GITHUB_TOKEN") is False
        assert McpConfig.load().get("gh").env == {}
        with pytest.raises(McpServerNotFound):
            config.set_env("nope", "A", "b")

    def test_headers_only_for_http(self) -> None:
        config = McpConfig.load()
        config.add_server("local", "server-bin")
        config.add_http_server("remote", "https://mcp.test/mcp")
        with pytest.raises(ConfigError, match="stdio"):
            config.set_header("local", "Authorization", "Bearer x")
        config.set_header("remote", "Authorization", "Bearer x")
        assert McpConfig.load().get("remote").headers == {"Authorization": "Bearer x"}

    def test_duplicate_names_in_file(self, sysop_home: Path) -> None:
        (sysop_home / "mcp.yaml").write_text(
            "servers:\n"
            "  fs:\n    command: npx\n"
            "  fs:\n    command: uvx\n",
            encoding="utf-8",
        )
        with pytest.raises(ConfigError, match="duplicate key 'fs'"):
            McpConfig.load()

    def test_invalid_entries(self, sysop_home: Path) -> None:
        (sysop_home / "mcp.yaml").write_text("servers:\n  remote:\n    transport: http\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="url"):
            McpConfig.load()

    def test_invalid_yaml(self, sysop_home: Path) -> None:
        (sysop_home / "mcp.yaml").write_text("servers: [oops\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            McpConfig.load()


# ---------------------------------------------------------------------------
# HTTP transport
# ---------------------------------------------------------------------------


def _http(handler: Callable[[httpx.Request], httpx.Response]) -> HttpTransport:
    config = McpServerConfig(
        name="remote",
        transport="http",
        url="https://mcp.test/mcp",
        headers={"Authorization": "Bearer token"},
    )
    return HttpTransport(config, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


class TestHttpTransport:
    async def test_json_replies_and_session_id(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            body = json.loads(request.content)
            if "id" not in body:
                return httpx.Response(202)
            if body["method"] == "initialize":
                return httpx.Response(
                    200,
                    json={"jsonrpc": "2.0", "id": body["id"], "result": {"capabilities": {}}},
                    headers={"Mcp-Session-Id": "session-1"},
                )
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": {"tools": []}})

        transport = _http(handler)
        await transport.start()
        assert await transport.request("initialize", {}) == {"capabilities": {}}
        await transport.notify("notifications/initialized")
        assert await transport.request("tools/list") == {"tools": []}

        assert "mcp-session-id" not in seen[0].headers
        assert all(r.headers["mcp-session-id"] == "session-1" for r in seen[1:])
        assert all(r.headers["authorization"] == "Bearer token" for r in seen)
        assert "text/event-stream" in seen[0].headers["accept"]

    async def test_event_stream_reply(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            events = (
                'event: message\ndata: {"jsonrpc": "2.0", "method": "notifications/progress"}\n\n'
                f'event: message\ndata: {{"jsonrpc": "2.0", "id": {body["id"]}, "result": {{"ok": true}}}}\n\n'
            )
            return httpx.Response(200, text=events, headers={"Content-Type": "text/event-stream"})

        transport = _http(handler)
        await transport.start()
        assert await transport.request("tools/call", {"name": "x"}) == {"ok": True}

    async def test_error_object(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            body = json.loads(request.content)
            return httpx.Response(200, json={
                "jsonrpc": "2.0",
                "id": body["id"],
                "error": {"code": -32602, "message": "Unknown tool"},
            })

        transport = _http(handler)
        await transport.start()
        with pytest.raises(McpServerError, match="Unknown tool") as info:
            await transport.request("tools/call", {"name": "x"})
        assert info.value.code == -32602

    async def test_http_error_status(self) -> None:
        transport = _http(lambda request: httpx.Response(503, text="unavailable"))
        await transport.start()
        with pytest.raises(McpConnectionError, match="HTTP 503"):
            await transport.request("tools/list")

    async def test_unreachable_endpoint(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        transport = _http(handler)
        await transport.start()
        with pytest.raises(McpConnectionError):
            await transport.request("tools/list")

    async def test_mismatched_id(self) -> None:
        transport = _http(lambda request: httpx.Response(200, json={"jsonrpc": "2.0", "id": 999, "result": {}}))
        await transport.start()
        with pytest.raises(McpProtocolError, match="no response"):
            await transport.request("tools/list")

    def test_parse_sse_joins_multiline_data(self) -> None:
        body = 'data: {"a":\ndata: 1}\n\n: comment\n\ndata: {"b": 2}'
        assert _parse_sse(body) == [{"a": 1}, {"b": 2}]


# ---------------------------------------------------------------------------
# Supervisor over stdio
# ---------------------------------------------------------------------------


@pytest.fixture
async def supervisor():
    sup = McpSupervisor(
        McpConfig(servers={"fake": _fake(FAKE_GREETING="hello")}),
        max_failures=3,
        restart_delay=0.05,
    )
    yield sup
    await sup.shutdown()


@posix_only
class TestSupervisorCalls:
    async def test_handshake_collects_every_page(self, supervisor: McpSupervisor) -> None:
        assert await supervisor.start_all() == {"fake": None}
        conn = supervisor.connections["fake"]
        assert conn.state == ConnectionState.READY
        assert [t.name for t in conn.tools] == ["echo", "env", "fail", "hang", "crash"]
        assert list(supervisor.available_tools()) == ["fake"]
        status = supervisor.status()[0]
        assert status.tools == 5
        assert status.state == ConnectionState.READY

    async def test_call_starts_lazily(self, supervisor: McpSupervisor) -> None:
        result = await supervisor.call("fake", "echo", {"text": "hi there"})
        assert result.status == ExecutionStatus.COMPLETED
        assert result.stdout == "hi there"
        assert result.exit_code == 0

    async def test_configured_environment_reaches_server(self, supervisor: McpSupervisor) -> None:
        result = await supervisor.call("fake", "env", {"name": "FAKE_GREETING"})
        assert result.stdout == "hello"

    async def test_tool_error_result(self, supervisor: McpSupervisor) -> None:
        result = await supervisor.call("fake", "fail")
        assert result.status == ExecutionStatus.COMPLETED
        assert result.exit_code == 1
        assert result.stderr == "boom"

    async def test_error_reply_is_not_a_fault(self, supervisor: McpSupervisor) -> None:
        with pytest.raises(McpServerError, match="Unknown tool"):
            await supervisor.call("fake", "does_not_exist")
        conn = supervisor.connections["fake"]
        assert conn.state == ConnectionState.READY
        assert conn.failures == 0

    async def test_unknown_server(self, supervisor: McpSupervisor) -> None:
        with pytest.raises(McpServerNotFound):
            await supervisor.call("github", "create_issue")

    async def test_unstartable_command(self) -> None:
        sup = McpSupervisor(
            McpConfig(servers={"ghost": McpServerConfig(name="ghost", command="sysop-no-such-binary-xyz")}),
            restart_delay=10.0,
        )
        try:
            outcome = await sup.start_all()
            assert "cannot start" in (outcome["ghost"] or "")
            conn = sup.connections["ghost"]
            assert conn.state == ConnectionState.FAILED
            assert not conn.terminal
            assert conn.restart_task is not None
        finally:
            await sup.shutdown()


@posix_only
class TestSupervisorFaults:
    async def test_timeout_faults_and_restarts(self, supervisor: McpSupervisor) -> None:
        await supervisor.start_all()
        with pytest.raises(McpTimeout):
            await supervisor.call("fake", "hang", deadline=0.3)

        conn = supervisor.connections["fake"]
        assert conn.failures == 1
        assert conn.state == ConnectionState.FAILED
        assert not conn.terminal
        # Calls while a restart is pending fail fast
        with pytest.raises(McpUnavailable, match="restarting"):
            await supervisor.call("fake", "echo", {"text": "x"})

        await _wait_for(lambda: conn.state == ConnectionState.READY)
        result = await supervisor.call("fake", "echo", {"text": "back"})
        assert result.stdout == "back"
        assert conn.failures == 0

    async def test_crash_is_counted_once(self, supervisor: McpSupervisor) -> None:
        await supervisor.start_all()
        with pytest.raises(McpConnectionError):
            await supervisor.call("fake", "crash")
        conn = supervisor.connections["fake"]
        assert conn.failures == 1
        assert "fake" not in supervisor.available_tools()

        await _wait_for(lambda: conn.state == ConnectionState.READY)
        assert (await supervisor.call("fake", "echo", {"text": "ok"})).stdout == "ok"

    async def test_repeated_faults_are_terminal(self) -> None:
        sup = McpSupervisor(McpConfig(servers={"broken": _broken()}), max_failures=3, restart_delay=0.0)
        try:
            outcome = await sup.start_all()
            assert outcome["broken"] is not None

            conn = sup.connections["broken"]
            await _wait_for(lambda: conn.terminal)
            assert conn.state == ConnectionState.FAILED
            assert conn.failures == 3
            # Terminal: nothing restarts it on its own
            await asyncio.sleep(0.1)
            assert conn.failures == 3

            with pytest.raises(McpUnavailable, match="mcp restart broken"):
                await sup.call("broken", "echo")
        finally:
            await sup.shutdown()

    async def test_manual_restart_clears_terminal_state(self) -> None:
        sup = McpSupervisor(McpConfig(servers={"broken": _broken()}), max_failures=2, restart_delay=0.0)
        try:
            await sup.start_all()
            conn = sup.connections["broken"]
            await _wait_for(lambda: conn.terminal)

            # The operator fixes the server, then restarts it
            conn.config = _fake("broken")
            await sup.restart("broken")
            assert conn.state == ConnectionState.READY
            assert conn.failures == 0
            assert not conn.terminal
            assert (await sup.call("broken", "echo", {"text": "fixed"})).stdout == "fixed"
        finally:
            await sup.shutdown()

    async def test_manual_restart_of_still_broken_server(self) -> None:
        sup = McpSupervisor(McpConfig(servers={"broken": _broken()}), max_failures=2, restart_delay=5.0)
        try:
            await sup.start_all()
            conn = sup.connections["broken"]
            with pytest.raises(McpError):
                await sup.restart("broken")
            assert conn.failures == 1
            assert not conn.terminal
        finally:
            await sup.shutdown()


@posix_only
class TestReload:
    async def test_removed_and_added_servers(self, supervisor: McpSupervisor) -> None:
        await supervisor.start_all()
        outcome = await supervisor.reload_config(McpConfig(servers={"other": _fake("other")}))
        assert outcome == {"other": None}
        assert list(supervisor.connections) == ["other"]
        assert supervisor.connections["other"].state == ConnectionState.READY

    async def test_unchanged_entry_is_left_alone(self, supervisor: McpSupervisor) -> None:
        await supervisor.start_all()
        before = supervisor.connections["fake"]
        outcome = await supervisor.reload_config(McpConfig(servers={"fake": _fake(FAKE_GREETING="hello")}))
        assert outcome == {}
        assert supervisor.connections["fake"] is before

    async def test_changed_entry_is_restarted(self, supervisor: McpSupervisor) -> None:
        await supervisor.start_all()
        await supervisor.reload_config(McpConfig(servers={"fake": _fake(FAKE_GREETING="bonjour")}))
        result = await supervisor.call("fake", "env", {"name": "FAKE_GREETING"})
        assert result.stdout == "bonjour"

    async def test_reload_reads_the_file(self, supervisor: McpSupervisor, sysop_home: Path) -> None:
        McpConfig.load().add_server("from_file", sys.executable, [str(FAKE_SERVER)])
        outcome = await supervisor.reload_config()
        assert outcome == {"from_file": None}
        assert "fake" not in supervisor.connections

    async def test_shutdown_stops_everything(self, supervisor: McpSupervisor) -> None:
        await supervisor.start_all()
        conn = supervisor.connections["fake"]
        await supervisor.shutdown()
        assert conn.transport is None
        assert conn.tools == []

    async def test_calls_after_shutdown_are_unavailable(self, supervisor: McpSupervisor) -> None:
        await supervisor.start_all()
        conn = supervisor.connections["fake"]
        await supervisor.shutdown()

        assert conn.state != ConnectionState.READY
        with pytest.raises(McpUnavailable, match="shut down"):
            await supervisor.call("fake", "echo", {"text": "late"})
        assert conn.transport is None


@posix_only
class TestCallDeadline:
    async def test_silent_handshake_is_bounded_by_the_call_deadline(self) -> None:
        silent = McpServerConfig(
            name="silent", command=sys.executable, args=["-c", "import time; time.sleep(30)"]
        )
        sup = McpSupervisor(McpConfig(servers={"silent": silent}), restart_delay=10.0)
        try:
            started = time.monotonic()
            with pytest.raises(McpTimeout, match="not ready within 0.5s"):
                await sup.call("silent", "echo", {"text": "x"}, deadline=0.5)
            assert time.monotonic() - started < 3
            # The handshake itself carries on; giving up is not a fault
            conn = sup.connections["silent"]
            assert conn.state == ConnectionState.STARTING
            assert conn.failures == 0
        finally:
            await sup.shutdown()

    async def test_handshake_time_counts_against_the_deadline(self, supervisor: McpSupervisor) -> None:
        started = time.monotonic()
        with pytest.raises(McpTimeout):
            await supervisor.call("fake", "hang", deadline=1.5)
        assert time.monotonic() - started < 4
