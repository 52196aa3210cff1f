"""
sysop.mcp.supervisor — Keeps the configured MCP servers alive.

One ``McpConnection`` per configured server name.  The supervisor is the
only writer of the connection table; the agent loop just calls
``call()``.

State machine per connection::

    STARTING ──handshake ok──▶ READY
        │                        │ fault (exit, broken pipe, timeout,
        │ fault                  │ undecodable reply)
        ▼                        ▼
      FAILED ◀───────────────────┘
        │ failures < max_failures: restart scheduled
        ├──(after delay)──▶ RESTARTING ──handshake ok──▶ READY
        │
        └──(failures == max_failures)──▶ FAILED (terminal, no restart)

A terminal connection stays down until ``restart(name)`` is called or
``reload_config()`` sees a changed entry.  Faults are returned to the
caller immediately; calls arriving while a server restarts fail fast.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from sysop import __version__
from sysop.errors import (
    McpConnectionError,
    McpError,
    McpProtocolError,
    McpServerError,
    McpServerNotFound,
    McpTimeout,
    McpUnavailable,
)
from sysop.log import get_logger
from sysop.mcp.config import McpConfig, McpServerConfig
from sysop.mcp.transport import Transport, make_transport
from sysop.tools.process import OutputCapture
from sysop.tools.types import ExecutionResult, ExecutionStatus, OutputLimits

log = get_logger(__name__)

# Fixed per-call deadline in seconds
MCP_TIMEOUT = 30.0
PROTOCOL_VERSION = "2024-11-05"


class ConnectionState(str, Enum):
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"
    RESTARTING = "restarting"


@dataclass(frozen=True)
class McpTool:
    """A tool advertised by a server through ``tools/list``."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=dict)


@dataclass
class McpConnection:
    """Live or restarting handle to one configured server."""

    name: str
    config: McpServerConfig
    state: ConnectionState = ConnectionState.STARTING
    failures: int = 0
    terminal: bool = False
    tools: list[McpTool] = field(default_factory=list)
    transport: Transport | None = None
    last_error: str | None = None
    start_task: asyncio.Task[None] | None = None
    restart_task: asyncio.Task[None] | None = None


@dataclass(frozen=True)
class ConnectionStatus:
    """Read-only snapshot for display."""

    name: str
    state: ConnectionState
    transport: str
    tools: int
    failures: int
    last_error: str | None


class McpSupervisor:
    """Owns every MCP connection.

    Parameters
    ----------
    config : McpConfig
        The server table.
    max_failures : int
        Consecutive faults after which a connection is terminally FAILED.
    restart_delay : float
        Base delay before a restart; multiplied by the failure count.
    limits : OutputLimits | None
        Ceilings applied to text returned by remote tools.
    """

    def __init__(
        self,
        config: McpConfig,
        max_failures: int = 3,
        restart_delay: float = 1.0,
        limits: OutputLimits | None = None,
    ) -> None:
        self.config = config
        self.max_failures = max_failures
        self.restart_delay = restart_delay
        self.limits = limits or OutputLimits()
        self.connections: dict[str, McpConnection] = {
            name: McpConnection(name=name, config=server)
            for name, server in config.servers.items()
        }
        self._closing: set[asyncio.Task[None]] = set()
        self._closed = False

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _get(self, name: str) -> McpConnection:
        try:
            return self.connections[name]
        except KeyError:
            raise McpServerNotFound(name) from None

    def available_tools(self) -> dict[str, list[McpTool]]:
        """Tools of every READY server, for prompt construction."""
        return {
            name: list(conn.tools)
            for name, conn in self.connections.items()
            if conn.state == ConnectionState.READY
        }

    def status(self) -> list[ConnectionStatus]:
        return [
            ConnectionStatus(
                name=conn.name,
                state=conn.state,
                transport=conn.config.describe(),
                tools=len(conn.tools),
                failures=conn.failures,
                last_error=conn.last_error,
            )
            for conn in self.connections.values()
        ]

    # ------------------------------------------------------------------
    # Starting
    # ------------------------------------------------------------------

    async def _handshake(self, conn: McpConnection, transport: Transport) -> list[McpTool]:
        await transport.start()
        await transport.request(
            "initialize",
            {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {},
                "clientInfo": {"name": "sysop", "version": __version__},
            },
        )
        await transport.notify("notifications/initialized")

        tools: list[McpTool] = []
        cursor: str | None = None
        while True:
            listing = await transport.request("tools/list", {"cursor": cursor} if cursor else {})
            if not isinstance(listing, dict):
                raise McpProtocolError(f"{conn.name}: malformed tools/list result", conn.name)
            for item in listing.get("tools") or []:
                if isinstance(item, dict) and item.get("name"):
                    tools.append(McpTool(
                        name=item["name"],
                        description=item.get("description") or "",
                        input_schema=item.get("inputSchema") or {},
                    ))
            cursor = listing.get("nextCursor")
            if not cursor:
                return tools

    async def _start(self, conn: McpConnection) -> None:
        """Connect and handshake; on failure record a fault and re-raise."""
        transport: Transport

        def closed() -> None:
            self._on_transport_closed(conn, transport)

        transport = make_transport(conn.config, on_close=closed)
        try:
            tools = await asyncio.wait_for(self._handshake(conn, transport), timeout=MCP_TIMEOUT)
        except asyncio.TimeoutError:
            error: McpError = McpTimeout(
                f"{conn.name}: no handshake within {MCP_TIMEOUT:.0f}s", conn.name
            )
        except McpError as exc:
            error = exc
        except asyncio.CancelledError:
            await transport.close()
            raise
        else:
            conn.transport = transport
            conn.tools = tools
            conn.state = ConnectionState.READY
            conn.last_error = None
            log.info("mcp_server_ready", server=conn.name, tools=len(tools))
            return

        await transport.close()
        self._fault(conn, error)
        raise error

    async def ensure_running(self, name: str) -> McpConnection:
        """Return the READY connection for *name*, starting it if needed.

        Raises
        ------
        McpServerNotFound
            *name* is not configured.
        McpUnavailable
            The server is restarting, has failed permanently, or the
            supervisor has been shut down.
        McpError
            The initial start failed.
        """
        conn = self._get(name)
        if self._closed:
            raise McpUnavailable(f"{name}: MCP servers have been shut down", name)
        if conn.state == ConnectionState.READY:
            return conn
        if conn.terminal:
            raise McpUnavailable(
                f"{name} failed {conn.failures} times and was stopped "
                f"(last error: {conn.last_error}). Use `/mcp restart {name}` after fixing it.",
                name,
            )
        if conn.state in (ConnectionState.FAILED, ConnectionState.RESTARTING):
            raise McpUnavailable(f"{name} is restarting after: {conn.last_error}", name)

        if conn.start_task is None or conn.start_task.done():
            conn.state = ConnectionState.STARTING
            conn.start_task = asyncio.create_task(self._start(conn))
        await asyncio.shield(conn.start_task)
        return conn

    async def start_all(self) -> dict[str, str | None]:
        """Start every configured server concurrently.

        Returns
        -------
        dict[str, str | None]
            Server name → error message (``None`` when it came up).
        """
        names = list(self.connections)
        results = await asyncio.gather(
            *(self.ensure_running(n) for n in names), return_exceptions=True
        )
        outcome: dict[str, str | None] = {}
        for name, result in zip(names, results):
            if isinstance(result, McpError):
                outcome[name] = str(result)
            elif isinstance(result, BaseException):
                raise result
            else:
                outcome[name] = None
        return outcome

    # ------------------------------------------------------------------
    # Faults and restarts
    # ------------------------------------------------------------------

    def _on_transport_closed(self, conn: McpConnection, transport: Transport) -> None:
        if conn.transport is transport and conn.state == ConnectionState.READY:
            self._fault(conn, McpConnectionError(f"{conn.name}: server exited", conn.name), transport)

    def _fault(
        self,
        conn: McpConnection,
        error: McpError,
        transport: Transport | None = None,
    ) -> None:
        """Record one fault; schedule a restart or give up.

        When *transport* is given, the fault only counts if it is still the
        connection's current transport (a dying process reports once).
        """
        if transport is not None and conn.transport is not transport:
            return
        if conn.terminal:
            return

        stale = conn.transport
        conn.transport = None
        conn.tools = []
        if stale is not None:
            task = asyncio.create_task(stale.close())
            self._closing.add(task)
            task.add_done_callback(self._closing.discard)

        conn.failures += 1
        conn.last_error = str(error)
        conn.state = ConnectionState.FAILED
        if conn.failures >= self.max_failures:
            conn.terminal = True
            log.error("mcp_server_failed", server=conn.name, failures=conn.failures, error=str(error))
            return

        delay = self.restart_delay * conn.failures
        log.warning(
            "mcp_restart_scheduled",
            server=conn.name,
            failures=conn.failures,
            delay=delay,
            error=str(error),
        )
        conn.restart_task = asyncio.create_task(self._restart_later(conn, delay))

    async def _restart_later(self, conn: McpConnection, delay: float) -> None:
        await asyncio.sleep(delay)
        conn.state = ConnectionState.RESTARTING
        # _start records its own fault (and the next restart) on failure
        with contextlib.suppress(McpError):
            await self._start(conn)

    async def _stop(self, conn: McpConnection) -> None:
        for task in (conn.restart_task, conn.start_task):
            if task is not None and not task.done() and task is not asyncio.current_task():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError, McpError):
                    await task
        conn.restart_task = None
        conn.start_task = None
        if conn.transport is not None:
            transport, conn.transport = conn.transport, None
            await transport.close()
        conn.tools = []
        if not conn.terminal:
            conn.state = ConnectionState.STARTING

    async def restart(self, name: str) -> McpConnection:
        """Manual restart: clears the failure count and terminal state."""
        conn = self._get(name)
        await self._stop(conn)
        conn.failures = 0
        conn.terminal = False
        conn.last_error = None
        conn.state = ConnectionState.STARTING
        log.info("mcp_manual_restart", server=name)
        return await self.ensure_running(name)

    async def reload_config(self, config: McpConfig | None = None) -> dict[str, str | None]:
        """Re-read ``mcp.yaml`` and apply the differences.

        Removed servers are stopped, new or changed ones are (re)started with
        a clean failure count, unchanged ones are left alone (a terminal
        connection stays terminal until its entry changes).
        """
        new = config or McpConfig.load()
        old_servers = self.config.servers
        self.config = new

        for name in list(self.connections):
            if name not in new.servers:
                await self._stop(self.connections.pop(name))
                log.info("mcp_server_removed", server=name)

        to_start: list[str] = []
        for name, server in new.servers.items():
            if name in self.connections and old_servers.get(name) == server:
                continue
            if name in self.connections:
                await self._stop(self.connections[name])
            self.connections[name] = McpConnection(name=name, config=server)
            to_start.append(name)

        results = await asyncio.gather(
            *(self.ensure_running(n) for n in to_start), return_exceptions=True
        )
        return {
            name: str(r) if isinstance(r, BaseException) else None
            for name, r in zip(to_start, results)
        }

    async def shutdown(self) -> None:
        self._closed = True
        for conn in list(self.connections.values()):
            await self._stop(conn)
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    def _to_result(self, payload: Any, duration: float) -> ExecutionResult:
        if not isinstance(payload, dict):
            raise McpProtocolError("tools/call returned a non-object result")
        pieces: list[str] = []
        for item in payload.get("content") or []:
            kind = item.get("type") if isinstance(item, dict) else None
            if kind == "text":
                pieces.append(str(item.get("text", "")))
            elif kind == "resource":
                resource = item.get("resource") or {}
                pieces.append(str(resource.get("text") or f"[resource {resource.get('uri', '')}]"))
            elif kind:
                pieces.append(f"[{kind} content: {item.get('mimeType', 'unknown type')}]")
        if not pieces and "structuredContent" in payload:
            pieces.append(str(payload["structuredContent"]))

        capture = OutputCapture(self.limits)
        capture.feed("stdout", "\n".join(pieces).encode("utf-8"))
        text = capture.text("stdout")
        if payload.get("isError"):
            return ExecutionResult(
                status=ExecutionStatus.COMPLETED,
                exit_code=1,
                stderr=text,
                truncated=capture.truncated,
                duration=duration,
            )
        return ExecutionResult.text(text, duration=duration, truncated=capture.truncated)

    async def call(
        self,
        server_name: str,
        tool_name: str,
        args: dict[str, Any] | None = None,
        deadline: float = MCP_TIMEOUT,
    ) -> ExecutionResult:
        """Invoke *tool_name* on *server_name* under *deadline* seconds.

        Raises
        ------
        McpError
            Missing server, unavailable server, timeout, connection or
            protocol fault, or a JSON-RPC error reply.
        """
        started = time.monotonic()
        # A pending handshake spends the same deadline; it keeps running
        # in the background if the caller gives up on it
        try:
            conn = await asyncio.wait_for(self.ensure_running(server_name), timeout=deadline)
        except asyncio.TimeoutError:
            raise McpTimeout(
                f"{server_name}: not ready within {deadline:g}s", server_name
            ) from None
        transport = conn.transport
        if transport is None:
            raise McpUnavailable(f"{server_name} is not connected", server_name)
        remaining = max(deadline - (time.monotonic() - started), 0.0)
        try:
            payload = await asyncio.wait_for(
                transport.request("tools/call", {"name": tool_name, "arguments": args or {}}),
                timeout=remaining,
            )
        except asyncio.TimeoutError:
            error = McpTimeout(
                f"{server_name}: {tool_name} did not answer within {deadline:.0f}s", server_name
            )
            self._fault(conn, error, transport)
            raise error from None
        except (McpConnectionError, McpProtocolError) as exc:
            self._fault(conn, exc, transport)
            raise
        except McpServerError:
            raise

        try:
            result = self._to_result(payload, time.monotonic() - started)
        except McpProtocolError as exc:
            self._fault(conn, exc, transport)
            raise
        conn.failures = 0
        log.info("mcp_call", server=server_name, tool=tool_name, duration=round(result.duration, 3))
        return result
