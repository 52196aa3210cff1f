"""
sysop.mcp.transport — JSON-RPC 2.0 channels to MCP servers.

``StdioTransport``
    Owns the server process.  Requests are newline-delimited JSON on
    stdin; a single reader task parses stdout and resolves the pending
    future registered under the response id.  stderr is kept in a small
    ring buffer for diagnostics and never parsed.

``HttpTransport``
    One reusable ``httpx.AsyncClient`` carrying the configured headers.
    Every message is a single POST; the reply is either a JSON body or a
    ``text/event-stream`` body whose ``data:`` events carry the response.

Neither transport enforces a deadline; the supervisor wraps each request
in ``asyncio.wait_for``.  An abandoned request removes its pending entry.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
import os
import signal
import sys
from collections import deque
from typing import Any, Callable, Protocol

import httpx

from sysop.errors import McpConnectionError, McpProtocolError, McpServerError
from sysop.log import get_logger
from sysop.mcp.config import McpServerConfig

log = get_logger(__name__)

# Upper bound for one JSON-RPC line from a stdio server
_LINE_LIMIT = 16 * 1024 * 1024
_STDERR_LINES = 50


class Transport(Protocol):
    """What the supervisor needs from a connection."""

    async def start(self) -> None: ...

    async def request(self, method: str, params: dict[str, Any] | None = None) -> Any: ...

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None: ...

    async def close(self) -> None: ...


def _result_of(server: str, message: dict[str, Any]) -> Any:
    """Return the ``result`` of a response or raise its ``error``."""
    if "error" in message:
        error = message["error"] if isinstance(message["error"], dict) else {}
        raise McpServerError(
            f"{server}: {error.get('message', 'unknown error')}",
            server,
            code=error.get("code"),
        )
    return message.get("result")


# ---------------------------------------------------------------------------
# stdio
# ---------------------------------------------------------------------------


class StdioTransport:
    """Newline-delimited JSON-RPC over a child process's stdin/stdout.

    Parameters
    ----------
    config : McpServerConfig
        Command, arguments and extra environment.
    on_close : Callable[[], None] | None
        Called once when the process goes away without ``close()``.
    """

    def __init__(
        self,
        config: McpServerConfig,
        on_close: Callable[[], None] | None = None,
    ) -> None:
        self.config = config
        self.name = config.name
        self.on_close = on_close
        self.stderr_tail: deque[str] = deque(maxlen=_STDERR_LINES)
        self._process: asyncio.subprocess.Process | None = None
        self._reader_task: asyncio.Task[None] | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._ids = itertools.count(1)
        self._write_lock = asyncio.Lock()
        self._closing = False

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    async def start(self) -> None:
        if self._process is not None:
            return
        env = {**os.environ, **self.config.env}
        try:
            self._process = await asyncio.create_subprocess_exec(
                self.config.command or "",
                *self.config.args,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                limit=_LINE_LIMIT,
                start_new_session=sys.platform != "win32",
            )
        except OSError as exc:
            raise McpConnectionError(
                f"{self.name}: cannot start {self.config.command!r}: {exc.strerror or exc}",
                self.name,
            ) from exc

        log.info("mcp_process_started", server=self.name, pid=self._process.pid)
        self._reader_task = asyncio.create_task(self._read_loop())
        self._stderr_task = asyncio.create_task(self._stderr_loop())

    # ---- sending ---------------------------------------------------------

    async def _write(self, message: dict[str, Any]) -> None:
        if self._process is None or self._process.stdin is None or self._closing:
            raise McpConnectionError(f"{self.name}: not connected", self.name)
        line = json.dumps(message) + "\n"
        async with self._write_lock:
            try:
                self._process.stdin.write(line.encode("utf-8"))
                await self._process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as exc:
                raise McpConnectionError(f"{self.name}: broken pipe", self.name) from exc

    async def request(self, method: str, params: dict[str, Any] | None = None) -> Any:
        request_id = next(self._ids)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._write(
                {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or {}}
            )
            return await future
        finally:
            self._pending.pop(request_id, None)

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        await self._write({"jsonrpc": "2.0", "method": method, "params": params or {}})

    # ---- receiving -------------------------------------------------------

    def _fail_pending(self, error: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    async def _answer_server_request(self, message: dict[str, Any]) -> None:
        # Servers may ping us; everything else (sampling, roots) is unsupported
        if message.get("method") == "ping":
            reply: dict[str, Any] = {"jsonrpc": "2.0", "id": message["id"], "result": {}}
        else:
            reply = {
                "jsonrpc": "2.0",
                "id": message["id"],
                "error": {"code": -32601, "message": f"Method not found: {message.get('method')}"},
            }
        with contextlib.suppress(McpConnectionError):
            await self._write(reply)

    async def _dispatch(self, message: dict[str, Any]) -> None:
        if "method" in message:
            if "id" in message:
                await self._answer_server_request(message)
            else:
                log.debug("mcp_notification", server=self.name, method=message["method"])
            return

        future = self._pending.get(message.get("id"))  # type: ignore[arg-type]
        if future is None or future.done():
            log.debug("mcp_unmatched_response", server=self.name, id=message.get("id"))
            return
        try:
            future.set_result(_result_of(self.name, message))
        except McpServerError as exc:
            future.set_exception(exc)

    async def _read_loop(self) -> None:
        assert self._process is not None and self._process.stdout is not None
        stdout = self._process.stdout
        while True:
            try:
                line = await stdout.readline()
            except ValueError:
                self._fail_pending(
                    McpProtocolError(f"{self.name}: response line exceeds limit", self.name)
                )
                continue
            if not line:
                break
            text = line.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            try:
                message = json.loads(text)
            except json.JSONDecodeError:
                log.warning("mcp_undecodable_line", server=self.name, line=text[:200])
                self._fail_pending(
                    McpProtocolError(f"{self.name}: undecodable response: {text[:120]}", self.name)
                )
                continue
            if isinstance(message, dict):
                await self._dispatch(message)

        code = await self._process.wait()
        if self._closing:
            return
        detail = f" ({self.stderr_tail[-1]})" if self.stderr_tail else ""
        error = McpConnectionError(f"{self.name}: server exited with code {code}{detail}", self.name)
        log.warning("mcp_process_exited", server=self.name, code=code)
        self._fail_pending(error)
        if self.on_close is not None:
            self.on_close()

    async def _stderr_loop(self) -> None:
        assert self._process is not None and self._process.stderr is not None
        while line := await self._process.stderr.readline():
            self.stderr_tail.append(line.decode("utf-8", errors="replace").rstrip())

    # ---- shutdown --------------------------------------------------------

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        proc = self._process
        if proc is not None and proc.returncode is None:
            if proc.stdin is not None:
                with contextlib.suppress(OSError):
                    proc.stdin.close()
            _signal(proc, signal.SIGTERM)
            try:
                await asyncio.wait_for(proc.wait(), timeout=2.0)
            except asyncio.TimeoutError:
                _signal(proc, getattr(signal, "SIGKILL", signal.SIGTERM))
                await proc.wait()
        for task in (self._reader_task, self._stderr_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._fail_pending(McpConnectionError(f"{self.name}: connection closed", self.name))
        log.info("mcp_process_stopped", server=self.name)


def _signal(proc: asyncio.subprocess.Process, sig: int) -> None:
    try:
        if sys.platform == "win32":
            proc.kill()
        else:
            os.killpg(proc.pid, sig)
    except (ProcessLookupError, PermissionError):
        pass


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------


def _parse_sse(body: str) -> list[dict[str, Any]]:
    """Return the JSON payloads of the ``data:`` events in an SSE body."""
    messages: list[dict[str, Any]] = []
    data_lines: list[str] = []
    for line in body.splitlines() + [""]:
        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip())
        elif not line and data_lines:
            payload = json.loads("\n".join(data_lines))
            data_lines = []
            if isinstance(payload, dict):
                messages.append(payload)
    return messages


class HttpTransport:
    """JSON-RPC over HTTP POST (MCP streamable HTTP, request/response subset).

    Parameters
    ----------
    config : McpServerConfig
        URL and headers.
    client : httpx.AsyncClient | None
        Pre-built client (tests inject one with ``httpx.MockTransport``).
    """

    def __init__(
        self,
        config: McpServerConfig,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.config = config
        self.name = config.name
        self.on_close: Callable[[], None] | None = None
        self.session_id: str | None = None
        self._client = client
        self._owns_client = client is None
        self._ids = itertools.count(1)

    async def start(self) -> None:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(60.0, connect=10.0))

    async def _post(self, message: dict[str, Any]) -> httpx.Response:
        if self._client is None:
            raise McpConnectionError(f"{self.name}: not connected", self.name)
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
            **self.config.headers,
        }
        if self.session_id:
            headers["Mcp-Session-Id"] = self.session_id
        try:
            response = await self._client.post(self.config.url or "", json=message, headers=headers)
        except httpx.TransportError as exc:
            raise McpConnectionError(f"{self.name}: {exc}", self.name) from exc
        if response.is_error:
            raise McpConnectionError(
                f"{self.name}: HTTP {response.status_code} {response.text[:200]}", self.name
            )
        if sid := response.headers.get("mcp-session-id"):
            self.session_id = sid
        return response

    async def request(self, method: str, params: dict[str, Any] | None = None) -> Any:
        request_id = next(self._ids)
        response = await self._post(
            {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params or {}}
        )
        content_type = response.headers.get("content-type", "")
        try:
            if "text/event-stream" in content_type:
                candidates = _parse_sse(response.text)
            else:
                body = response.json()
                candidates = body if isinstance(body, list) else [body]
        except (json.JSONDecodeError, ValueError) as exc:
            raise McpProtocolError(f"{self.name}: undecodable response", self.name) from exc

        for message in candidates:
            if isinstance(message, dict) and message.get("id") == request_id:
                return _result_of(self.name, message)
        raise McpProtocolError(f"{self.name}: no response for request {request_id}", self.name)

    async def notify(self, method: str, params: dict[str, Any] | None = None) -> None:
        await self._post({"jsonrpc": "2.0", "method": method, "params": params or {}})

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None


def make_transport(
    config: McpServerConfig,
    on_close: Callable[[], None] | None = None,
) -> StdioTransport | HttpTransport:
    """Build the transport matching ``config.transport``."""
    if config.transport == "http":
        transport = HttpTransport(config)
        transport.on_close = on_close
        return transport
    return StdioTransport(config, on_close=on_close)
