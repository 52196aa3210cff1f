"""
sysop.errors — Exception taxonomy.

Every failure the agent loop can recover from derives from ``SysopError``.
The loop catches these, reports them, and returns to waiting for input;
none of them is allowed to terminate the process.

``OperationCancelled`` is deliberately *not* a ``SysopError``: cancelling
a turn is an outcome, not a failure.
"""

from __future__ import annotations


class SysopError(Exception):
    """Base class for all recoverable sysop errors."""


class ConfigError(SysopError):
    """Configuration file is missing required data or is malformed."""


class ProviderError(SysopError):
    """The language-model backend could not produce a reply.

    Parameters
    ----------
    message : str
        Human readable description.
    kind : str
        ``"auth"``, ``"network"`` or ``"response"`` (malformed reply).
    """

    def __init__(self, message: str, kind: str = "response") -> None:
        super().__init__(message)
        self.kind = kind


class ToolExecutionError(SysopError):
    """A local operation could not be started or performed (spawn / IO fault).

    A nonzero exit status is *not* a ``ToolExecutionError``.
    """


class SafetyViolation(SysopError):
    """An invocation was refused by the safety policy."""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class PersistenceError(SysopError):
    """Session or configuration data could not be read or written."""


# ---------------------------------------------------------------------------
# MCP
# ---------------------------------------------------------------------------


class McpError(SysopError):
    """Base class for failures talking to an MCP server."""

    def __init__(self, message: str, server: str | None = None) -> None:
        super().__init__(message)
        self.server = server


class McpServerNotFound(McpError):
    """No server with the requested name is configured."""

    def __init__(self, server: str) -> None:
        super().__init__(f"MCP server '{server}' is not configured", server)


class McpServerExists(McpError):
    """A server with the requested name is already configured."""

    def __init__(self, server: str) -> None:
        super().__init__(f"MCP server '{server}' already exists", server)


class McpTimeout(McpError):
    """A request did not complete before its deadline."""


class McpConnectionError(McpError):
    """The server process exited, the pipe broke or the endpoint refused us."""


class McpProtocolError(McpError):
    """The server sent something that is not a valid JSON-RPC response."""


class McpServerError(McpError):
    """The server answered with a JSON-RPC error object.

    This is a well-formed reply and does not count as a connection fault.
    """

    def __init__(self, message: str, server: str | None = None, code: int | None = None) -> None:
        super().__init__(message, server)
        self.code = code


class McpUnavailable(McpError):
    """The server is restarting or has failed permanently."""


# ---------------------------------------------------------------------------
# Control flow
# ---------------------------------------------------------------------------


class OperationCancelled(Exception):
    """Raised when the user cancels an in-flight provider or tool call."""
