"""sysop.mcp — MCP server configuration, transports and supervision."""

from sysop.mcp.config import McpConfig, McpServerConfig
from sysop.mcp.supervisor import (
    MCP_TIMEOUT,
    ConnectionState,
    McpConnection,
    McpSupervisor,
    McpTool,
)

__all__ = [
    "MCP_TIMEOUT",
    "ConnectionState",
    "McpConfig",
    "McpConnection",
    "McpServerConfig",
    "McpSupervisor",
    "McpTool",
]
