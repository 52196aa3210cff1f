"""
sysop.tools.mcp_dispatch — The ``mcp`` capability.

The model reaches every external MCP tool through this single registered
name.  The sub-tool name is data, not a registry entry, so the closed
catalogue stays closed no matter what the servers advertise.
"""

from __future__ import annotations

from typing import Any

from sysop.tools.registry import tool
from sysop.tools.types import ToolKind


@tool(
    name="mcp",
    kind=ToolKind.MCP,
    description=(
        "Call a tool exposed by a configured MCP server. "
        "The available servers and their tools are listed in the system prompt."
    ),
)
def mcp(server: str, tool: str, arguments: dict | None = None) -> tuple[str, str, dict[str, Any]]:
    """Normalise an ``mcp`` invocation into ``(server, tool, arguments)``.

    Parameters
    ----------
    server : str
        Name of the configured MCP server.
    tool : str
        Name of the tool on that server.
    arguments : dict
        Arguments for the remote tool.
    """
    return server, tool, dict(arguments or {})
