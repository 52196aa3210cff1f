"""
sysop.tools — Tool registry, execution engine and built-in tools.

Importing this package **registers** the whole closed catalogue by
importing the tool modules.
"""

# Import tool modules so their @tool decorators execute and register
from sysop.tools import filesystem  # noqa: F401
from sysop.tools import mcp_dispatch  # noqa: F401
from sysop.tools import shell_exec  # noqa: F401

from sysop.tools.executor import ExecutionEngine
from sysop.tools.registry import (
    REGISTRY_NAMES,
    get_all_tools,
    get_tool,
    get_tool_schemas,
)
from sysop.tools.types import ExecutionResult, ExecutionStatus, ToolKind

__all__ = [
    "ExecutionEngine",
    "ExecutionResult",
    "ExecutionStatus",
    "REGISTRY_NAMES",
    "ToolKind",
    "get_all_tools",
    "get_tool",
    "get_tool_schemas",
]
