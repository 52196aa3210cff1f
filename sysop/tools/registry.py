"""
sysop.tools.registry — The closed tool catalogue and schema generation.

The ``@tool`` decorator registers a function and generates its JSON schema
(for LLM function-calling) from the function's **type hints** and
**docstring**.  Parameters whose names start with ``_`` are runtime
context injected by the executor and never shown to the model.

The catalogue is closed: only the names in ``REGISTRY_NAMES`` can ever be
registered, and the safety policy rejects any invocation whose name is not
registered.  There is no fallback tool.

Example
-------
::

    @tool(name="read_file", kind=ToolKind.FILE_READ)
    def read_file(path: str) -> str:
        \"\"\"Read and return the contents of ``path``.\"\"\"
"""

from __future__ import annotations

import inspect
import types
import typing
from dataclasses import dataclass, field
from typing import Any, Callable, get_type_hints

from sysop.models.base import ToolSchema
from sysop.tools.types import ToolKind

# ---------------------------------------------------------------------------
# Registry storage
# ---------------------------------------------------------------------------

REGISTRY_NAMES: frozenset[str] = frozenset(
    {"run_cmd", "run_python", "read_file", "write_file", "search", "mcp"}
)

# Python type → JSON Schema type mapping
_TYPE_MAP: dict[type, str] = {
    str: "string",
    int: "integer",
    float: "number",
    bool: "boolean",
    list: "array",
    dict: "object",
}

_JSON_CHECKS: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "integer": (int,),
    "number": (int, float),
    "boolean": (bool,),
    "array": (list,),
    "object": (dict,),
}


@dataclass
class ToolEntry:
    """A registered tool with its metadata.

    Attributes
    ----------
    name : str
        The name the LLM uses to call this tool.
    kind : ToolKind
        Which executor branch and safety rules apply.
    func : Callable
        The Python function implementing the tool.
    description : str
        Human-readable description (shown to the model).
    schema : ToolSchema
        The JSON Schema sent to the model for function-calling.
    """

    name: str
    kind: ToolKind
    func: Callable[..., Any]
    description: str
    schema: ToolSchema = field(default_factory=lambda: ToolSchema(name="", description=""))

    def check_arguments(self, arguments: dict[str, Any]) -> list[str]:
        """Return a list of problems with *arguments* (empty when valid)."""
        props: dict[str, Any] = self.schema.parameters.get("properties", {})
        problems: list[str] = []
        for name in self.schema.parameters.get("required", []):
            if name not in arguments:
                problems.append(f"missing required argument '{name}'")
        for name, value in arguments.items():
            if name not in props:
                problems.append(f"unexpected argument '{name}'")
                continue
            if value is None:
                continue
            expected = props[name].get("type", "string")
            allowed = _JSON_CHECKS.get(expected, (object,))
            # bool is an int subclass; keep "true" from passing as an integer
            if not isinstance(value, allowed) or (expected != "boolean" and isinstance(value, bool)):
                problems.append(f"argument '{name}' must be {expected}")
        return problems


# The global registry: tool name → ToolEntry
_TOOL_REGISTRY: dict[str, ToolEntry] = {}


# ---------------------------------------------------------------------------
# Schema generation
# ---------------------------------------------------------------------------


def _json_type(py_type: Any) -> str:
    """Map a (possibly Optional) annotation to a JSON schema type name."""
    origin = typing.get_origin(py_type)
    if origin in (typing.Union, types.UnionType):
        args = [a for a in typing.get_args(py_type) if a is not type(None)]
        return _json_type(args[0]) if args else "string"
    if origin is not None:
        py_type = origin
    return _TYPE_MAP.get(py_type, "string")


def _param_docs(func: Callable[..., Any]) -> dict[str, str]:
    """Pull ``name : type`` + description pairs out of a NumPy-style docstring."""
    docs: dict[str, str] = {}
    lines = inspect.getdoc(func) or ""
    current: str | None = None
    for line in lines.splitlines():
        stripped = line.strip()
        if " : " in stripped and not line.startswith(" "):
            current = stripped.split(" : ", 1)[0]
            continue
        if current and stripped and line.startswith(" "):
            docs[current] = (docs.get(current, "") + " " + stripped).strip()
        elif not stripped:
            current = None
    return docs


def _build_parameters_schema(func: Callable[..., Any]) -> dict[str, Any]:
    """Inspect a function's type hints and build a JSON Schema ``parameters`` object.

    Parameters whose names start with ``_`` are skipped (private).
    """
    hints = get_type_hints(func)
    sig = inspect.signature(func)
    docs = _param_docs(func)

    properties: dict[str, Any] = {}
    required: list[str] = []

    for param_name, param in sig.parameters.items():
        if param_name.startswith("_"):
            continue

        prop: dict[str, Any] = {"type": _json_type(hints.get(param_name, str))}
        if param_name in docs:
            prop["description"] = docs[param_name]

        # If the param has a default, it's optional; otherwise required
        if param.default is inspect.Parameter.empty:
            required.append(param_name)
        elif param.default is not None:
            prop["default"] = param.default

        properties[param_name] = prop

    schema: dict[str, Any] = {
        "type": "object",
        "properties": properties,
    }
    if required:
        schema["required"] = required

    return schema


# ---------------------------------------------------------------------------
# @tool decorator
# ---------------------------------------------------------------------------


def tool(
    *,
    name: str,
    kind: ToolKind,
    description: str = "",
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator that registers a function as a sysop tool.

    Parameters
    ----------
    name : str
        The tool name the LLM will use; must be one of ``REGISTRY_NAMES``.
    kind : ToolKind
        Capability kind (selects executor branch and safety rules).
    description : str
        What the tool does (shown to the LLM).  Defaults to the first
        docstring line.

    Raises
    ------
    ValueError
        If *name* is outside the closed catalogue.
    """
    if name not in REGISTRY_NAMES:
        raise ValueError(f"'{name}' is not part of the closed tool catalogue")

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        desc = description or (func.__doc__ or "").strip().split("\n")[0]
        schema = ToolSchema(
            name=name,
            description=desc,
            parameters=_build_parameters_schema(func),
        )
        _TOOL_REGISTRY[name] = ToolEntry(
            name=name,
            kind=kind,
            func=func,
            description=desc,
            schema=schema,
        )
        return func

    return decorator


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def get_tool(name: str) -> ToolEntry | None:
    """Look up a tool by name.  Returns ``None`` if not found."""
    return _TOOL_REGISTRY.get(name)


def get_tool_for_kind(kind: ToolKind) -> ToolEntry:
    """Return the single entry implementing *kind*."""
    for entry in _TOOL_REGISTRY.values():
        if entry.kind == kind:
            return entry
    raise KeyError(kind)


def get_all_tools() -> dict[str, ToolEntry]:
    """Return a copy of the full registry."""
    return dict(_TOOL_REGISTRY)


def get_tool_schemas() -> list[ToolSchema]:
    """Return ``ToolSchema`` objects for every registered tool."""
    return [e.schema for e in _TOOL_REGISTRY.values()]
