"""
sysop.models.parsing — Recover tool invocations embedded in reply text.

Some models (small local ones in particular) ignore native function
calling and instead answer with the invocation envelope as JSON::

    {"name": "run_cmd", "arguments": {"cmd": "df -h"}}

possibly wrapped in a fenced code block.  ``extract_tool_calls`` finds
such envelopes and returns them together with the remaining prose.
"""

from __future__ import annotations

import json
from typing import Any

from sysop.models.base import ToolInvocation, new_call_id

_decoder = json.JSONDecoder()


def _as_invocation(obj: Any) -> ToolInvocation | None:
    if not isinstance(obj, dict):
        return None
    name = obj.get("name")
    if not isinstance(name, str) or not name:
        return None
    if set(obj) - {"name", "arguments", "id"}:
        return None
    args = obj.get("arguments", {})
    if isinstance(args, str):
        try:
            args = json.loads(args)
        except json.JSONDecodeError:
            return None
    if not isinstance(args, dict):
        return None
    return ToolInvocation(id=obj.get("id") or new_call_id(), name=name, arguments=args)


def extract_tool_calls(text: str) -> tuple[str, list[ToolInvocation]]:
    """Split *text* into prose and embedded tool invocations.

    Returns
    -------
    tuple[str, list[ToolInvocation]]
        The text with every recognised envelope (and any code fence that
        only contained it) removed, and the invocations in order.
    """
    calls: list[ToolInvocation] = []
    kept: list[str] = []
    pos = 0
    while True:
        start = text.find("{", pos)
        if start == -1:
            kept.append(text[pos:])
            break
        try:
            obj, end = _decoder.raw_decode(text, start)
        except json.JSONDecodeError:
            kept.append(text[pos:start + 1])
            pos = start + 1
            continue
        invocation = _as_invocation(obj)
        if invocation is None:
            kept.append(text[pos:end])
        else:
            calls.append(invocation)
            kept.append(text[pos:start])
        pos = end

    if not calls:
        return text, []

    prose = "".join(kept)
    for fence in ("```json", "```"):
        prose = prose.replace(fence + "\n\n```", "").replace(fence + "\n```", "")
    return prose.strip(), calls
