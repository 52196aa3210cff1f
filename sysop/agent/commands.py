"""
sysop.agent.commands — Recognise direct commands typed at the prompt.

``/new``, ``/switch <id>`` and friends are handled by the agent loop
without consulting the model.  A slash word that is not listed here is an
ordinary query (``/etc/hosts looks wrong`` should reach the model).
"""

from __future__ import annotations

from dataclasses import dataclass

# name -> (usage, description)
COMMANDS: dict[str, tuple[str, str]] = {
    "new": ("/new", "Save this session and start a fresh one"),
    "sessions": ("/sessions", "List saved sessions"),
    "switch": ("/switch <id>", "Save this session and resume another"),
    "model": ("/model [name]", "Show or change the model"),
    "mcp": ("/mcp [restart <server>]", "Show MCP servers, or restart one"),
    "reload": ("/reload", "Re-read mcp.yaml and apply the changes"),
    "image": ("/image <path> [question]", "Attach an image to the next query"),
}

# Commands that cannot run without an argument
_NEEDS_ARG = frozenset({"switch", "image"})


@dataclass(frozen=True)
class Command:
    name: str
    arg: str = ""


def parse_command(text: str) -> Command | None:
    """Return the direct command in *text*, or None for a plain query.

    >>> parse_command("/switch 20260101-000000-abc123")
    Command(name='switch', arg='20260101-000000-abc123')
    >>> parse_command("/etc/hosts has a typo") is None
    True
    """
    stripped = text.strip()
    if not stripped.startswith("/"):
        return None
    head, _, rest = stripped[1:].partition(" ")
    name = head.lower()
    if name not in COMMANDS:
        return None
    return Command(name=name, arg=rest.strip())


def missing_argument(command: Command) -> str | None:
    """Usage hint when *command* needs an argument it did not get."""
    if command.name in _NEEDS_ARG and not command.arg:
        return f"Usage: {COMMANDS[command.name][0]}"
    if command.name == "mcp" and command.arg:
        verb, _, server = command.arg.partition(" ")
        if verb != "restart" or not server.strip():
            return f"Usage: {COMMANDS['mcp'][0]}"
    return None
