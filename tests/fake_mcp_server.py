"""Minimal stdio MCP server used by the supervisor tests.

Run with ``python fake_mcp_server.py``.  Advertises five tools, split over
two ``tools/list`` pages:

echo   returns its ``text`` argument
env    returns the value of environment variable ``name``
fail   returns an ``isError`` result
hang   never answers
crash  exits the process with status 3
"""

import json
import os
import sys

TOOLS = [
    {"name": "echo", "description": "Echo text back",
     "inputSchema": {"type": "object", "properties": {"text": {"type": "string"}}}},
    {"name": "env", "description": "Read an environment variable",
     "inputSchema": {"type": "object", "properties": {"name": {"type": "string"}}}},
    {"name": "fail", "description": "Always reports a tool error"},
    {"name": "hang", "description": "Never answers"},
    {"name": "crash", "description": "Exits the server"},
]


def send(message):
    sys.stdout.write(json.dumps(message) + "\n")
    sys.stdout.flush()


def reply(msg_id, result=None, error=None):
    message = {"jsonrpc": "2.0", "id": msg_id}
    if error is not None:
        message["error"] = error
    else:
        message["result"] = result
    send(message)


def text(value):
    return {"content": [{"type": "text", "text": value}]}


def call_tool(msg_id, params):
    name = params.get("name")
    args = params.get("arguments") or {}
    if name == "echo":
        reply(msg_id, text(args.get("text", "")))
    elif name == "env":
        reply(msg_id, text(os.environ.get(args.get("name", ""), "")))
    elif name == "fail":
        reply(msg_id, {"content": [{"type": "text", "text": "boom"}], "isError": True})
    elif name == "hang":
        return
    elif name == "crash":
        sys.stderr.write("crashing on request\n")
        sys.stderr.flush()
        sys.exit(3)
    else:
        reply(msg_id, error={"code": -32602, "message": f"Unknown tool: {name}"})


def main():
    sys.stderr.write("fake server ready\n")
    sys.stderr.flush()
    for line in sys.stdin:
        line = line.strip()
        if not line:
            continue
        message = json.loads(line)
        msg_id = message.get("id")
        if msg_id is None:
            continue
        method = message.get("method")
        params = message.get("params") or {}
        if method == "initialize":
            reply(msg_id, {
                "protocolVersion": params.get("protocolVersion"),
                "capabilities": {"tools": {}},
                "serverInfo": {"name": "fake", "version": "1.0"},
            })
        elif method == "tools/list":
            if params.get("cursor") is None:
                reply(msg_id, {"tools": TOOLS[:2], "nextCursor": "page-2"})
            else:
                reply(msg_id, {"tools": TOOLS[2:]})
        elif method == "tools/call":
            call_tool(msg_id, params)
        elif method == "ping":
            reply(msg_id, {})
        else:
            reply(msg_id, error={"code": -32601, "message": f"Method not found: {method}"})


if __name__ == "__main__":
    main()
