"""
sysop.models.ollama_backend — Local LLM backend via Ollama.

Connects to a running Ollama instance (default ``http://localhost:11434``)
and translates between the ``AbstractModel`` contract and Ollama's
``/api/chat`` REST API.
"""

from __future__ import annotations

import json
from typing import Any

import httpx

from sysop.errors import ProviderError
from sysop.models.base import (
    AbstractModel,
    AssistantMessage,
    Message,
    Role,
    ToolInvocation,
    ToolSchema,
    new_call_id,
)
from sysop.models.parsing import extract_tool_calls


class OllamaModel:
    """Ollama LLM backend.

    Parameters
    ----------
    base_url : str
        Ollama server URL (e.g. ``http://localhost:11434``).
    model : str
        Model tag to use (e.g. ``llama3.1:8b``).
    temperature : float
        Sampling temperature (0.0 = deterministic, 1.0 = creative).
    client : httpx.AsyncClient | None
        Pre-built client (tests inject one with a mock transport).
    """

    def __init__(
        self,
        base_url: str = "http://localhost:11434",
        model: str = "llama3.1:8b",
        temperature: float = 0.2,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.temperature = temperature
        self._client = client or httpx.AsyncClient(timeout=120.0)

    # ---- internal helpers ------------------------------------------------

    @staticmethod
    def _build_messages(messages: list[Message]) -> list[dict[str, Any]]:
        """Convert sysop messages into Ollama message dicts."""
        out: list[dict[str, Any]] = []
        for m in messages:
            entry: dict[str, Any] = {"role": m.role.value, "content": m.content}
            if m.tool_call is not None:
                entry["tool_calls"] = [
                    {"function": {"name": m.tool_call.name, "arguments": m.tool_call.arguments}}
                ]
            if m.image and m.role == Role.USER:
                entry["images"] = [m.image.data]
            out.append(entry)
        return out

    @staticmethod
    def _build_tools(tools: list[ToolSchema]) -> list[dict[str, Any]]:
        """Convert ToolSchemas into Ollama tool definitions."""
        return [
            {
                "type": "function",
                "function": {
                    "name": t.name,
                    "description": t.description,
                    "parameters": t.parameters,
                },
            }
            for t in tools
        ]

    @staticmethod
    def _parse_tool_calls(raw_msg: dict[str, Any]) -> list[ToolInvocation]:
        """Extract tool calls from Ollama's response message."""
        calls: list[ToolInvocation] = []
        for tc in raw_msg.get("tool_calls") or []:
            func = tc.get("function", {})
            args = func.get("arguments", {})
            # Some models return args as a JSON string
            if isinstance(args, str):
                try:
                    args = json.loads(args)
                except json.JSONDecodeError as exc:
                    raise ProviderError(f"Unparseable tool arguments: {args!r}") from exc
            name = func.get("name")
            if not name:
                raise ProviderError("Tool call without a function name")
            calls.append(ToolInvocation(id=tc.get("id") or new_call_id(), name=name, arguments=args))
        return calls

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        try:
            resp = await self._client.request(method, f"{self.base_url}{path}", **kwargs)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as exc:
            raise ProviderError(
                f"Ollama returned {exc.response.status_code}: {exc.response.text[:200]}"
            ) from exc
        except httpx.TransportError as exc:
            raise ProviderError(
                f"Cannot reach Ollama at {self.base_url}: {exc}", kind="network"
            ) from exc
        except ValueError as exc:
            raise ProviderError(f"Malformed response from Ollama: {exc}") from exc

    # ---- public interface ------------------------------------------------

    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolSchema] | None = None,
    ) -> AssistantMessage:
        """Send a conversation to Ollama and return the response."""
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": self._build_messages(messages),
            "stream": False,
            "options": {"temperature": self.temperature},
        }
        if tools:
            payload["tools"] = self._build_tools(tools)

        data = await self._request("POST", "/api/chat", json=payload)
        raw_msg = data.get("message")
        if not isinstance(raw_msg, dict):
            raise ProviderError("Ollama response has no message")

        content = raw_msg.get("content") or ""
        tool_calls = self._parse_tool_calls(raw_msg)
        if not tool_calls and content:
            content, tool_calls = extract_tool_calls(content)
        return AssistantMessage(content=content, tool_calls=tool_calls, raw=data)

    async def list_models(self) -> list[str]:
        """Return locally pulled model tags."""
        data = await self._request("GET", "/api/tags")
        return sorted(m["name"] for m in data.get("models", []) if "name" in m)

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()


# Satisfy the Protocol at module level (for static type checkers)
_: type[AbstractModel] = OllamaModel  # type: ignore[assignment]
