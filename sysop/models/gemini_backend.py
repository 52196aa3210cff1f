"""
sysop.models.gemini_backend — Google Gemini via the Generative Language REST API.

Talks to ``{base_url}/models/{model}:generateContent`` with ``httpx``.

Wire differences from the OpenAI shape handled here:

- the system prompt travels as ``systemInstruction``, not as a message;
- the assistant role is called ``model``;
- tool invocations are ``functionCall`` parts and their results are
  ``functionResponse`` parts that reference the function *name*;
- function declarations reject JSON-schema ``default`` keys.
"""

from __future__ import annotations

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

_UNSUPPORTED_SCHEMA_KEYS = {"default", "additionalProperties", "$schema"}


def _clean_schema(schema: Any) -> Any:
    """Recursively drop schema keys the Gemini API rejects."""
    if isinstance(schema, dict):
        return {
            k: _clean_schema(v) for k, v in schema.items() if k not in _UNSUPPORTED_SCHEMA_KEYS
        }
    if isinstance(schema, list):
        return [_clean_schema(v) for v in schema]
    return schema


class GeminiModel:
    """Gemini backend.

    Parameters
    ----------
    api_key : str
        Google AI Studio key, sent as ``x-goog-api-key``.
    model : str
        Model name without the ``models/`` prefix.
    base_url : str
        API root.
    temperature : float
        Sampling temperature.
    client : httpx.AsyncClient | None
        Pre-built client (tests inject one with a mock transport).
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gemini-2.5-flash",
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        temperature: float = 0.2,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.temperature = temperature
        self._client = client or httpx.AsyncClient(timeout=120.0)

    # ---- internal helpers ------------------------------------------------

    @staticmethod
    def _build_contents(messages: list[Message]) -> tuple[str, list[dict[str, Any]]]:
        """Return ``(system_instruction, contents)`` for a message list."""
        system_parts: list[str] = []
        contents: list[dict[str, Any]] = []
        call_names: dict[str, str] = {}

        for m in messages:
            if m.role == Role.SYSTEM:
                system_parts.append(m.content)
                continue

            if m.role == Role.TOOL:
                name = call_names.get(m.tool_call_id or "", "tool")
                contents.append({
                    "role": "user",
                    "parts": [{
                        "functionResponse": {"name": name, "response": {"content": m.content}}
                    }],
                })
                continue

            parts: list[dict[str, Any]] = []
            if m.content:
                parts.append({"text": m.content})
            if m.tool_call is not None:
                call_names[m.tool_call.id] = m.tool_call.name
                parts.append({
                    "functionCall": {"name": m.tool_call.name, "args": m.tool_call.arguments}
                })
            if m.image and m.role == Role.USER:
                parts.append({"inline_data": {"mime_type": m.image.mime_type, "data": m.image.data}})
            if not parts:
                parts.append({"text": ""})

            role = "model" if m.role == Role.ASSISTANT else "user"
            contents.append({"role": role, "parts": parts})

        return "\n\n".join(system_parts), contents

    @staticmethod
    def _build_tools(tools: list[ToolSchema]) -> list[dict[str, Any]]:
        """Convert ToolSchemas into one Gemini ``functionDeclarations`` block."""
        return [{
            "functionDeclarations": [
                {
                    "name": t.name,
                    "description": t.description,
                    "parameters": _clean_schema(t.parameters),
                }
                for t in tools
            ]
        }]

    @staticmethod
    def _parse_candidate(data: dict[str, Any]) -> tuple[str, list[ToolInvocation]]:
        candidates = data.get("candidates") or []
        if not candidates:
            feedback = data.get("promptFeedback", {})
            reason = feedback.get("blockReason", "no candidates returned")
            raise ProviderError(f"Gemini returned no answer: {reason}")

        parts = (candidates[0].get("content") or {}).get("parts") or []
        texts: list[str] = []
        calls: list[ToolInvocation] = []
        for part in parts:
            if "text" in part:
                texts.append(part["text"])
            elif "functionCall" in part:
                fc = part["functionCall"]
                calls.append(ToolInvocation(
                    id=fc.get("id") or new_call_id(),
                    name=fc.get("name", ""),
                    arguments=fc.get("args") or {},
                ))
        return "".join(texts), calls

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        headers = {"x-goog-api-key": self.api_key}
        try:
            resp = await self._client.request(
                method, f"{self.base_url}{path}", headers=headers, **kwargs
            )
        except httpx.TransportError as exc:
            raise ProviderError(f"Cannot reach Gemini API: {exc}", kind="network") from exc

        if resp.status_code in (401, 403) or (
            resp.status_code == 400 and "API_KEY_INVALID" in resp.text
        ):
            raise ProviderError("Gemini rejected the API key", kind="auth")
        if resp.is_error:
            raise ProviderError(f"Gemini returned {resp.status_code}: {resp.text[:200]}")
        try:
            return resp.json()
        except ValueError as exc:
            raise ProviderError(f"Malformed response from Gemini: {exc}") from exc

    # ---- public interface ------------------------------------------------

    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolSchema] | None = None,
    ) -> AssistantMessage:
        """Send a conversation to Gemini and return the response."""
        if not self.api_key:
            raise ProviderError("GEMINI_API_KEY is not set", kind="auth")

        system, contents = self._build_contents(messages)
        payload: dict[str, Any] = {
            "contents": contents,
            "generationConfig": {"temperature": self.temperature},
        }
        if system:
            payload["systemInstruction"] = {"parts": [{"text": system}]}
        if tools:
            payload["tools"] = self._build_tools(tools)

        data = await self._request("POST", f"/models/{self.model}:generateContent", json=payload)
        content, tool_calls = self._parse_candidate(data)
        if not tool_calls and content:
            content, tool_calls = extract_tool_calls(content)
        return AssistantMessage(content=content, tool_calls=tool_calls, raw=data)

    async def list_models(self) -> list[str]:
        """Return model names that support ``generateContent``."""
        data = await self._request("GET", "/models", params={"pageSize": 200})
        names: list[str] = []
        for entry in data.get("models", []):
            if "generateContent" in entry.get("supportedGenerationMethods", []):
                names.append(entry.get("name", "").removeprefix("models/"))
        return sorted(n for n in names if n)

    async def close(self) -> None:
        await self._client.aclose()


_: type[AbstractModel] = GeminiModel  # type: ignore[assignment]
