"""
sysop.models.openai_backend — Any OpenAI-compatible chat endpoint.

Uses the ``openai`` SDK's async client pointed at ``base_url``, so the
same backend serves OpenAI itself, Groq
(``https://api.groq.com/openai/v1``), vLLM, LM Studio and friends.

1.  sysop ``Message`` objects become OpenAI-format dicts; an assistant
    message carrying a ``tool_call`` becomes a ``tool_calls`` entry and
    TOOL messages reference it through ``tool_call_id``.
2.  Tool schemas are sent as OpenAI function definitions.
3.  The response is parsed back into an ``AssistantMessage``.
"""

from __future__ import annotations

import json
import re
from typing import Any

from openai import (
    APIConnectionError,
    APIStatusError,
    AsyncOpenAI,
    AuthenticationError,
    BadRequestError,
    PermissionDeniedError,
)

from sysop.errors import ProviderError
from sysop.log import get_logger
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

log = get_logger(__name__)


class OpenAIModel:
    """OpenAI-compatible chat completion backend.

    Parameters
    ----------
    api_key : str
        API key for the endpoint.
    model : str
        Model to use (e.g. ``gpt-4o-mini``).
    base_url : str
        Endpoint root; change it to talk to another compatible service.
    temperature : float
        Sampling temperature.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        temperature: float = 0.2,
    ) -> None:
        self.model = model
        self.temperature = temperature
        # The SDK refuses an empty key at construction time; fail on first use instead
        self._client = AsyncOpenAI(api_key=api_key or "missing", base_url=base_url)

    # ---- internal helpers ------------------------------------------------

    @staticmethod
    def _build_messages(messages: list[Message]) -> list[dict[str, Any]]:
        """Convert sysop messages into OpenAI-format message dicts."""
        out: list[dict[str, Any]] = []
        for m in messages:
            entry: dict[str, Any] = {"role": m.role.value, "content": m.content}
            if m.role == Role.TOOL:
                entry["tool_call_id"] = m.tool_call_id or ""
            elif m.tool_call is not None:
                entry["tool_calls"] = [
                    {
                        "id": m.tool_call.id,
                        "type": "function",
                        "function": {
                            "name": m.tool_call.name,
                            "arguments": json.dumps(m.tool_call.arguments),
                        },
                    }
                ]
                entry["content"] = m.content or None
            elif m.image:
                url = f"data:{m.image.mime_type};base64,{m.image.data}"
                entry["content"] = [
                    {"type": "text", "text": m.content},
                    {"type": "image_url", "image_url": {"url": url}},
                ]
            out.append(entry)
        return out

    @staticmethod
    def _build_tools(tools: list[ToolSchema]) -> list[dict[str, Any]]:
        """Convert ToolSchemas into OpenAI-format tool definitions."""
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
    def _parse_tool_calls(choice: Any) -> list[ToolInvocation]:
        """Extract tool calls from an OpenAI ChatCompletion choice."""
        calls: list[ToolInvocation] = []
        raw_calls = getattr(choice.message, "tool_calls", None) or []
        for tc in raw_calls:
            args = tc.function.arguments
            if isinstance(args, str):
                try:
                    args = json.loads(args) if args.strip() else {}
                except json.JSONDecodeError as exc:
                    raise ProviderError(
                        f"Model sent unparseable arguments for {tc.function.name}: {args!r}"
                    ) from exc
            calls.append(
                ToolInvocation(id=tc.id or new_call_id(), name=tc.function.name, arguments=args)
            )
        return calls

    @staticmethod
    def _parse_failed_generation(failed_gen: str) -> list[ToolInvocation]:
        """Parse tool calls out of Groq's ``failed_generation`` error payload.

        Example input:
            ``<function=run_cmd {"cmd": "uptime"}</function>``
        """
        calls: list[ToolInvocation] = []
        for match in re.finditer(r"<function=(\w+)\s*(\{.*?\})\s*</function>", failed_gen, re.S):
            try:
                args = json.loads(match.group(2))
            except json.JSONDecodeError:
                continue
            calls.append(ToolInvocation(id=new_call_id(), name=match.group(1), arguments=args))
        return calls

    # ---- public interface ------------------------------------------------

    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolSchema] | None = None,
    ) -> AssistantMessage:
        """Send a conversation to the endpoint and return the response."""
        kwargs: dict[str, Any] = {
            "model": self.model,
            "messages": self._build_messages(messages),
            "temperature": self.temperature,
        }
        if tools:
            kwargs["tools"] = self._build_tools(tools)

        try:
            response = await self._client.chat.completions.create(**kwargs)
        except (AuthenticationError, PermissionDeniedError) as exc:
            raise ProviderError(f"Authentication failed: {exc.message}", kind="auth") from exc
        except BadRequestError as exc:
            body = exc.body if isinstance(exc.body, dict) else {}
            error = body.get("error", body)
            failed_gen = error.get("failed_generation", "") if isinstance(error, dict) else ""
            parsed = self._parse_failed_generation(failed_gen) if failed_gen else []
            if parsed:
                log.info("provider_failed_generation_recovered", calls=len(parsed))
                return AssistantMessage(tool_calls=parsed, raw={"failed_generation": failed_gen})
            raise ProviderError(f"Request rejected: {exc.message}") from exc
        except APIConnectionError as exc:
            raise ProviderError(f"Cannot reach {self._client.base_url}: {exc}", kind="network") from exc
        except APIStatusError as exc:
            raise ProviderError(f"Provider error {exc.status_code}: {exc.message}") from exc

        if not response.choices:
            raise ProviderError("Provider returned no choices")
        choice = response.choices[0]
        content = choice.message.content or ""
        tool_calls = self._parse_tool_calls(choice)
        if not tool_calls and content:
            content, tool_calls = extract_tool_calls(content)

        return AssistantMessage(content=content, tool_calls=tool_calls, raw=response.model_dump())

    async def list_models(self) -> list[str]:
        """Return model ids offered by the endpoint."""
        try:
            return sorted([m.id async for m in self._client.models.list()])
        except (AuthenticationError, PermissionDeniedError) as exc:
            raise ProviderError(f"Authentication failed: {exc.message}", kind="auth") from exc
        except APIConnectionError as exc:
            raise ProviderError(f"Cannot reach {self._client.base_url}: {exc}", kind="network") from exc
        except APIStatusError as exc:
            raise ProviderError(f"Provider error {exc.status_code}: {exc.message}") from exc

    async def close(self) -> None:
        await self._client.close()


# Satisfy the Protocol at module level
_: type[AbstractModel] = OpenAIModel  # type: ignore[assignment]
