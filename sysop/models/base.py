"""
sysop.models.base — Provider-agnostic LLM abstraction.

Defines the ``AbstractModel`` protocol and the shared data types that all
backends (Gemini, OpenAI-compatible, Ollama) implement.  No concrete LLM
logic lives here, just the contract.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Protocol, runtime_checkable


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------


class Role(str, Enum):
    """Message roles in a conversation."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_call_id() -> str:
    """Return a fresh id for a tool invocation that arrived without one."""
    return f"call_{uuid.uuid4().hex[:12]}"


@dataclass(frozen=True)
class ToolInvocation:
    """A tool invocation requested by the model.  Untrusted.

    Attributes
    ----------
    id : str
        Identifier used to correlate the result message.
    name : str
        Requested capability name (validated by the safety policy).
    arguments : dict[str, Any]
        Parsed arguments.
    """

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    def describe(self) -> str:
        """One-line ``name(k='v', ...)`` rendering for display and logs."""
        args = ", ".join(f"{k}={v!r}" for k, v in self.arguments.items())
        return f"{self.name}({args})"


@dataclass(frozen=True)
class ImageAttachment:
    """An image encoded when it was attached.

    The encoded bytes travel with the message, so later requests never
    depend on the file still being there.
    """

    path: str
    mime_type: str
    data: str


@dataclass(frozen=True)
class Message:
    """A single message in a conversation.  Immutable once created.

    Attributes
    ----------
    role : Role
        Who produced this message.
    content : str
        The textual content.
    timestamp : datetime
        Creation time (UTC).
    image : ImageAttachment | None
        Image sent with this message (user messages only).
    tool_call : ToolInvocation | None
        Set on assistant messages that announce a tool invocation.
    tool_call_id : str | None
        Set on TOOL messages: the invocation this result answers.
    """

    role: Role
    content: str
    timestamp: datetime = field(default_factory=_now)
    image: ImageAttachment | None = None
    tool_call: ToolInvocation | None = None
    tool_call_id: str | None = None


@dataclass(frozen=True)
class ToolSchema:
    """JSON-schema description of a tool that is sent to the model."""

    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict)


@dataclass
class AssistantMessage:
    """The model's response: text, tool invocations, or both.

    Attributes
    ----------
    content : str
        The textual response (may be empty if the model only made tool calls).
    tool_calls : list[ToolInvocation]
        Zero or more tool invocations requested by the model.
    raw : dict[str, Any]
        The unmodified response from the provider (for debugging).
    """

    content: str = ""
    tool_calls: list[ToolInvocation] = field(default_factory=list)
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def has_tool_calls(self) -> bool:
        """Return True if the model wants to invoke tools."""
        return len(self.tool_calls) > 0


# ---------------------------------------------------------------------------
# Abstract model protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class AbstractModel(Protocol):
    """Contract that every LLM backend must satisfy.

    Backends translate wire formats and authentication only; the agent
    loop handles tool dispatch, safety gating and history.
    """

    model: str

    async def complete(
        self,
        messages: list[Message],
        tools: list[ToolSchema] | None = None,
    ) -> AssistantMessage:
        """Send a conversation to the model and return its response.

        Parameters
        ----------
        messages :
            The conversation window (system + user + assistant + tool).
        tools :
            Optional list of tool schemas the model may invoke.

        Raises
        ------
        ProviderError
            Authentication, network or malformed-response failure.
        """
        ...

    async def list_models(self) -> list[str]:
        """Return the model identifiers the backend offers."""
        ...

    async def close(self) -> None:
        """Release network resources."""
        ...
