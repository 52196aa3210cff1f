"""
sysop.models — LLM backend package.

Exports:
    get_model()      — factory that returns the configured backend
    AbstractModel    — protocol for type-checking
    GeminiModel, OpenAIModel, OllamaModel — concrete backends
    Message, Role, ToolInvocation, ToolSchema, AssistantMessage — data types
"""

from __future__ import annotations

from sysop.errors import ConfigError
from sysop.models.base import (
    AbstractModel,
    AssistantMessage,
    Message,
    Role,
    ToolInvocation,
    ToolSchema,
)
from sysop.models.gemini_backend import GeminiModel
from sysop.models.ollama_backend import OllamaModel
from sysop.models.openai_backend import OpenAIModel

PROVIDERS = ("gemini", "openai", "ollama")


def get_model(provider: str | None = None, model: str | None = None) -> AbstractModel:
    """Factory: return the backend selected by configuration.

    Parameters
    ----------
    provider : str | None
        Override ``settings.provider`` (``gemini``, ``openai`` or ``ollama``).
    model : str | None
        Override the provider's configured model name.
    """
    from sysop.config import get_settings

    settings = get_settings()
    provider = provider or settings.provider

    if provider == "gemini":
        cfg = settings.gemini
        return GeminiModel(
            api_key=cfg.api_key,
            model=model or cfg.model,
            base_url=cfg.base_url,
            temperature=cfg.temperature,
        )
    if provider == "openai":
        cfg_o = settings.openai
        return OpenAIModel(
            api_key=cfg_o.api_key,
            model=model or cfg_o.model,
            base_url=cfg_o.base_url,
            temperature=cfg_o.temperature,
        )
    if provider == "ollama":
        cfg_l = settings.ollama
        return OllamaModel(
            base_url=cfg_l.base_url,
            model=model or cfg_l.model,
            temperature=cfg_l.temperature,
        )
    raise ConfigError(f"Unknown provider {provider!r}; expected one of {', '.join(PROVIDERS)}")


__all__ = [
    "get_model",
    "PROVIDERS",
    "AbstractModel",
    "AssistantMessage",
    "Message",
    "Role",
    "ToolInvocation",
    "ToolSchema",
    "GeminiModel",
    "OllamaModel",
    "OpenAIModel",
]
