"""
sysop.config — Load, validate, and expose application configuration.

Everything lives under ``~/.sysop`` (relocatable through ``SYSOP_HOME``):

    config.yaml     main settings (this module)
    mcp.yaml        MCP server table (``sysop.mcp.config``)
    .env            API keys
    sessions/       saved conversations
    logs/           structlog output

Environment variables override the YAML file (``GEMINI_API_KEY``,
``OPENAI_API_KEY``, ``SYSOP_PROVIDER``, ``SYSOP_MODEL``).
"""

from __future__ import annotations

import os
import shutil
import sys
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError

from sysop.errors import ConfigError

# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------

# System prompt templates are shipped inside the package
PROMPTS_DIR = Path(__file__).resolve().parent / "prompts"


def sysop_home() -> Path:
    """Return the user-level data directory (``$SYSOP_HOME`` or ``~/.sysop``)."""
    override = os.getenv("SYSOP_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".sysop"


def config_path() -> Path:
    return sysop_home() / "config.yaml"


def mcp_config_path() -> Path:
    return sysop_home() / "mcp.yaml"


def sessions_dir() -> Path:
    return sysop_home() / "sessions"


def log_path() -> Path:
    return sysop_home() / "logs" / "sysop.log"


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

# Substrings that mark a command as destructive.  Whitespace inside a
# pattern matches any run of whitespace.
DEFAULT_DANGEROUS_PATTERNS: list[str] = [
    "rm ",
    "sudo ",
    "rm -rf",
    "rm -r",
    "rm -fr",
    "rmdir",
    "shred",
    "mkfs",
    "dd if=",
    "of=/dev/",
    "> /dev/sd",
    "wipefs",
    "fdisk",
    "parted",
    "chmod -R",
    "chown -R",
    "chmod 777",
    "kill -9",
    "killall",
    "pkill",
    "shutdown",
    "reboot",
    "halt",
    "poweroff",
    "systemctl stop",
    "systemctl disable",
    "userdel",
    "crontab -r",
    "git push --force",
    "git reset --hard",
    "git clean -fd",
    "drop table",
    "drop database",
    "truncate table",
    ":(){",
    "shutil.rmtree",
    "os.remove",
    "os.unlink",
    "os.rmdir",
]


class GeminiSettings(BaseModel):
    """Settings for the Google Gemini backend."""

    api_key: str = ""
    model: str = "gemini-2.5-flash"
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    temperature: float = 0.2


class OpenAISettings(BaseModel):
    """Settings for any OpenAI-compatible backend (OpenAI, Groq, vLLM, ...)."""

    api_key: str = ""
    model: str = "gpt-4o-mini"
    base_url: str = "https://api.openai.com/v1"
    temperature: float = 0.2


class OllamaSettings(BaseModel):
    """Settings for the local Ollama backend."""

    base_url: str = "http://localhost:11434"
    model: str = "llama3.1:8b"
    temperature: float = 0.2


class SafetySettings(BaseModel):
    """Confirmation rules applied before anything runs."""

    dangerous_patterns: list[str] = Field(
        default_factory=lambda: list(DEFAULT_DANGEROUS_PATTERNS)
    )
    # Extra sensitive path prefixes on top of the built-in home/system list
    sensitive_paths: list[str] = Field(default_factory=list)
    # ``server/tool`` globs that require confirmation for MCP calls
    mcp_confirm: list[str] = Field(default_factory=list)


class ExecutionSettings(BaseModel):
    """Limits for local command execution."""

    max_output_bytes: int = Field(default=32_768, gt=0)
    max_output_lines: int = Field(default=400, gt=0)
    timeout: float = Field(default=300.0, gt=0)
    cancel_grace: float = Field(default=2.0, ge=0)
    python: str = "python3"
    safe_mode: bool = False

    def python_executable(self) -> str:
        """Return the configured interpreter, or the running one if it is missing."""
        return shutil.which(self.python) or sys.executable


class McpSettings(BaseModel):
    """MCP supervisor policy."""

    # Consecutive faults before a server is left FAILED
    max_failures: int = Field(default=3, ge=1)
    restart_delay: float = Field(default=1.0, ge=0)


class SessionSettings(BaseModel):
    """Conversation persistence."""

    history_limit: int = Field(default=40, gt=0)
    auto_resume: bool = True


class SysopSettings(BaseModel):
    """Top-level settings object for the entire application."""

    version: int = 1
    provider: Literal["gemini", "openai", "ollama"] = "gemini"
    log_level: str = "INFO"

    gemini: GeminiSettings = Field(default_factory=GeminiSettings)
    openai: OpenAISettings = Field(default_factory=OpenAISettings)
    ollama: OllamaSettings = Field(default_factory=OllamaSettings)
    safety: SafetySettings = Field(default_factory=SafetySettings)
    execution: ExecutionSettings = Field(default_factory=ExecutionSettings)
    mcp: McpSettings = Field(default_factory=McpSettings)
    session: SessionSettings = Field(default_factory=SessionSettings)

    @property
    def model_name(self) -> str:
        """Model identifier of the configured provider."""
        return getattr(self, self.provider).model


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------


def _load_yaml(path: Path) -> dict[str, Any]:
    """Read and parse a YAML file.  Returns {} if not found."""
    if not path.exists():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{path} must contain a mapping at the top level")
    return data


@lru_cache(maxsize=1)
def get_settings() -> SysopSettings:
    """Return the validated, cached application settings.

    Loading order (each layer overrides the previous):
    1. Built-in defaults (Pydantic field defaults).
    2. ``config.yaml`` in the sysop home directory.
    3. Environment variables / ``.env`` file.
    """
    load_dotenv(sysop_home() / ".env")

    raw: dict[str, Any] = _load_yaml(config_path())

    if api_key := os.getenv("GEMINI_API_KEY"):
        raw.setdefault("gemini", {})["api_key"] = api_key
    if api_key := os.getenv("OPENAI_API_KEY"):
        raw.setdefault("openai", {})["api_key"] = api_key
    if provider := os.getenv("SYSOP_PROVIDER"):
        raw["provider"] = provider
    if model := os.getenv("SYSOP_MODEL"):
        raw.setdefault(raw.get("provider", "gemini"), {})["model"] = model

    try:
        return SysopSettings(**raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid configuration in {config_path()}:\n{exc}") from exc

