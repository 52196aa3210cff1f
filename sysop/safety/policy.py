"""
sysop.safety.policy — Danger assessment for proposed tool invocations.

Every invocation the model proposes passes through ``SafetyPolicy.assess``
before anything runs:

1. The name must be in the closed registry, otherwise **BLOCKED**.  This
   is checked first, before any argument is looked at.
2. The arguments must match the registry schema, otherwise **BLOCKED**.
3. ``run_cmd``: interactive programs are **BLOCKED** with a suggestion.
4. Destructive patterns and sensitive paths make an invocation
   **REQUIRES_CONFIRMATION**.
5. Everything else is **ALLOWED**.

Assessments are computed fresh for every invocation and never cached.
"""

from __future__ import annotations

import fnmatch
import os
import re
import shlex
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from sysop.config import SafetySettings
from sysop.errors import SafetyViolation
from sysop.log import get_logger
from sysop.models.base import ToolInvocation
from sysop.safety.interactive import detect_interactive
from sysop.tools.registry import REGISTRY_NAMES, get_tool
from sysop.tools.types import ToolKind

log = get_logger(__name__)

# The exact phrase the user must type at the second confirmation step
CONFIRMATION_PHRASE = "yes, run it"

# Home and system locations; a path equal to or below one is sensitive
SENSITIVE_PREFIXES: tuple[str, ...] = (
    "~",
    "$HOME",
    "${HOME}",
    "/home",
    "/Users",
    "/root",
    "/etc",
    "/usr",
    "/bin",
    "/sbin",
    "/boot",
    "/dev",
    "/sys",
    "/proc",
    "/var",
    "/lib",
    "/lib64",
    "/opt",
    "/srv",
)

# Device files that only discard, echo or generate data
_HARMLESS_DEVICES = frozenset({
    "/dev/null",
    "/dev/zero",
    "/dev/random",
    "/dev/urandom",
    "/dev/stdin",
    "/dev/stdout",
    "/dev/stderr",
})

# Python idioms that resolve to the home directory
_CODE_HOME_MARKERS = ("expanduser(", "Path.home(", "environ['HOME']", 'environ["HOME"]', "getenv('HOME')", 'getenv("HOME")')

_TOKEN_SPLIT = re.compile(r"[\s'\"`(),\[\]{}=:+;|&<>]+")


class Verdict(str, Enum):
    """Policy outcome for one invocation."""

    ALLOWED = "allowed"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    BLOCKED = "blocked"


@dataclass(frozen=True)
class DangerAssessment:
    """Verdict plus a human-readable reason."""

    verdict: Verdict
    reason: str = ""

    @property
    def allowed(self) -> bool:
        return self.verdict == Verdict.ALLOWED

    @property
    def blocked(self) -> bool:
        return self.verdict == Verdict.BLOCKED

    @property
    def needs_confirmation(self) -> bool:
        return self.verdict == Verdict.REQUIRES_CONFIRMATION


def _compile_pattern(pattern: str) -> re.Pattern[str]:
    body = re.escape(pattern.strip())
    body = re.sub(r"(\\ )+", r"\\s+", body)
    if pattern.endswith(" "):
        body += r"\s"
    # A pattern that starts with a word character must start a word
    if pattern[:1].isalnum():
        body = r"(?<![\w.-])" + body
    return re.compile(body, re.IGNORECASE)


class SafetyPolicy:
    """Classifies tool invocations as allowed, confirmation-gated or blocked.

    Parameters
    ----------
    settings : SafetySettings
        Destructive patterns, extra sensitive paths and MCP confirmation globs.
    """

    def __init__(self, settings: SafetySettings) -> None:
        self._patterns = [
            (p, _compile_pattern(p)) for p in settings.dangerous_patterns if p.strip()
        ]
        home = os.path.expanduser("~")
        prefixes = list(SENSITIVE_PREFIXES) + list(settings.sensitive_paths)
        if home not in ("~", "/"):
            prefixes.append(home)
        self._prefixes = tuple(dict.fromkeys(p.rstrip("/") or "/" for p in prefixes))
        self._mcp_confirm = list(settings.mcp_confirm)

    # ------------------------------------------------------------------
    # Rule sets
    # ------------------------------------------------------------------

    def match_destructive(self, text: str) -> str | None:
        """Return the first configured destructive pattern found in *text*."""
        for raw, regex in self._patterns:
            if regex.search(text):
                return raw.strip()
        return None

    def is_sensitive_path(self, token: str) -> bool:
        """True when *token* names a sensitive prefix or something below it."""
        token = token.strip().strip("'\"")
        if not token or token in _HARMLESS_DEVICES:
            return False
        if token == "/":
            return True
        for prefix in self._prefixes:
            if token == prefix or token.startswith(prefix + "/"):
                return True
        return False

    def _sensitive_tokens(self, tokens: list[str]) -> str | None:
        for tok in tokens:
            # of=/dev/sda, --path=/etc, >/etc/hosts
            for part in re.split(r"[=<>]+", tok):
                if self.is_sensitive_path(part):
                    return part
        return None

    def match_sensitive_command(self, cmd: str) -> str | None:
        try:
            tokens = shlex.split(cmd, posix=True)
        except ValueError:
            tokens = cmd.split()
        return self._sensitive_tokens(tokens)

    def match_sensitive_code(self, code: str) -> str | None:
        for marker in _CODE_HOME_MARKERS:
            if marker in code:
                return "~"
        return self._sensitive_tokens([t for t in _TOKEN_SPLIT.split(code) if t])

    # ------------------------------------------------------------------
    # Assessment
    # ------------------------------------------------------------------

    def _confirm_if(self, destructive: str | None, path: str | None) -> DangerAssessment:
        if destructive:
            return DangerAssessment(
                Verdict.REQUIRES_CONFIRMATION, f"matches destructive pattern '{destructive}'"
            )
        if path:
            return DangerAssessment(
                Verdict.REQUIRES_CONFIRMATION, f"touches sensitive path '{path}'"
            )
        return DangerAssessment(Verdict.ALLOWED)

    def _assess_arguments(self, kind: ToolKind, args: dict[str, Any]) -> DangerAssessment:
        if kind == ToolKind.SHELL:
            cmd = str(args.get("cmd", ""))
            interactive = detect_interactive(cmd)
            if interactive is not None:
                return DangerAssessment(Verdict.BLOCKED, interactive.reason)
            cwd = str(args.get("cwd") or ".")
            return self._confirm_if(
                self.match_destructive(cmd),
                self.match_sensitive_command(cmd) or (cwd if self.is_sensitive_path(cwd) else None),
            )

        if kind == ToolKind.CODE:
            code = str(args.get("code", ""))
            return self._confirm_if(self.match_destructive(code), self.match_sensitive_code(code))

        if kind == ToolKind.FILE_WRITE:
            raw = str(args.get("path", ""))
            resolved = str(Path(raw).expanduser().resolve())
            return self._confirm_if(
                self.match_destructive(raw),
                raw if self.is_sensitive_path(raw) or self.is_sensitive_path(resolved) else None,
            )

        if kind in (ToolKind.FILE_READ, ToolKind.FILE_SEARCH):
            raw = str(args.get("path", args.get("directory", "")) or "")
            return self._confirm_if(None, raw if self.is_sensitive_path(raw) else None)

        if kind == ToolKind.MCP:
            target = f"{args.get('server', '')}/{args.get('tool', '')}"
            for glob in self._mcp_confirm:
                if fnmatch.fnmatchcase(target, glob):
                    return DangerAssessment(
                        Verdict.REQUIRES_CONFIRMATION, f"MCP tool '{target}' matches '{glob}'"
                    )
            return DangerAssessment(Verdict.ALLOWED)

        return DangerAssessment(Verdict.BLOCKED, f"no safety rules for {kind.value}")

    def assess(self, invocation: ToolInvocation) -> DangerAssessment:
        """Classify one proposed invocation.

        Never raises; malformed input is ``BLOCKED``.
        """
        entry = get_tool(invocation.name) if invocation.name in REGISTRY_NAMES else None
        if entry is None:
            allowed = ", ".join(sorted(REGISTRY_NAMES))
            assessment = DangerAssessment(
                Verdict.BLOCKED, f"unknown tool '{invocation.name}'. Allowed: {allowed}"
            )
        elif not isinstance(invocation.arguments, dict):
            assessment = DangerAssessment(Verdict.BLOCKED, "arguments must be an object")
        elif problems := entry.check_arguments(invocation.arguments):
            assessment = DangerAssessment(
                Verdict.BLOCKED, f"invalid arguments for {entry.name}: {'; '.join(problems)}"
            )
        else:
            try:
                assessment = self._assess_arguments(entry.kind, invocation.arguments)
            except (OSError, ValueError, RuntimeError) as exc:
                # Paths the OS cannot even resolve (NUL bytes, ~unknown-user)
                assessment = DangerAssessment(Verdict.BLOCKED, f"unusable path: {exc}")

        log.info(
            "safety_assessed",
            tool=invocation.name,
            verdict=assessment.verdict.value,
            reason=assessment.reason,
        )
        return assessment

    def enforce(self, invocation: ToolInvocation) -> DangerAssessment:
        """Assess *invocation* and raise ``SafetyViolation`` if it is blocked."""
        assessment = self.assess(invocation)
        if assessment.blocked:
            raise SafetyViolation(assessment.reason)
        return assessment
