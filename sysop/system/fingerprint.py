"""
sysop.system.fingerprint — Describe the machine the agent is operating on.

Probes OS, user, shell and the administration tools that are installed,
once per process.  The result is rendered into the system prompt so the
model proposes commands that exist here (``apt`` vs ``dnf``, ``ss`` vs
``netstat``, ``systemctl`` or not).
"""

from __future__ import annotations

import getpass
import os
import platform
import shutil
import subprocess
from dataclasses import dataclass, field
from datetime import datetime
from functools import lru_cache

# (display name, executable, version flag or None for presence only)
_TOOL_PROBES: list[tuple[str, str, str | None]] = [
    ("Python", "python3", "--version"),
    ("Git", "git", "--version"),
    ("Docker", "docker", "--version"),
    ("Podman", "podman", "--version"),
    ("kubectl", "kubectl", None),
    ("systemctl", "systemctl", None),
    ("journalctl", "journalctl", None),
    ("apt", "apt-get", None),
    ("dnf", "dnf", None),
    ("pacman", "pacman", None),
    ("Homebrew", "brew", None),
    ("ss", "ss", None),
    ("netstat", "netstat", None),
    ("ip", "ip", None),
    ("curl", "curl", None),
    ("rsync", "rsync", None),
]


def _probe_tool(executable: str, flag: str | None) -> str | None:
    """Return a one-line description of *executable*, or None if missing."""
    path = shutil.which(executable)
    if path is None:
        return None
    if flag is None:
        return path
    try:
        result = subprocess.run(
            [path, flag],
            capture_output=True,
            text=True,
            timeout=5,
            stdin=subprocess.DEVNULL,
        )
    except (subprocess.TimeoutExpired, OSError):
        return path
    output = (result.stdout or result.stderr).strip()
    return output.split("\n")[0].strip() if output else path


@dataclass
class SystemFingerprint:
    """Snapshot of the host environment."""

    os_name: str = ""
    hostname: str = ""
    username: str = ""
    home_dir: str = ""
    cwd: str = ""
    shell: str = ""
    installed_tools: dict[str, str] = field(default_factory=dict)
    missing_tools: list[str] = field(default_factory=list)

    @classmethod
    def detect(cls) -> SystemFingerprint:
        """Probe the system and return a populated fingerprint."""
        fp = cls()
        fp.os_name = f"{platform.system()} {platform.release()}"
        if platform.system() == "Linux":
            try:
                fp.os_name = f"{platform.freedesktop_os_release()['PRETTY_NAME']} ({fp.os_name})"
            except (OSError, KeyError):
                pass
        fp.hostname = platform.node()
        try:
            fp.username = getpass.getuser()
        except (KeyError, OSError):
            fp.username = os.getenv("USER", "unknown")
        fp.home_dir = os.path.expanduser("~")
        fp.cwd = os.getcwd()
        fp.shell = "PowerShell" if platform.system() == "Windows" else os.getenv("SHELL", "/bin/sh")

        for name, executable, flag in _TOOL_PROBES:
            found = _probe_tool(executable, flag)
            if found:
                fp.installed_tools[name] = found
            else:
                fp.missing_tools.append(name)
        return fp

    @property
    def has_python(self) -> bool:
        return "Python" in self.installed_tools

    def to_prompt_section(self) -> str:
        """Format the fingerprint as a system-prompt block."""
        lines = [
            "## System Environment (auto-detected)",
            f"- Time: {datetime.now().astimezone().strftime('%Y-%m-%d %H:%M %Z')}",
            f"- OS: {self.os_name}",
            f"- Host: {self.hostname}",
            f"- User: {self.username}",
            f"- Home: {self.home_dir}",
            f"- CWD: {self.cwd}",
            f"- Shell: {self.shell}",
            "",
            "### Installed Tools",
        ]
        for name, version in self.installed_tools.items():
            lines.append(f"- {name}: {version}")
        if self.missing_tools:
            lines.append("")
            lines.append("### NOT Installed (do not use these)")
            lines.append("- " + ", ".join(self.missing_tools))
        if not self.has_python:
            lines.append("")
            lines.append("Python 3 is not available: do not use run_python.")
        return "\n".join(lines)


@lru_cache(maxsize=1)
def get_fingerprint() -> SystemFingerprint:
    """Return a cached fingerprint (probes run once per process)."""
    return SystemFingerprint.detect()
