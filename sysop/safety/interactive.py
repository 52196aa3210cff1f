"""
sysop.safety.interactive — Detect commands that would wait on a terminal.

Commands run without a PTY and with stdin closed, so full-screen and
prompting programs would hang or fail.  ``detect_interactive`` inspects
every segment of a command line (``|``, ``;``, ``&&``, ``||``, ``&``)
after stripping ``sudo``/``env``-style wrappers and variable assignments,
and returns the offending program with a non-interactive alternative.
"""

from __future__ import annotations

import os
import re
import shlex
from dataclasses import dataclass


@dataclass(frozen=True)
class InteractiveMatch:
    program: str
    suggestion: str

    @property
    def reason(self) -> str:
        return f"'{self.program}' is interactive and cannot run here. Try instead: {self.suggestion}"


_EDITOR_HINT = "read_file / write_file, or sed -i / tee for in-place edits"

# Always interactive, whatever the arguments
_ALWAYS: dict[str, str] = {
    "vi": _EDITOR_HINT,
    "vim": _EDITOR_HINT,
    "nvim": _EDITOR_HINT,
    "view": _EDITOR_HINT,
    "nano": _EDITOR_HINT,
    "pico": _EDITOR_HINT,
    "emacs": _EDITOR_HINT,
    "micro": _EDITOR_HINT,
    "joe": _EDITOR_HINT,
    "htop": "ps aux --sort=-%cpu | head -n 20",
    "btop": "ps aux --sort=-%cpu | head -n 20",
    "atop": "ps aux --sort=-%cpu | head -n 20",
    "iotop": "iotop -b -n 1 (batch mode)",
    "nmon": "vmstat 1 5",
    "glances": "vmstat 1 5 and df -h",
    "watch": "run the command once, or `for i in 1 2 3; do CMD; sleep 2; done`",
    "telnet": "nc -zv HOST PORT to test a port",
    "ftp": "curl -O ftp://HOST/PATH",
    "sftp": "scp HOST:PATH .",
    "mosh": "ssh HOST 'command'",
    "visudo": "read_file /etc/sudoers, then validate edits with visudo -c -f FILE",
    "passwd": "ask the user to run passwd in their own terminal",
    "mc": "ls -la / find",
    "ranger": "ls -la / find",
    "nnn": "ls -la / find",
    "tig": "git log --oneline -n 20",
}

# Interactive when they are the last stage of a pipeline (output to the terminal)
_PAGERS: dict[str, str] = {
    "less": "cat FILE | head -n 100, or tail -n 100 FILE",
    "more": "cat FILE | head -n 100",
    "most": "cat FILE | head -n 100",
    "man": "`man CMD | col -b | head -n 200` or `CMD --help`",
}

# Interactive REPLs when started without something to execute
_REPLS: dict[str, tuple[set[str], str]] = {
    "python": ({"-c", "-m"}, "run_python, or python3 SCRIPT.py"),
    "python3": ({"-c", "-m"}, "run_python, or python3 SCRIPT.py"),
    "ipython": ({"-c", "-m"}, "run_python"),
    "node": ({"-e", "-p", "--eval", "--print"}, "node -e 'CODE' or node SCRIPT.js"),
    "irb": ({"-e"}, "ruby -e 'CODE'"),
    "lua": ({"-e"}, "lua -e 'CODE'"),
    "bash": ({"-c"}, "bash -c 'CMD' or bash SCRIPT.sh"),
    "sh": ({"-c"}, "sh -c 'CMD'"),
    "zsh": ({"-c"}, "zsh -c 'CMD'"),
    "fish": ({"-c"}, "fish -c 'CMD'"),
    "R": ({"-e", "-f"}, "Rscript -e 'CODE'"),
}

# Database clients: a positional argument is a database name, not a script
_DB_CLIENTS: dict[str, tuple[set[str], str]] = {
    "mysql": ({"-e", "--execute"}, "mysql -e 'SQL' DB"),
    "mariadb": ({"-e", "--execute"}, "mariadb -e 'SQL' DB"),
    "psql": ({"-c", "--command", "-f", "--file", "-l", "--list"}, "psql -c 'SQL' DB"),
    "sqlite3": (set(), "sqlite3 DB 'SQL'"),
    "redis-cli": (set(), "redis-cli COMMAND ARGS"),
    "mongo": ({"--eval"}, "mongosh --eval 'JS'"),
    "mongosh": ({"--eval"}, "mongosh --eval 'JS'"),
}

# Prefixes that run another command
_WRAPPERS = {"sudo", "doas", "env", "nice", "nohup", "time", "command", "exec", "stdbuf", "timeout"}
_WRAPPER_ARG_OPTS = {"-u", "-g", "-n", "-C", "-h", "-p", "-o", "-e", "-i", "-k"}

_SEGMENT_SPLIT = re.compile(r"\|\||&&|\|&|[|;\n]|(?<![<>&])&(?![>&])")
_PIPES = ("|", "|&")
_ASSIGNMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")

# ssh options that consume the following token
_SSH_ARG_OPTS = set("bcDEeFIiJLlmOopQRSWw")

# Asking for help or a version never starts a session
_INFO_FLAGS = {"--version", "-V", "-version", "--help", "-h"}


def _split_segments(command: str) -> list[tuple[str, bool, bool]]:
    """Return ``(segment, stdin_is_piped, stdout_is_piped)`` triples."""
    segments: list[tuple[str, bool, bool]] = []
    pos = 0
    prev_sep = ""
    for match in _SEGMENT_SPLIT.finditer(command):
        segments.append((command[pos:match.start()], prev_sep in _PIPES, match.group() in _PIPES))
        prev_sep = match.group()
        pos = match.end()
    segments.append((command[pos:], prev_sep in _PIPES, False))
    return [s for s in segments if s[0].strip()]


def _tokenize(segment: str) -> list[str]:
    try:
        return shlex.split(segment, comments=True)
    except ValueError:
        return segment.split()


def _strip_wrappers(tokens: list[str]) -> list[str]:
    i = 0
    while i < len(tokens):
        tok = tokens[i]
        if _ASSIGNMENT.match(tok):
            i += 1
            continue
        if os.path.basename(tok) in _WRAPPERS:
            wrapper = os.path.basename(tok)
            i += 1
            while i < len(tokens) and tokens[i].startswith("-"):
                if tokens[i] in _WRAPPER_ARG_OPTS and wrapper in ("sudo", "doas", "nice"):
                    i += 1
                i += 1
            if wrapper == "timeout" and i < len(tokens):
                i += 1  # the duration
            continue
        break
    return tokens[i:]


def _ssh_is_interactive(args: list[str]) -> bool:
    positional = 0
    i = 0
    while i < len(args):
        arg = args[i]
        if arg.startswith("-") and len(arg) > 1:
            if arg[-1] in _SSH_ARG_OPTS and len(arg) == 2:
                i += 1
        else:
            positional += 1
        i += 1
    # host only, no remote command
    return positional < 2


def _check_segment(tokens: list[str], stdin_piped: bool, stdout_piped: bool) -> InteractiveMatch | None:
    if not tokens:
        return None
    program = os.path.basename(tokens[0])
    args = tokens[1:]
    has_redirect_in = any(a.startswith("<") for a in args)

    if any(a in _INFO_FLAGS for a in args):
        return None

    if program in _ALWAYS:
        return InteractiveMatch(program, _ALWAYS[program])

    if program in _PAGERS and not stdout_piped:
        return InteractiveMatch(program, _PAGERS[program])

    if program == "top":
        batch = any(a.startswith("-") and "b" in a for a in args)
        return None if batch else InteractiveMatch("top", "top -b -n 1 | head -n 30")

    if program in ("ssh", "autossh"):
        if _ssh_is_interactive(args):
            return InteractiveMatch(program, "ssh HOST 'command' (always pass a remote command)")
        return None

    if program in ("tmux", "screen"):
        listing = {"ls", "list-sessions", "-ls", "-list", "has-session", "kill-session", "-d", "-dm"}
        if not any(a in listing for a in args):
            return InteractiveMatch(program, f"{program} {'ls' if program == 'tmux' else '-ls'}")
        return None

    if program == "crontab" and "-e" in args:
        return InteractiveMatch("crontab -e", "crontab -l, then `crontab FILE` with the edited table")

    if program == "git" and args[:1] == ["commit"]:
        if not any(a.startswith(("-m", "--message", "-F", "--file", "--no-edit", "-C")) for a in args):
            return InteractiveMatch("git commit", "git commit -m 'message'")
        return None
    if program == "git" and args[:1] in (["rebase"], ["add"]) and any(
        a in ("-i", "--interactive", "-p", "--patch") for a in args
    ):
        return InteractiveMatch(f"git {args[0]} -i", f"non-interactive git {args[0]}")

    if stdin_piped or has_redirect_in:
        return None

    if program in _REPLS:
        exec_flags, hint = _REPLS[program]
        if "-i" in args:
            return InteractiveMatch(program, hint)
        has_exec = any(a in exec_flags or any(a.startswith(f) for f in exec_flags if len(f) == 2) for a in args)
        positional = [a for a in args if not a.startswith("-")]
        if not has_exec and not positional:
            return InteractiveMatch(program, hint)
        return None

    if program in _DB_CLIENTS:
        exec_flags, hint = _DB_CLIENTS[program]
        if any(a in exec_flags or a.split("=", 1)[0] in exec_flags for a in args):
            return None
        positional = [a for a in args if not a.startswith("-")]
        # sqlite3 DB 'SQL', redis-cli PING, etc.
        if not exec_flags and len(positional) >= (2 if program == "sqlite3" else 1):
            return None
        return InteractiveMatch(program, hint)

    return None


def detect_interactive(command: str) -> InteractiveMatch | None:
    """Return the first interactive program in *command*, or ``None``."""
    for segment, stdin_piped, stdout_piped in _split_segments(command):
        tokens = _strip_wrappers(_tokenize(segment))
        match = _check_segment(tokens, stdin_piped, stdout_piped)
        if match is not None:
            return match
    return None
