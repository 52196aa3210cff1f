"""
sysop.agent.session — Conversation sessions and their on-disk store.

Each session is one JSON file under ``~/.sysop/sessions/<id>.json``.  The
agent loop is the only writer.  When the directory cannot be written the
store logs the failure once and keeps working from memory.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from sysop.config import sessions_dir
from sysop.errors import PersistenceError
from sysop.log import get_logger
from sysop.models.base import Message, Role

log = get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return f"{_now():%Y%m%d-%H%M%S}-{uuid.uuid4().hex[:6]}"


class Session(BaseModel):
    """An ordered, append-only conversation."""

    id: str = Field(default_factory=_new_id)
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    messages: list[Message] = Field(default_factory=list)

    def append(self, *messages: Message) -> None:
        self.messages.extend(messages)
        self.updated_at = _now()

    def window(self, limit: int) -> list[Message]:
        """Return the recent history, opening on a user message.

        Providers reject a conversation that starts with a tool call or a
        tool result, so the window starts at the first user message among
        the last *limit* messages.  When the current turn began earlier
        than that, its opening user message is kept in front of the most
        recent exchanges (at most ``limit + 1`` messages).
        """
        if limit <= 0:
            return []
        recent = self.messages[-limit:]
        for index, message in enumerate(recent):
            if message.role == Role.USER:
                return recent[index:]

        earlier = self.messages[: len(self.messages) - len(recent)]
        opener = next((m for m in reversed(earlier) if m.role == Role.USER), None)
        start = 0
        while start < len(recent) and recent[start].role == Role.TOOL:
            start += 1
        tail = recent[start:]
        return [opener, *tail] if opener is not None else tail

    @property
    def title(self) -> str:
        """First user message, shortened, for listings."""
        for message in self.messages:
            if message.role == Role.USER:
                line = message.content.strip().splitlines()[0] if message.content.strip() else ""
                return line[:60] + ("…" if len(line) > 60 else "")
        return "(empty)"


class SessionStore:
    """JSON files in a directory, with an in-memory fallback.

    Parameters
    ----------
    directory : Path | None
        Where session files live (defaults to ``~/.sysop/sessions``).
    """

    def __init__(self, directory: Path | None = None) -> None:
        self.directory = directory or sessions_dir()
        self.degraded = False
        self._memory: dict[str, Session] = {}

    def _path(self, session_id: str) -> Path:
        return self.directory / f"{session_id}.json"

    def create(self) -> Session:
        session = Session()
        self._memory[session.id] = session
        log.info("session_created", session=session.id)
        return session

    def save(self, session: Session) -> None:
        """Persist *session*.

        Raises
        ------
        PersistenceError
            The first time the directory turns out to be unwritable; later
            saves stay in memory silently.
        """
        self._memory[session.id] = session
        if self.degraded:
            return
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            self._path(session.id).write_text(session.model_dump_json(indent=2), encoding="utf-8")
        except OSError as exc:
            self.degraded = True
            log.error("session_save_failed", session=session.id, error=str(exc))
            raise PersistenceError(
                f"Cannot save session to {self.directory}: {exc.strerror or exc}. "
                "Continuing in memory only."
            ) from exc
        log.debug("session_saved", session=session.id, messages=len(session.messages))

    def load(self, session_id: str) -> Session:
        """Return the session called *session_id*.

        Raises
        ------
        PersistenceError
            Unknown id, unreadable file or invalid content.
        """
        if session_id in self._memory:
            return self._memory[session_id]
        path = self._path(session_id)
        if not path.exists():
            raise PersistenceError(f"No session named {session_id!r}")
        try:
            session = Session.model_validate_json(path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise PersistenceError(f"Cannot read {path}: {exc.strerror or exc}") from exc
        except ValidationError as exc:
            log.error("session_corrupt", session=session_id, error=str(exc))
            raise PersistenceError(f"Session {session_id} is corrupt: {exc.error_count()} errors") from exc
        self._memory[session.id] = session
        return session

    def list_sessions(self) -> list[Session]:
        """All known sessions, most recently updated first.

        Unreadable files are logged and skipped.
        """
        found: dict[str, Session] = {}
        if self.directory.is_dir():
            for path in self.directory.glob("*.json"):
                try:
                    found[path.stem] = self.load(path.stem)
                except PersistenceError as exc:
                    log.warning("session_skipped", path=str(path), error=str(exc))
        found.update(self._memory)
        return sorted(found.values(), key=lambda s: s.updated_at, reverse=True)

    def latest(self) -> Session | None:
        sessions = self.list_sessions()
        return sessions[0] if sessions else None
