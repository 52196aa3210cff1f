"""Shared fixtures: every test gets its own SYSOP_HOME and fresh settings."""

from __future__ import annotations

from pathlib import Path

import pytest

from sysop.config import get_settings
from sysop.log import configure_logging

_ENV_VARS = ("GEMINI_API_KEY", "OPENAI_API_KEY", "SYSOP_PROVIDER", "SYSOP_MODEL")


@pytest.fixture(autouse=True)
def sysop_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    home = tmp_path / "sysop-home"
    home.mkdir()
    monkeypatch.setenv("SYSOP_HOME", str(home))
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield home
    get_settings.cache_clear()


@pytest.fixture(autouse=True, scope="session")
def _quiet_logging() -> None:
    configure_logging("DEBUG")
