"""
sysop.log — structlog configuration.

Log records go to ``~/.sysop/logs/sysop.log`` so they never interleave
with the interactive terminal.  ``--verbose`` additionally renders them
on stderr.
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any

import structlog

LogLevel = int | str

_ROOT = "sysop"


def configure_logging(
    level: LogLevel = "INFO",
    *,
    log_file: Path | None = None,
    console: bool = False,
) -> None:
    """Configure structlog on top of the standard library logging module.

    Parameters
    ----------
    level :
        Minimum level for the ``sysop`` logger hierarchy.
    log_file :
        Rotating file destination (JSON lines).  Skipped when ``None``.
    console :
        Also render human-readable records on stderr.
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    shared: list[Any] = [
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    handlers: list[logging.Handler] = []
    if log_file is not None:
        try:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                log_file, maxBytes=2_000_000, backupCount=3, encoding="utf-8"
            )
        except OSError:
            file_handler = None
        if file_handler is not None:
            file_handler.setFormatter(
                structlog.stdlib.ProcessorFormatter(
                    processor=structlog.processors.JSONRenderer(),
                    foreign_pre_chain=shared,
                )
            )
            handlers.append(file_handler)

    if console:
        stream_handler = logging.StreamHandler(sys.stderr)
        stream_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                processor=structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
                foreign_pre_chain=shared,
            )
        )
        handlers.append(stream_handler)

    if not handlers:
        handlers.append(logging.NullHandler())

    root = logging.getLogger(_ROOT)
    for old in list(root.handlers):
        root.removeHandler(old)
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(level)
    root.propagate = False

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *shared,
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Return a structlog logger below the ``sysop`` hierarchy.

    ``name`` is usually ``__name__``; a bare component name is prefixed.
    """
    if not name.startswith(_ROOT):
        name = f"{_ROOT}.{name}"
    return structlog.get_logger(name)
