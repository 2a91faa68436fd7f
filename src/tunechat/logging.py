"""Structured logging configuration for tunechat.

Sets up two log streams via ``RotatingFileHandler``:

- ``tunechat.log``: human-readable, all log events
- ``events.log``: JSON-formatted, only ``tunechat.chat.*`` and
  ``tunechat.playback.*`` events

Both handlers rotate at 10 MB with 5 backup files.
"""

from __future__ import annotations

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

import structlog

_MAX_BYTES = 10 * 1024 * 1024  # 10 MB
_BACKUP_COUNT = 5
_EVENT_LOGGERS = ("tunechat.chat", "tunechat.playback")

# Shared structlog pre-processors (used for both structlog-originated
# events and stdlib-originated "foreign" events).
_shared_processors: list[structlog.types.Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.stdlib.ExtraAdder(),
    structlog.processors.TimeStamper(fmt="iso"),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.UnicodeDecoder(),
]


class _PrefixFilter(logging.Filter):
    """Pass records whose logger name falls under any of *prefixes*."""

    def __init__(self, prefixes: tuple[str, ...]) -> None:
        super().__init__()
        self._filters = [logging.Filter(p) for p in prefixes]

    def filter(self, record: logging.LogRecord) -> bool:
        return any(f.filter(record) for f in self._filters)


def setup_logging(log_level: str = "info", log_dir: Path | None = None) -> None:
    """Configure structlog and stdlib logging.

    Parameters
    ----------
    log_level:
        Python log-level name (``debug``, ``info``, ``warning``, etc.).
    log_dir:
        Directory for log files.  When *None* no file handlers are created
        (useful for testing).
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    # -- structlog pipeline (structlog → stdlib bridge) ---------------------
    structlog.configure(
        processors=[
            *_shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    # -- formatters --------------------------------------------------------
    human_formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.dev.ConsoleRenderer(colors=False),
        foreign_pre_chain=_shared_processors,
    )
    json_formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.processors.JSONRenderer(),
        foreign_pre_chain=_shared_processors,
    )

    # -- root logger -------------------------------------------------------
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)

        main_handler = RotatingFileHandler(
            log_dir / "tunechat.log",
            maxBytes=_MAX_BYTES,
            backupCount=_BACKUP_COUNT,
            encoding="utf-8",
        )
        main_handler.setFormatter(human_formatter)
        root.addHandler(main_handler)

        # chat + playback events, JSON
        events_handler = RotatingFileHandler(
            log_dir / "events.log",
            maxBytes=_MAX_BYTES,
            backupCount=_BACKUP_COUNT,
            encoding="utf-8",
        )
        events_handler.setFormatter(json_formatter)
        events_handler.addFilter(_PrefixFilter(_EVENT_LOGGERS))
        root.addHandler(events_handler)

    # -- suppress noisy third-party loggers --------------------------------
    for name in ("uvicorn", "uvicorn.access", "uvicorn.error", "httpx", "httpcore", "aiosqlite"):
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    # -- catch unhandled exceptions ----------------------------------------
    def _excepthook(
        exc_type: type[BaseException],
        exc_value: BaseException,
        exc_tb: object,
    ) -> None:
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_tb)  # type: ignore[arg-type]
            return
        logging.getLogger("tunechat").critical(
            "Unhandled exception",
            exc_info=(exc_type, exc_value, exc_tb),
        )

    sys.excepthook = _excepthook  # type: ignore[assignment]
