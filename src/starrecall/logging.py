"""Local diagnostics logging for starrecall.

structlog renders to a Rich console handler and, optionally, to a
daily-rotating JSON-lines file. Nothing is exported off the machine.
"""

from __future__ import annotations

import gzip
import logging
import shutil
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

import structlog
from rich.console import Console
from rich.logging import RichHandler

Logger = structlog.stdlib.BoundLogger

DEFAULT_LOG_DIR: Path = Path.home() / ".starrecall" / "logs"
_LOG_FILENAME = "starrecall.log"
_ROTATION_BACKUP_COUNT = 7

_TIMESTAMPER = structlog.processors.TimeStamper(fmt="iso", utc=True)
_PRE_CHAIN = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    _TIMESTAMPER,
]


def get_logger(name: str | None = None) -> Logger:
    """Return a structlog logger bound to *name*."""
    return structlog.get_logger(name)


def _normalize_level(level: str) -> int:
    value = logging.getLevelName(level.strip().upper())
    if isinstance(value, str):  # getLevelName echoes unknown names
        raise ValueError(f"Unsupported log level: {level!r}")
    return value


def _gzip_rotator(source: str, dest: str) -> None:
    with open(source, "rb") as src, gzip.open(dest, "wb") as target:
        shutil.copyfileobj(src, target)
    Path(source).unlink(missing_ok=True)


def _file_handler(log_file: Path, level: int) -> TimedRotatingFileHandler:
    handler = TimedRotatingFileHandler(
        log_file,
        when="midnight",
        backupCount=_ROTATION_BACKUP_COUNT,
        utc=True,
        encoding="utf-8",
        delay=True,
    )
    handler.setLevel(level)
    handler.suffix = "%Y-%m-%d"
    handler.namer = lambda name: f"{name}.gz"
    handler.rotator = _gzip_rotator
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.processors.JSONRenderer(sort_keys=True),
            foreign_pre_chain=_PRE_CHAIN,
        )
    )
    return handler


def _console_handler(level: int, console: Console | None) -> RichHandler:
    handler = RichHandler(
        console=console or Console(stderr=True),
        rich_tracebacks=True,
        show_path=False,
        markup=False,
        log_time_format="%Y-%m-%d %H:%M:%S",
    )
    handler.setLevel(level)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processor=structlog.dev.ConsoleRenderer(colors=False),
            foreign_pre_chain=_PRE_CHAIN,
        )
    )
    return handler


def configure_logging(
    *,
    level: str = "WARNING",
    log_dir: Path | None = None,
    console: Console | None = None,
) -> None:
    """Route structlog through stdlib logging with console and file handlers.

    Args:
        level: Root log level name (case-insensitive).
        log_dir: Directory for the rotating diagnostics file. ``None`` disables
            the file handler.
        console: Rich console override, mainly for tests.

    Raises:
        ValueError: If *level* is not a known logging level.
    """
    numeric = _normalize_level(level)

    structlog.reset_defaults()
    structlog.configure(
        processors=[
            *_PRE_CHAIN,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handlers: list[logging.Handler] = [_console_handler(numeric, console)]
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(_file_handler(log_dir / _LOG_FILENAME, numeric))

    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(numeric)
