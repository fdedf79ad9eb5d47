"""Logging setup for hosts embedding the conversation loop.

Every module logs through ``logging.getLogger(__name__)``; this module only
wires the root handlers. Records are tagged with the name of the asyncio task
that emitted them, which for jobs is the job id assigned by the scheduler.
"""

from __future__ import annotations

import asyncio
import logging
import logging.handlers
import os
from pathlib import Path

__all__ = ["JobTaskFilter", "setup_logging", "get_logger", "get_log_path", "resolve_level"]

_DEFAULT_LOG_DIR = Path.home() / ".agentloop" / "logs"
_LOG_FILE_NAME = "agentloop.log"
_NOISY_LOGGERS: tuple[str, ...] = ("asyncio", "httpx", "httpcore", "openai")
_FORMAT = "%(asctime)s | %(levelname)-8s | %(task)s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
_CONFIGURED = False
_LOG_PATH: Path | None = None


class JobTaskFilter(logging.Filter):
    """Adds ``record.task``: the current asyncio task name, or ``-``."""

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            task = asyncio.current_task()
        except RuntimeError:
            task = None
        record.task = task.get_name() if task is not None else "-"
        return True


def resolve_level(level: int | str | None) -> int:
    """Turn ``level`` (or ``AGENTLOOP_LOG_LEVEL`` when None) into a logging level."""
    if level is None:
        level = os.environ.get("AGENTLOOP_LOG_LEVEL", "INFO")
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def setup_logging(
    level: int | str | None = None,
    *,
    log_dir: Path | str | None = None,
    console: bool = True,
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
    force: bool = False,
) -> Path:
    """Install a rotating file handler and, optionally, a console handler.

    Calling it again is a no-op unless ``force`` is set.

    Returns:
        Path of the log file.
    """

    global _CONFIGURED, _LOG_PATH
    if _CONFIGURED and not force and _LOG_PATH is not None:
        return _LOG_PATH

    numeric_level = resolve_level(level)
    log_dir_path = _resolve_log_dir(log_dir)
    log_dir_path.mkdir(parents=True, exist_ok=True)
    log_path = log_dir_path / _LOG_FILE_NAME

    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(
            log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
    ]
    if console:
        handlers.append(logging.StreamHandler())
    formatter = logging.Formatter(fmt=_FORMAT, datefmt=_DATE_FORMAT)
    task_filter = JobTaskFilter()
    for handler in handlers:
        handler.setLevel(numeric_level)
        handler.setFormatter(formatter)
        handler.addFilter(task_filter)

    logging.basicConfig(level=numeric_level, handlers=handlers, force=True)
    logging.captureWarnings(True)
    _quiet_third_party(numeric_level)

    _CONFIGURED = True
    _LOG_PATH = log_path
    logging.getLogger(__name__).debug("Logging to %s at %s", log_path, logging.getLevelName(numeric_level))
    return log_path


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def get_log_path() -> Path | None:
    """Return the configured log file, if :func:`setup_logging` ran."""

    return _LOG_PATH


def _resolve_log_dir(log_dir: Path | str | None) -> Path:
    return Path(log_dir or os.environ.get("AGENTLOOP_LOG_DIR") or _DEFAULT_LOG_DIR).expanduser()


def _quiet_third_party(root_level: int) -> None:
    # Third-party loggers never go below WARNING, even when the host debugs.
    quiet_level = max(root_level, logging.WARNING)
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(quiet_level)
