"""Structured local logging and crash hook setup."""

from __future__ import annotations

import faulthandler
import json
import logging
import logging.handlers
import sys
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TextIO

from .config import config_root


_LOGGER_NAME = "webuimon"
_LOG_FILE = "webuimon.log"

# Extra record attributes copied into each JSON line when present.
_STRUCTURED_FIELDS = ("event", "path", "count", "metric", "elapsed_s", "crash_id", "thread_name")

_fault_file: TextIO | None = None


def log_dir() -> Path:
    path = config_root() / "logs"
    path.mkdir(parents=True, exist_ok=True)
    return path


def resolve_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    value = logging.getLevelName(str(level).strip().upper())
    return value if isinstance(value, int) else logging.INFO


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts_utc": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": record.getMessage(),
        }
        for key in _STRUCTURED_FIELDS:
            if hasattr(record, key):
                payload[key] = getattr(record, key)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=True, default=str)


def configure_logging(
    keep_files: int = 7,
    console: bool = True,
    level: int | str = logging.INFO,
    directory: Path | None = None,
) -> logging.Logger:
    """
    Attach the rotating JSON file handler (and optionally a console handler) once.

    Later calls only apply ``level`` and ``keep_files`` to the existing handlers, so
    the CLI can start logging before the config is read and tighten it afterwards.
    """
    logger = logging.getLogger(_LOGGER_NAME)
    logger.setLevel(resolve_level(level))

    if logger.handlers:
        for handler in logger.handlers:
            if isinstance(handler, logging.handlers.TimedRotatingFileHandler):
                handler.backupCount = max(2, keep_files)
        return logger

    path = (directory or log_dir()) / _LOG_FILE
    handler = logging.handlers.TimedRotatingFileHandler(
        filename=str(path),
        when="midnight",
        backupCount=max(2, keep_files),
        encoding="utf-8",
    )
    handler.setFormatter(JsonFormatter())
    logger.addHandler(handler)

    if console:
        stream_handler = logging.StreamHandler()
        stream_handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s"))
        logger.addHandler(stream_handler)

    logger.info(f"logging to {path}", extra={"event": "logging_configured", "path": str(path)})
    return logger


def get_logger(name: str | None = None) -> logging.Logger:
    """``webuimon`` or a ``webuimon.<name>`` child that shares its handlers."""
    return logging.getLogger(f"{_LOGGER_NAME}.{name}" if name else _LOGGER_NAME)


def _install_fault_handler(logger: logging.Logger) -> None:
    global _fault_file
    if _fault_file is not None:
        return
    fault_path = log_dir() / "fault.log"
    _fault_file = fault_path.open("a", encoding="utf-8")
    faulthandler.enable(file=_fault_file, all_threads=True)
    logger.info("fault handler enabled", extra={"event": "fault_handler_enabled", "path": str(fault_path)})


def install_crash_hooks() -> None:
    """Route uncaught exceptions from the main and worker threads into the log."""
    logger = get_logger()

    def _log_uncaught(exc_type, exc_value, exc_tb) -> None:
        crash_id = str(uuid.uuid4())
        logger.critical(
            f"uncaught exception crash_id={crash_id}",
            exc_info=(exc_type, exc_value, exc_tb),
            extra={"event": "uncaught_exception", "crash_id": crash_id},
        )

    def _thread_hook(args: threading.ExceptHookArgs) -> None:
        crash_id = str(uuid.uuid4())
        thread_name = getattr(args.thread, "name", "?")
        logger.critical(
            f"exception in thread {thread_name} crash_id={crash_id}",
            exc_info=(args.exc_type, args.exc_value, args.exc_traceback),
            extra={"event": "thread_exception", "crash_id": crash_id, "thread_name": thread_name},
        )

    sys.excepthook = _log_uncaught
    threading.excepthook = _thread_hook
    _install_fault_handler(logger)
