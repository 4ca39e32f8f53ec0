# resilient_ui/utils/logger.py
"""
Logging for the engine: a rich console handler for people, JSON lines for
files. Context (run_id, scenario, step_index, target, ...) travels on
LoggerAdapters and ends up as top-level keys of every JSON record.
"""
from __future__ import annotations

import json
import logging
import os
import threading
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional

from rich.console import Console
from rich.logging import RichHandler

from resilient_ui.utils.config import LogLevel, get_settings


__all__ = [
    "get_logger",
    "set_log_level",
    "bind",
    "unbind",
    "log_with_context",
    "attach_file_logger",
    "detach_file_logger",
]


ROOT_LOGGER_NAME = "resilient_ui"
_MAX_BYTES = 5 * 1024 * 1024

_lock = threading.Lock()
_configured = False
_bound: Dict[str, Any] = {}


class JsonFormatter(logging.Formatter):
    """One JSON object per line, context keys merged in at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
        }
        context = getattr(record, "context", None)
        if isinstance(context, dict):
            for k, v in context.items():
                payload[k] = v if isinstance(v, (str, int, float, bool)) or v is None else str(v)
        payload["msg"] = record.getMessage()
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def _json_file_handler(path: str, level: int, backups: int) -> logging.Handler:
    os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
    handler = RotatingFileHandler(path, maxBytes=_MAX_BYTES, backupCount=backups, encoding="utf-8", delay=True)
    handler.setLevel(level)
    handler.setFormatter(JsonFormatter())
    return handler


def _console_handler(level: int, colorized: bool) -> logging.Handler:
    console = Console(stderr=True, no_color=not colorized)
    handler = RichHandler(console=console, show_path=False, rich_tracebacks=True, markup=False, omit_repeated_times=False)
    handler.setFormatter(logging.Formatter("%(message)s"))
    handler.setLevel(level)
    return handler


def _ensure_configured() -> None:
    global _configured
    if _configured:
        return
    with _lock:
        if _configured:
            return
        settings = get_settings()
        level = logging.getLevelName(settings.LOG_LEVEL.value)

        root = logging.getLogger(ROOT_LOGGER_NAME)
        root.setLevel(level)
        for h in list(root.handlers):
            root.removeHandler(h)
        root.addHandler(_console_handler(level, settings.COLORIZED_OUTPUT))
        if settings.LOG_TO_FILE:
            root.addHandler(_json_file_handler(str(settings.LOG_FILE), level, backups=5))

        # the driver's own chatter only when it matters
        for noisy in ("asyncio", "playwright"):
            logging.getLogger(noisy).setLevel(max(level, logging.WARNING))
        _configured = True


def _adapter(logger: logging.Logger, context: Dict[str, Any]) -> logging.LoggerAdapter:
    return logging.LoggerAdapter(logger, extra={"context": context})


def get_logger(name: Optional[str] = None) -> logging.LoggerAdapter:
    """Package logger whose records carry the context bound with `bind()`."""
    _ensure_configured()
    if not name or name == "__main__":
        name = ROOT_LOGGER_NAME
    return _adapter(logging.getLogger(name), _bound)


def set_log_level(level: LogLevel | str) -> None:
    _ensure_configured()
    name = level.value if isinstance(level, LogLevel) else str(level).upper()
    py_level = logging.getLevelName(name)
    if not isinstance(py_level, int):
        raise ValueError(f"unknown log level {level!r}")
    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(py_level)
    for h in root.handlers:
        h.setLevel(py_level)


def bind(**kwargs: Any) -> None:
    """Attach process-wide context, e.g. `bind(run_id="20261019T120000Z")`."""
    _bound.update(kwargs)


def unbind(*keys: str) -> None:
    for k in keys:
        _bound.pop(k, None)


def log_with_context(logger: logging.LoggerAdapter, **kwargs: Any) -> logging.LoggerAdapter:
    """
    Child adapter with extra context for one scope:

        slog = log_with_context(log, scenario="people/add_person")
        step_log = log_with_context(slog, step_index=3, action="click")
    """
    parent = (getattr(logger, "extra", None) or {}).get("context", {})
    return _adapter(logger.logger, {**_bound, **parent, **kwargs})


def attach_file_logger(
    path: os.PathLike | str,
    level: Optional[int] = None,
    current_thread_only: bool = False,
) -> logging.Handler:
    """
    Add a JSON handler writing to `path` (a scenario's run.log) and return it
    for `detach_file_logger`. With `current_thread_only`, records logged by
    other scenario workers are filtered out.
    """
    _ensure_configured()
    root = logging.getLogger(ROOT_LOGGER_NAME)
    handler = _json_file_handler(os.fspath(path), root.level if level is None else level, backups=3)
    if current_thread_only:
        ident = threading.get_ident()
        handler.addFilter(lambda record: record.thread == ident)
    root.addHandler(handler)
    return handler


def detach_file_logger(handler: logging.Handler) -> None:
    logging.getLogger(ROOT_LOGGER_NAME).removeHandler(handler)
    handler.close()
