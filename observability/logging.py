"""Logging setup for the knowledge engine.

Console output is readable text, or JSON when ``LOG_JSON`` is set; the
optional ``LOG_FILE`` always receives JSON lines. Records logged while a
crawl, document ingestion or estimate runs carry that work's identifiers
(``job_id``, ``client_id``, ``domain``, ...), bound with :func:`log_context`.
The binding lives in a context variable, so it follows the work into the
crawler's worker tasks.
"""

from __future__ import annotations
import contextvars
import json
import logging
import sys
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

SERVICE_NAME = "knowledge-engine"

# Loggers that are too chatty at INFO for a crawler service
QUIET_LOGGERS = ("uvicorn.access", "aiohttp.access", "apscheduler", "asyncio")

_context: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar("knowledge_log_context", default={})


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Attach ``fields`` to every record logged inside the block."""
    bound = {**_context.get(), **{key: value for key, value in fields.items() if value is not None}}
    token = _context.set(bound)
    try:
        yield
    finally:
        _context.reset(token)


def current_log_context() -> Dict[str, Any]:
    return dict(_context.get())


class ContextFilter(logging.Filter):
    """Copies the bound job context onto each record passing the handler."""

    def filter(self, record: logging.LogRecord) -> bool:
        fields = _context.get()
        for key, value in fields.items():
            if not hasattr(record, key):
                setattr(record, key, value)
        record.context_fields = tuple(fields)
        return True


def _context_items(record: logging.LogRecord):
    for key in getattr(record, "context_fields", ()):
        yield key, getattr(record, key, None)


class JSONFormatter(logging.Formatter):
    """One JSON object per record, context fields at the top level."""

    def __init__(self, service_name: str = SERVICE_NAME):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
        }
        entry.update(_context_items(record))
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """``time | LEVEL | logger | message | key=value ...``, colored on a terminal."""

    COLORS = {
        'DEBUG': '\033[36m',
        'INFO': '\033[32m',
        'WARNING': '\033[33m',
        'ERROR': '\033[31m',
        'CRITICAL': '\033[35m',
    }
    RESET = '\033[0m'

    def __init__(self, use_colors: bool = False):
        super().__init__()
        self.use_colors = use_colors

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.fromtimestamp(record.created).strftime('%Y-%m-%d %H:%M:%S')
        message = f"{timestamp} | {record.levelname:8} | {record.name} | {record.getMessage()}"
        context = " ".join(f"{key}={value}" for key, value in _context_items(record))
        if context:
            message = f"{message} | {context}"

        if self.use_colors and record.levelname in self.COLORS:
            message = f"{self.COLORS[record.levelname]}{message}{self.RESET}"
        if record.exc_info:
            message += "\n" + self.formatException(record.exc_info)
        return message


def setup_logging(level: str = "INFO",
                  log_file: Optional[str] = None,
                  use_json: bool = False,
                  service_name: str = SERVICE_NAME) -> None:
    """Replace the root handlers with the console handler and optional JSON file."""
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(numeric_level)

    console_handler = logging.StreamHandler(sys.stdout)
    if use_json:
        console_handler.setFormatter(JSONFormatter(service_name))
    else:
        console_handler.setFormatter(ConsoleFormatter(use_colors=sys.stdout.isatty()))
    handlers = [console_handler]

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(JSONFormatter(service_name))
        handlers.append(file_handler)

    for handler in handlers:
        handler.setLevel(numeric_level)
        handler.addFilter(ContextFilter())
        root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
