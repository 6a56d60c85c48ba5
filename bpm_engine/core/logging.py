"""Logging for the BPM workflow core.

Records can carry simulation fields (``session_id``, ``node_id``,
``status``, ``step_count``) through ``extra``; the JSON formatter groups them
under a ``simulation`` key so one run can be followed across log lines.
Request fields set by the HTTP middleware live in a context variable, so
concurrent requests never see each other's ids.
"""

import logging
import sys
import json
import traceback
from contextvars import ContextVar
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any
from pathlib import Path


SIMULATION_FIELDS = ("session_id", "node_id", "status", "step_count")


def simulation_extra(**fields) -> Dict[str, Any]:
    """Build the ``extra`` argument for a log call about a simulation run.

    None values are dropped and enum members are logged by value.
    """
    return {
        "extra_fields": {
            name: value.value if isinstance(value, Enum) else value
            for name, value in fields.items()
            if value is not None
        }
    }


class StructuredFormatter(logging.Formatter):
    """Formats records as single-line JSON."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "line": record.lineno
        }

        fields = dict(getattr(record, "extra_fields", {}))
        simulation = {name: fields.pop(name) for name in SIMULATION_FIELDS if name in fields}
        if simulation:
            log_entry["simulation"] = simulation
        log_entry.update(fields)

        if record.exc_info and record.exc_info[0]:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info)
            }

        return json.dumps(log_entry, default=str)


class WorkflowContextFilter(logging.Filter):
    """Adds the ambient request fields to every record passing a handler.

    Fields passed explicitly through ``extra`` win over ambient ones.
    """

    def __init__(self):
        super().__init__()
        self._context: ContextVar[Dict[str, Any]] = ContextVar(f"log_context_{id(self)}", default={})

    @property
    def context(self) -> Dict[str, Any]:
        return dict(self._context.get())

    def set_context(self, **kwargs):
        self._context.set({**self._context.get(), **kwargs})

    def clear_context(self):
        self._context.set({})

    def filter(self, record: logging.LogRecord) -> bool:
        record.extra_fields = {**self._context.get(), **getattr(record, "extra_fields", {})}
        return True


_context_filter = WorkflowContextFilter()


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    structured: bool = False,
    max_size: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure the root logger for the service.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional file path, rotated at ``max_size``
        log_format: Format string for plain-text output
        structured: Emit JSON lines instead of plain text
        max_size: Maximum log file size in bytes before rotation
        backup_count: Number of rotated files to keep

    Returns:
        Root logger instance
    """
    if structured:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(
            fmt=log_format or "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )

    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        from logging.handlers import RotatingFileHandler

        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(log_file, maxBytes=max_size, backupCount=backup_count))

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper()))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in handlers:
        handler.setFormatter(formatter)
        handler.addFilter(_context_filter)
        root_logger.addHandler(handler)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)

    # Step-by-step simulation traces only at DEBUG
    logging.getLogger("bpm_engine.core").setLevel(logging.DEBUG if level.upper() == "DEBUG" else logging.INFO)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def set_logging_context(**kwargs):
    """Set request fields for log lines emitted in the current context."""
    _context_filter.set_context(**kwargs)


def clear_logging_context():
    _context_filter.clear_context()
