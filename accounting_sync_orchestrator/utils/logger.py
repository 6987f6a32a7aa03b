"""
Logging utilities for Accounting Sync Orchestrator

Structured JSON logging with per-component context (migration id, queue name)
so that a migration's log lines can be followed across batches.
"""

import logging
import sys
import json
from datetime import datetime
from typing import Optional
from pathlib import Path

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RESERVED_ATTRS = frozenset({
    'name', 'msg', 'args', 'levelname', 'levelno', 'pathname',
    'filename', 'module', 'lineno', 'funcName', 'created',
    'msecs', 'relativeCreated', 'thread', 'threadName', 'taskName',
    'processName', 'process', 'message', 'exc_info', 'exc_text',
    'stack_info'
})

PLAIN_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


class StructuredFormatter(logging.Formatter):
    """
    Formats log records as single-line JSON documents.

    Fields passed through ``extra`` (job_id, batch, queue_name, counts) and the
    context set with ``set_log_context`` end up under the ``extra`` key.
    """

    def __init__(self, include_extra: bool = True):
        super().__init__()
        self.include_extra = include_extra

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        if record.exc_info:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "traceback": self.formatException(record.exc_info)
            }

        if self.include_extra:
            extra_fields = {
                key: value for key, value in record.__dict__.items()
                if key not in _RESERVED_ATTRS
            }
            if extra_fields:
                log_entry["extra"] = extra_fields

        return json.dumps(log_entry, default=str, ensure_ascii=False)


class JobContextFilter(logging.Filter):
    """Adds component, job_id or queue_name context to every record of a logger."""

    def __init__(self):
        super().__init__()
        self.context = {}

    def set_context(self, **kwargs):
        self.context.update(kwargs)

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in self.context.items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


def _build_formatter(structured: bool) -> logging.Formatter:
    if structured:
        return StructuredFormatter()
    return logging.Formatter(PLAIN_FORMAT)


def setup_logger(
    name: str = "accounting_sync_orchestrator",
    level: str = "INFO",
    structured: bool = True,
    log_file: Optional[str] = None
) -> logging.Logger:
    """
    Configure handlers on a logger (normally the package root logger).

    Args:
        name: Logger name
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        structured: Emit JSON lines instead of plain text
        log_file: Optional log file path

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(numeric_level)

    # Avoid adding handlers multiple times
    if any(not isinstance(h, logging.NullHandler) for h in logger.handlers):
        return logger

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(_build_formatter(structured))
    logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(_build_formatter(structured))
        logger.addHandler(file_handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance."""
    return logging.getLogger(name)


def _context_filter(logger: logging.Logger) -> JobContextFilter:
    context_filter = getattr(logger, "context_filter", None)
    if context_filter is None:
        context_filter = JobContextFilter()
        logger.addFilter(context_filter)
        logger.context_filter = context_filter
    return context_filter


def set_log_context(logger: logging.Logger, **kwargs):
    """Attach context fields (component="coordinator", ...) to a logger."""
    _context_filter(logger).set_context(**kwargs)


class LoggerContext:
    """
    Context manager for temporary log context.

    Used around a migration run so every line logged while processing it
    carries the job id.
    """

    def __init__(self, logger: logging.Logger, **kwargs):
        self.logger = logger
        self.context = kwargs
        self.old_context = {}

    def __enter__(self):
        context_filter = _context_filter(self.logger)
        self.old_context = context_filter.context.copy()
        context_filter.set_context(**self.context)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.logger.context_filter.context = self.old_context
