"""
Logging utilities for the chat vector store.

Provides opt-in file logging (enabled through the ``RAG_LOGS`` environment
variable or config) with chat correlation fields, so that lines written by
background back-fill workers can be told apart from the active chat.
"""

import json
import logging
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

PACKAGE_LOGGER = "vector"

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "error": logging.ERROR,
}

_CONTEXT_FIELDS = ("chat_id", "operation", "worker")


class StructuredFormatter(logging.Formatter):
    """
    Formatter that outputs JSON-structured log lines.
    
    Each log line includes:
    - Standard log fields (timestamp, level, message, logger)
    - Correlation fields if present (chat_id, operation, worker)
    """
    
    def __init__(self, include_timestamp: bool = True):
        super().__init__()
        self.include_timestamp = include_timestamp
    
    def format(self, record: logging.LogRecord) -> str:
        """Format the log record as JSON."""
        log_entry = {
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        
        if self.include_timestamp:
            log_entry["timestamp"] = datetime.fromtimestamp(
                record.created, tz=timezone.utc
            ).isoformat()
        
        for field in _CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                log_entry[field] = value
        
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)
        
        return json.dumps(log_entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """
    Formatter that outputs human-readable log lines with chat context.
    
    Format: TIMESTAMP [LEVEL] LOGGER: MESSAGE [chat_id=X operation=Y]
    """
    
    def __init__(self, include_timestamp: bool = True):
        if include_timestamp:
            fmt = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
        else:
            fmt = "[%(levelname)s] %(name)s: %(message)s"
        super().__init__(fmt)
    
    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        
        context_parts = []
        for field in _CONTEXT_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                context_parts.append(f"{field}={value}")
        
        if context_parts:
            return f"{base} [{' '.join(context_parts)}]"
        return base


class ChatLogContext:
    """
    Context manager that tags log records with chat correlation fields.
    
    Context is per thread, so a back-fill worker tagging its records does
    not leak into the thread serving the UI.
    
    Example:
        >>> with ChatLogContext(chat_id="20250101-120000", operation="backfill"):
        ...     logger.info("Embedding stored")
    """
    
    _local = threading.local()
    
    def __init__(self, chat_id: Optional[str] = None, operation: Optional[str] = None, **extra: Any):
        context = {"chat_id": chat_id, "operation": operation, **extra}
        self.context = {k: v for k, v in context.items() if v is not None}
        self._previous: Dict[str, Any] = {}
    
    def __enter__(self) -> "ChatLogContext":
        self._previous = getattr(ChatLogContext._local, "context", {})
        ChatLogContext._local.context = {**self._previous, **self.context}
        return self
    
    def __exit__(self, *args) -> None:
        ChatLogContext._local.context = self._previous
    
    @classmethod
    def get_current(cls) -> Dict[str, Any]:
        """Get the current thread's correlation context."""
        return dict(getattr(cls._local, "context", {}))


class ChatContextFilter(logging.Filter):
    """Copies the current ChatLogContext onto each record."""
    
    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in ChatLogContext.get_current().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


def parse_log_level(value: Optional[str]) -> Optional[int]:
    """
    Map a ``RAG_LOGS`` style value to a logging level.
    
    Returns None for empty or unknown values, which means logging stays off.
    """
    if not value:
        return None
    return LOG_LEVELS.get(value.strip().lower())


def default_log_path(config_dir: Union[str, Path]) -> Path:
    """Dated log file under ``<config_dir>/logs``."""
    date = datetime.now().strftime("%Y-%m-%d")
    return Path(config_dir) / "logs" / f"rag-{date}.log"


def configure_logging(
    level: Optional[int] = logging.INFO,
    log_file: Optional[Union[str, Path]] = None,
    structured: bool = False,
    include_timestamp: bool = True,
) -> Optional[logging.Handler]:
    """
    Configure the ``vector`` package logger.
    
    Args:
        level: Logging level; None disables store logging entirely
        log_file: Append to this file; stderr if omitted
        structured: If True, output JSON-structured logs; if False, human-readable
        include_timestamp: Whether to include timestamp in log messages
        
    Returns:
        The installed handler, or None if logging is disabled
    """
    pkg_logger = logging.getLogger(PACKAGE_LOGGER)
    
    if level is None:
        pkg_logger.addHandler(logging.NullHandler())
        pkg_logger.propagate = False
        return None
    
    pkg_logger.setLevel(level)
    
    # Only add handler if none exist (avoid duplicate handlers)
    for existing in pkg_logger.handlers:
        if not isinstance(existing, logging.NullHandler):
            return existing
    
    if log_file is not None:
        path = Path(log_file)
        path.parent.mkdir(parents=True, exist_ok=True)
        handler: logging.Handler = logging.FileHandler(path, encoding="utf-8")
    else:
        handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(level)
    
    if structured:
        formatter: logging.Formatter = StructuredFormatter(include_timestamp=include_timestamp)
    else:
        formatter = HumanReadableFormatter(include_timestamp=include_timestamp)
    
    handler.setFormatter(formatter)
    handler.addFilter(ChatContextFilter())
    pkg_logger.addHandler(handler)
    pkg_logger.info(f"=== Chat store log started (level: {logging.getLevelName(level)}) ===")
    return handler
