"""
Structured logging configuration for the Trade FE engine.

Provides consistent logging format across all modules with:
- JSON structured output for production
- Human-readable output for development
- Viewed-symbol tagging so controller logs can be followed per instrument
- An in-memory tail for the /logs endpoint
"""

import logging
import sys
from collections import deque
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any

# Symbol currently being viewed, carried across async tasks
current_symbol: ContextVar[str | None] = ContextVar("current_symbol", default=None)


class TradeFEFormatter(logging.Formatter):
    """
    Formatter adding an ISO timestamp and the viewed symbol (if set).
    """

    def format(self, record: logging.LogRecord) -> str:
        record.timestamp = datetime.now(UTC).isoformat()

        symbol = current_symbol.get()
        record.symbol = f"[{symbol}] " if symbol else ""

        return super().format(record)


class InMemoryHandler(logging.Handler):
    """In-memory log handler for UI diagnostics."""

    def __init__(self, capacity: int = 1000):
        super().__init__()
        self.logs: deque[dict[str, Any]] = deque(maxlen=capacity)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.logs.append(
                {
                    "timestamp": getattr(record, "timestamp", datetime.now(UTC).isoformat()),
                    "level": record.levelname,
                    "level_no": record.levelno,
                    "logger": record.name,
                    "symbol": current_symbol.get(),
                    "message": record.getMessage(),
                }
            )
        except Exception:
            self.handleError(record)


_in_memory_handler = InMemoryHandler()


def setup_logging(level: str = "INFO", json_output: bool = False) -> logging.Logger:
    """
    Configure logging for the engine.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: If True, output JSON format (for production)

    Returns:
        Configured root logger
    """
    root = logging.getLogger()
    root.handlers.clear()

    numeric_level = getattr(logging, level.upper(), logging.INFO)
    root.setLevel(numeric_level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)

    if json_output:
        fmt = (
            '{"timestamp": "%(timestamp)s", "level": "%(levelname)s", '
            '"module": "%(name)s", "symbol": "%(symbol)s", "message": "%(message)s"}'
        )
    else:
        fmt = "%(timestamp)s | %(levelname)-8s | %(name)s | %(symbol)s%(message)s"

    formatter = TradeFEFormatter(fmt)
    handler.setFormatter(formatter)
    root.addHandler(handler)

    _in_memory_handler.setLevel(numeric_level)
    _in_memory_handler.setFormatter(formatter)
    root.addHandler(_in_memory_handler)

    # Suppress noisy third-party loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    return root


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for a specific module.

    Args:
        name: Module name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)


def get_in_memory_logs(level: str = "INFO", limit: int = 50) -> list[dict[str, Any]]:
    """Get filtered logs from memory."""
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    filtered = [log for log in _in_memory_handler.logs if log["level_no"] >= numeric_level]
    return filtered[-limit:]


def set_symbol_context(symbol: str | None) -> None:
    """Tag subsequent log lines from this task with the viewed symbol."""
    current_symbol.set(symbol)
