"""Logging setup shared by the collector tools.

Everything logs under the ``rssiwatch`` namespace:
- stderr console output, colored on a TTY, with the tool/cycle context appended
- an optional JSON-lines file (``--log-json``) for later analysis
- ``RSSIWATCH_DEBUG`` / ``RSSIWATCH_LOG_LEVEL`` environment overrides

Usage:
    from rssiwatch.util.logging import configure_logging, cycle_logger, get_logger

    configure_logging(level="DEBUG", json_file="rssiwatch.jsonl")
    log = cycle_logger(get_logger(__name__), tool="fingerprint", cycle_id=2)
    log.info("window closed with %d samples", 41)
"""

from __future__ import annotations

import json
import logging
import os
import sys
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, MutableMapping, Optional, Tuple


_configured = False
_root_logger_name = "rssiwatch"

# extra={} keys copied into JSON records; the first two also show on the console.
_EXTRA_FIELDS = ("tool", "cycle_id", "source_id", "store_path", "error_type", "duration_ms")
_CONSOLE_FIELDS = ("tool", "cycle_id")


def _context(record: logging.LogRecord, keys: Tuple[str, ...]) -> Dict[str, Any]:
    return {key: getattr(record, key) for key in keys if getattr(record, key, None) is not None}


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, timezone.utc)
        output: Dict[str, Any] = {
            "ts": created.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        output.update(_context(record, _EXTRA_FIELDS))
        if record.exc_info:
            output["exc_type"] = record.exc_info[0].__name__ if record.exc_info[0] else None
            output["traceback"] = "".join(traceback.format_exception(*record.exc_info))
        return json.dumps(output, default=str)


class ConsoleFormatter(logging.Formatter):
    """``[time] LEVEL [module] message (tool=.. cycle=..)``, colored on a TTY."""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color and sys.stderr.isatty()

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, timezone.utc).strftime("%H:%M:%S")
        level = f"{record.levelname:8}"
        if self.use_color:
            level = f"{self.LEVEL_COLORS.get(record.levelname, '')}{level}{self.RESET}"
        name = record.name[len(_root_logger_name) + 1:] if record.name.startswith(_root_logger_name + ".") else record.name
        line = f"[{ts}] {level} [{name}] {record.getMessage()}"
        context = _context(record, _CONSOLE_FIELDS)
        if context:
            line += " (" + " ".join(f"{key.replace('_id', '')}={value}" for key, value in context.items()) + ")"
        if record.exc_info:
            line += "\n" + "".join(traceback.format_exception(*record.exc_info))
        return line


class CycleLoggerAdapter(logging.LoggerAdapter):
    """Stamp every record with the tool name and the current cycle number."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        extra = dict(self.extra or {})
        extra.update(kwargs.get("extra") or {})
        kwargs["extra"] = extra
        return msg, kwargs


def configure_logging(
    *,
    level: Optional[str] = None,
    json_file: Optional[str] = None,
    use_color: bool = True,
) -> None:
    """Install the console handler and, optionally, the JSON-lines file handler.

    ``level`` defaults to ``RSSIWATCH_LOG_LEVEL`` (or DEBUG when
    ``RSSIWATCH_DEBUG`` is truthy), else INFO. Reconfiguring replaces the
    handlers from the previous call.
    """
    global _configured

    if level is None:
        if os.environ.get("RSSIWATCH_DEBUG", "").strip().lower() in ("1", "true", "yes"):
            level = "DEBUG"
        else:
            level = os.environ.get("RSSIWATCH_LOG_LEVEL", "INFO")
    numeric_level = getattr(logging, str(level).upper(), logging.INFO)

    logger = logging.getLogger(_root_logger_name)
    logger.setLevel(numeric_level)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(ConsoleFormatter(use_color=use_color))
    logger.addHandler(console_handler)

    if json_file:
        try:
            file_handler = logging.FileHandler(json_file, mode="a", encoding="utf-8")
        except OSError as exc:
            logger.warning("Failed to open JSON log file %s: %s", json_file, exc)
        else:
            # The file keeps DEBUG records even when the console is quieter.
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(JSONFormatter())
            logger.addHandler(file_handler)
            logger.setLevel(min(numeric_level, logging.DEBUG))

    logger.propagate = False
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Logger under the ``rssiwatch`` namespace; configures defaults on first use."""
    if not _configured:
        configure_logging()

    if name == "__main__":
        name = f"{_root_logger_name}.main"
    elif name != _root_logger_name and not name.startswith(_root_logger_name + "."):
        name = f"{_root_logger_name}.{name}"
    return logging.getLogger(name)


def cycle_logger(logger: logging.Logger, *, tool: str, cycle_id: Optional[int] = None) -> CycleLoggerAdapter:
    return CycleLoggerAdapter(logger, {"tool": tool, "cycle_id": cycle_id})


def log_exception(
    logger: logging.Logger,
    message: str,
    *,
    error_type: Optional[str] = None,
    **extra: Any,
) -> None:
    """Log the exception being handled, with ``error_type`` and context fields.

    Must be called from inside an ``except`` block.
    """
    extra_dict = dict(extra)
    if error_type:
        extra_dict["error_type"] = error_type
    logger.exception(message, extra=extra_dict)
