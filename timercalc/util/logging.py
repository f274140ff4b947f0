"""Logging for timercalc.

Console output goes to stderr; ``configure_logging(json_file=...)`` adds a JSON
lines file. Records may carry the calculation fields listed in
``RECORD_FIELDS``; both formatters render them.

    logger = get_logger(__name__)
    log = context_logger(logger, "Tank01", tick=3)
    log.info("Wrote value", extra={"series": "Tank01.Moles"})
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
_root_logger_name = "timercalc"

RECORD_FIELDS = ("context", "series", "tick", "error_type", "duration_ms")


def _record_fields(record: logging.LogRecord) -> Dict[str, Any]:
    return {key: getattr(record, key) for key in RECORD_FIELDS if getattr(record, key, None) is not None}


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    def format(self, record: logging.LogRecord) -> str:
        output: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        output.update(_record_fields(record))
        if record.exc_info:
            output["traceback"] = "".join(traceback.format_exception(*record.exc_info))
        return json.dumps(output, default=str)


class ConsoleFormatter(logging.Formatter):
    """``[time] LEVEL [module] message {context tick series}`` with optional color."""

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
        ts = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        level = f"{record.levelname:8}"
        if self.use_color:
            level = f"{self.LEVEL_COLORS.get(record.levelname, '')}{level}{self.RESET}"
        name = record.name.replace(f"{_root_logger_name}.", "")
        line = f"[{ts}] {level} [{name}] {record.getMessage()}"
        tags = [f"{key}={value}" for key, value in _record_fields(record).items() if key in ("context", "tick", "series")]
        if tags:
            line += " {" + " ".join(tags) + "}"
        if record.exc_info:
            line += "\n" + "".join(traceback.format_exception(*record.exc_info))
        return line


class ContextAdapter(logging.LoggerAdapter):
    """Stamps every record with the calculation context and tick it belongs to."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs


def context_logger(logger: logging.Logger, context: str, *, tick: Optional[int] = None) -> ContextAdapter:
    return ContextAdapter(logger, {"context": context, "tick": tick})


def configure_logging(
    *,
    level: Optional[str] = None,
    json_file: Optional[str] = None,
    use_color: bool = True,
) -> None:
    """Install the stderr handler and, if ``json_file`` is given, a JSON lines file handler.

    Without ``level`` the TIMERCALC_DEBUG and TIMERCALC_LOG_LEVEL environment
    variables decide, defaulting to INFO. Calling it again replaces the handlers
    installed by the previous call.
    """
    global _configured

    if level is None:
        if os.environ.get("TIMERCALC_DEBUG", "").strip() in ("1", "true", "yes"):
            level = "DEBUG"
        else:
            level = os.environ.get("TIMERCALC_LOG_LEVEL", "INFO")
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    logger = logging.getLogger(_root_logger_name)
    logger.setLevel(numeric_level)
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

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
            file_handler.setLevel(numeric_level)
            file_handler.setFormatter(JSONFormatter())
            logger.addHandler(file_handler)

    logger.propagate = False
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """Logger under the ``timercalc`` namespace; configures defaults on first use."""
    if not _configured:
        configure_logging()
    if name == "__main__":
        name = f"{_root_logger_name}.main"
    elif not name.startswith(_root_logger_name):
        name = f"{_root_logger_name}.{name}"
    return logging.getLogger(name)


def log_exception(
    logger: logging.Logger,
    message: str,
    *,
    error_type: Optional[str] = None,
    **extra: Any,
) -> None:
    """Log the exception being handled with ``error_type`` and any record fields in ``extra``."""
    if error_type:
        extra["error_type"] = error_type
    logger.exception(message, extra=extra)
