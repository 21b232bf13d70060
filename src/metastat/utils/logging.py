"""Structured logging for the statistical engine.

Engine modules log through :func:`get_logger`.  Records may carry an
``analysis`` mapping via ``extra={"analysis": {...}}`` (measure, number
of studies, key statistics); the JSON formatter merges it into the
emitted object and the text formatter appends it as ``key=value`` pairs.
"""

import json
import logging
import sys
from typing import Any, Dict, Mapping, Optional

from ..config.settings import Settings, settings as default_settings

_TEXT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def _analysis_fields(record: logging.LogRecord) -> Mapping[str, Any]:
    fields = getattr(record, "analysis", None)
    return fields if isinstance(fields, Mapping) else {}


class JSONFormatter(logging.Formatter):
    """Format logs as JSON."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        log_data.update(_analysis_fields(record))
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Plain text format with analysis fields appended."""

    def __init__(self) -> None:
        super().__init__(_TEXT_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = _analysis_fields(record)
        if fields:
            line += " | " + " ".join(f"{k}={v}" for k, v in fields.items())
        return line


def get_logger(name: str, config: Optional[Settings] = None) -> logging.Logger:
    """Return a logger with a single stdout handler.

    The handler is attached once; later calls reuse it, so loggers are
    safe to create at import time in every engine module.
    """
    config = config or default_settings
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        if config.log_format == "json":
            handler.setFormatter(JSONFormatter())
        else:
            handler.setFormatter(TextFormatter())
        logger.addHandler(handler)
        logger.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))
    return logger
