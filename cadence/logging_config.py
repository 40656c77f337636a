"""Structured JSON logs for the API process and its queue workers.

Every record is one JSON object on stdout. Call sites attach fields with
``extra={"context": {...}}``; queue jobs use ``JobLoggerAdapter`` so the
queue name, job id and attempt ride along on every line.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Any, Optional

SERVICE_NAME = "cadence"

NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "service": SERVICE_NAME,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if context:
            log_data["context"] = context

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # UUIDs and datetimes in context are rendered with str()
        return json.dumps(log_data, ensure_ascii=False, default=str)


def _resolve_level(level: Optional[str]) -> int:
    if level is None:
        level = os.environ.get("LOG_LEVEL") or ("DEBUG" if os.environ.get("DEBUG", "").lower() == "true" else "INFO")
    return getattr(logging, level.upper(), logging.INFO)


def setup_logging(level: Optional[str] = None) -> None:
    """Route all logging through one stdout JSON handler."""
    root_logger = logging.getLogger()
    root_logger.setLevel(_resolve_level(level))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{SERVICE_NAME}.{name}")


class JobLoggerAdapter(logging.LoggerAdapter):
    """Prefixes every record's context with the job's identity.

    Per-call fields go in ``context=``; they win over the bound ones.
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        context = kwargs.pop("context", None)
        extra = kwargs.setdefault("extra", {})
        extra["context"] = {**(self.extra or {}), **extra.get("context", {}), **(context or {})}
        return msg, kwargs
