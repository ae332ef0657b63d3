# backend/repairflow/logging_config.py
from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional

from .config import settings
from .middleware.request_id import get_request_id

# Workflow identifiers callers attach via logger.xxx(..., extra={...})
DOMAIN_KEYS = (
    "org_id",
    "user_id",
    "property_id",
    "maintenance_request_id",
    "bid_id",
    "provider_id",
    "tracking_id",
    "dispute_id",
    "escalation_level",
)

# Written by StructuredLoggingMiddleware on the per-request access line
ACCESS_KEYS = (
    "event",
    "http_request_id",
    "org_slug",
    "actor_email",
    "actor_role",
    "status_code",
    "latency_ms",
)


def _extras(record: logging.LogRecord) -> dict[str, Any]:
    return {k: getattr(record, k) for k in DOMAIN_KEYS + ACCESS_KEYS if hasattr(record, k)}


class JsonFormatter(logging.Formatter):
    """
    One JSON object per line: ts, level, logger, message, the bound
    request_id (HTTP requests and scheduler ticks alike), any workflow ids
    passed as extras, and the traceback when there is one.
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        rid = get_request_id()
        if rid:
            payload["request_id"] = rid
        payload.update(_extras(record))
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class KeyValueFormatter(logging.Formatter):
    """Local runs: `LEVEL logger message k=v ...`."""

    def format(self, record: logging.LogRecord) -> str:
        parts = [record.levelname, record.name, record.getMessage()]
        rid = get_request_id()
        if rid:
            parts.append(f"request_id={rid}")
        parts.extend(f"{k}={v}" for k, v in _extras(record).items())
        line = " ".join(str(p) for p in parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def build_formatter(fmt: Optional[str] = None) -> logging.Formatter:
    kind = (fmt or settings.log_format or "json").strip().lower()
    if kind == "text":
        return KeyValueFormatter()
    return JsonFormatter()


def configure_logging(level: Optional[str] = None, fmt: Optional[str] = None) -> None:
    """
    Installs a single stdout handler on the root logger. Used by the API,
    the standalone scheduler and celery workers, so every process writes
    the same line shape.
    """
    level = (level or settings.log_level or "INFO").upper()

    root = logging.getLogger()
    root.setLevel(level)
    # uvicorn --reload calls this again in the same interpreter
    for h in list(root.handlers):
        root.removeHandler(h)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(logging.NOTSET)
    handler.setFormatter(build_formatter(fmt))
    root.addHandler(handler)

    logging.getLogger("uvicorn.access").setLevel(level)
    logging.getLogger("sqlalchemy.engine").setLevel((settings.sql_log_level or "WARNING").upper())
    for name, lvl in (settings.log_levels or {}).items():
        logging.getLogger(name).setLevel(str(lvl).upper())
