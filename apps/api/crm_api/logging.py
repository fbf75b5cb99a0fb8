from __future__ import annotations

import json
import logging
import re
import sys
from datetime import datetime, timezone
from typing import Any

from crm_api.context import get_correlation_id
from crm_api.core.config import Settings, get_settings


_FIELDS = (
    "method",
    "path",
    "status_code",
    "duration_ms",
    "user_id",
    "operation",
    "store_code",
    "outcome",
    "error_code",
    "error",
)
_MAX_ERROR_LENGTH = 500
_BEARER_RE = re.compile(r"(Bearer\s+)[A-Za-z0-9._~+/=-]+")
_JWT_RE = re.compile(r"eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+")
# Libraries that log full request lines, including identity platform query strings.
_QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def redact(text: str) -> str:
    return _JWT_RE.sub("[token]", _BEARER_RE.sub(r"\1[token]", text))


def _ensure_correlation_id(record: logging.LogRecord) -> None:
    if not getattr(record, "correlation_id", None):
        record.correlation_id = get_correlation_id()


class CorrelationIdFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        _ensure_correlation_id(record)
        return True


_DEFAULT_RECORD_FACTORY = logging.getLogRecordFactory()


def _record_factory(*args: Any, **kwargs: Any) -> logging.LogRecord:
    record = _DEFAULT_RECORD_FACTORY(*args, **kwargs)
    _ensure_correlation_id(record)
    return record


class JsonLogFormatter(logging.Formatter):
    """One JSON object per line; only whitelisted ``extra`` keys are emitted under ``fields``."""

    def __init__(self, service: str = "crm-api", environment: str | None = None) -> None:
        super().__init__()
        self.service = service
        self.environment = environment

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "service": self.service,
            "msg": record.getMessage(),
            "correlation_id": getattr(record, "correlation_id", None),
        }
        if self.environment:
            payload["env"] = self.environment

        fields = {key: record.__dict__[key] for key in _FIELDS if key in record.__dict__}
        error = fields.get("error")
        if isinstance(error, str):
            fields["error"] = redact(error)[:_MAX_ERROR_LENGTH]
        if record.exc_info:
            fields["exception"] = redact(self.formatException(record.exc_info))

        payload["fields"] = fields
        return json.dumps(payload, default=str)


def configure_logging(settings: Settings | None = None) -> None:
    root_logger = logging.getLogger()
    if getattr(root_logger, "_crm_configured", False):
        return

    settings = settings or get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(JsonLogFormatter(environment=settings.app_env))
    handler.addFilter(CorrelationIdFilter())

    root_logger.handlers.clear()
    root_logger.filters.clear()
    root_logger.setLevel(level)
    logging.setLogRecordFactory(_record_factory)
    root_logger.addHandler(handler)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
    root_logger._crm_configured = True  # type: ignore[attr-defined]
