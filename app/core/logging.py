import json
import logging
import logging.config
from datetime import datetime, timezone
from typing import Any, Optional

from app.core.context import get_application_number, get_message_id, get_request_id
from app.core.settings import settings

AUDIT_LOGGER = "app.audit"
CORRELATION_FIELDS = ("request_id", "application_number", "message_id")

# Chatty third-party loggers kept at WARNING unless the service itself logs at DEBUG.
QUIET_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "slowapi")


class RequestContextFilter(logging.Filter):
    """Stamp each record with the ids of the request and ESS message being handled."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id()
        record.application_number = get_application_number()
        record.message_id = get_message_id()
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line, labelled with the stream it was written to."""

    def __init__(self, stream_label: str = "transactional") -> None:
        super().__init__()
        self.stream_label = stream_label

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401 - concise
        payload: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "stream": self.stream_label,
        }
        for field in CORRELATION_FIELDS:
            payload[field] = getattr(record, field, "-")
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _stdout_handler(formatter: str, level: str) -> dict[str, Any]:
    return {
        "class": "logging.StreamHandler",
        "level": level,
        "formatter": formatter,
        "filters": ["request_context"],
        "stream": "ext://sys.stdout",
    }


def configure_logging(level: Optional[str] = None) -> None:
    log_level = (level or settings.log_level).upper()
    quiet_level = "DEBUG" if log_level == "DEBUG" else "WARNING"
    loggers: dict[str, dict[str, Any]] = {
        "": {"handlers": ["default"], "level": log_level},
        AUDIT_LOGGER: {"handlers": ["audit"], "level": "INFO", "propagate": False},
    }
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        loggers[name] = {"handlers": ["default"], "level": log_level, "propagate": False}
    for name in QUIET_LOGGERS:
        loggers[name] = {"level": quiet_level}

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {"request_context": {"()": RequestContextFilter}},
            "formatters": {
                "json": {"()": JsonFormatter, "stream_label": "transactional"},
                "audit_json": {"()": JsonFormatter, "stream_label": "audit"},
            },
            "handlers": {
                "default": _stdout_handler("json", log_level),
                "audit": _stdout_handler("audit_json", "INFO"),
            },
            "loggers": loggers,
        }
    )
    logging.getLogger(__name__).info(
        "Logging configured for environment=%s fsp_code=%s", settings.environment, settings.fsp_code
    )


def get_audit_logger() -> logging.Logger:
    """Logger for state transitions and outbound notifications; always written at INFO."""
    return logging.getLogger(AUDIT_LOGGER)
