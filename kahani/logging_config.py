"""JSON logging configuration for the Kahani API."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "botocore", "boto3", "urllib3")


class JSONFormatter(logging.Formatter):
    """Format log records as one JSON object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if hasattr(record, "context") and record.context:
            log_data["context"] = record.context

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Configure JSON logging for the application."""
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root_logger.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the kahani namespace."""
    return logging.getLogger(f"kahani.{name}")


class LoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that merges a fixed context (e.g. trial_id) into every record."""

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        extra = kwargs.pop("extra", None) or {}
        context = {**(self.extra or {}), **(extra.get("context") or {}), **(kwargs.pop("context", None) or {})}
        if context:
            kwargs["extra"] = {**extra, "context": context}
        return msg, kwargs


def trial_logger(logger: logging.Logger, trial_id: Any, **context: Any) -> LoggerAdapter:
    """Bind a trial id (and optional fields) to a logger."""
    return LoggerAdapter(logger, {"trial_id": str(trial_id), **context})
