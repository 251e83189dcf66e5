"""JSON logging for the webhook router: one line per record, tenant fields promoted to the top level."""

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Optional
from urllib.parse import urlsplit

LOGGER_NAMESPACE = "flowrouter"

# Promoted out of ``context`` so log queries can filter by tenant or request
TOP_LEVEL_FIELDS = ("bot_id", "user_id", "request_id")

SECRET_KEYS = {"token", "bot_token", "secret", "webhook_secret", "signing_secret", "password", "encryption_key"}

QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access", "asyncio")


def _scrub(context: dict[str, Any]) -> dict[str, Any]:
    return {key: "***" if key.lower() in SECRET_KEYS else value for key, value in context.items()}


class JSONFormatter(logging.Formatter):
    """Format log records as JSON."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        context = getattr(record, "context", None)
        if context:
            context = _scrub(context)
            for field in TOP_LEVEL_FIELDS:
                if context.get(field) is not None:
                    entry[field] = context.pop(field)
            if context:
                entry["context"] = context

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Route every logger through a single stdout JSON handler."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"{LOGGER_NAMESPACE}.{name}")


def redact_url(url: str) -> str:
    """Render a connection URL as host:port/database, without credentials."""
    try:
        parts = urlsplit(url)
        host = parts.hostname or "unknown"
        port = f":{parts.port}" if parts.port else ""
        path = parts.path or ""
    except ValueError:
        return "<unparseable>"
    return f"{host}{port}{path}"


class LoggerAdapter(logging.LoggerAdapter):
    """Carries per-request fields (bot, user, request id) into every record's ``context``.

    Call sites pass extra fields as ``context={...}``; they are merged over the
    bound fields for that one record.
    """

    def process(self, msg: str, kwargs: dict[str, Any]) -> tuple[str, dict[str, Any]]:
        context: Optional[dict[str, Any]] = kwargs.pop("context", None)
        if context or self.extra:
            kwargs["extra"] = {"context": {**self.extra, **(context or {})}}
        return msg, kwargs

    def bind(self, **fields: Any) -> "LoggerAdapter":
        return LoggerAdapter(self.logger, {**self.extra, **fields})
