"""Structured logging configuration for the sub-agent sync core.

- JSON structured logging with StructuredFormatter
- Logger hierarchy under the subagents namespace
- Environment variable control (SUBAGENTS_LOG_LEVEL, SUBAGENTS_LOG_FORMAT)
"""

import json
import logging
import os
from datetime import datetime, timezone
from typing import Optional

ROOT_LOGGER = "subagents"

# Keys redacted from log context. Webhook payloads and API errors may carry these.
SENSITIVE_KEYS = {
    "password", "token", "secret", "apikey", "api_key", "authorization",
    "credential", "auth", "key", "bearer", "signature", "access_token",
    "private_key", "github_token", "webhook_secret",
}

_STANDARD_FIELDS = {
    "name",
    "msg",
    "args",
    "created",
    "filename",
    "funcName",
    "levelname",
    "levelno",
    "lineno",
    "module",
    "msecs",
    "message",
    "pathname",
    "process",
    "processName",
    "relativeCreated",
    "thread",
    "threadName",
    "exc_info",
    "exc_text",
    "stack_info",
    "taskName",
}


class StructuredFormatter(logging.Formatter):
    """JSON structured log formatter.

    Outputs logs in JSON format with:
    - timestamp: UTC ISO 8601 format with 'Z' suffix
    - level: Log level name (INFO, ERROR, etc.)
    - logger: Logger name (subagents hierarchy)
    - message: Log message
    - context: Extras dict merged from LogRecord attributes
    - exception: Formatted traceback, when the record carries one

    Sensitive keys (token, secret, signature, ...) are redacted.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        extras = {
            k: ("[REDACTED]" if k.lower() in SENSITIVE_KEYS else v)
            for k, v in record.__dict__.items()
            if k not in _STANDARD_FIELDS and not k.startswith("_")
        }

        if extras:
            log_data["context"] = extras

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable text formatter for development.

    Used when SUBAGENTS_LOG_FORMAT=text.
    """

    def __init__(self):
        super().__init__(
            fmt="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )


def configure_logging(level: Optional[str] = None, fmt: Optional[str] = None) -> None:
    """Configure structured logging for all subagents loggers.

    Args:
        level: Optional log level override. Defaults to SUBAGENTS_LOG_LEVEL
               (default: INFO).
        fmt: Optional format override ("json" or "text"). Defaults to
             SUBAGENTS_LOG_FORMAT (default: json).

    Environment Variables:
        SUBAGENTS_LOG_LEVEL: Log level (DEBUG, INFO, WARNING, ERROR). Default: INFO
        SUBAGENTS_LOG_FORMAT: Output format (json, text). Default: json
    """
    if level is None:
        level = os.getenv("SUBAGENTS_LOG_LEVEL", "INFO")
    log_level = getattr(logging, level.upper(), logging.INFO)

    if fmt is None:
        fmt = os.getenv("SUBAGENTS_LOG_FORMAT", "json")

    formatter = TextFormatter() if fmt.lower() == "text" else StructuredFormatter()

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(log_level)

    # Idempotent: repeated calls must not stack handlers
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    else:
        for handler in logger.handlers:
            handler.setFormatter(formatter)

    logger.propagate = False
