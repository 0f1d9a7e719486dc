import logging
import re
import sys
from typing import Any, Iterable, Mapping, Optional

import structlog

from outreach.config import LOG_LEVEL, is_production

REDACTED = "[REDACTED]"
_DIGIT = re.compile(r"\d")


def configure_logging(log_level: str = LOG_LEVEL, json_logs: Optional[bool] = None) -> None:
    """
    Configure structlog on top of stdlib logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_logs: Render JSON lines. Defaults to True in production.
    """
    if json_logs is None:
        json_logs = is_production()

    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(log_level.upper())


def get_logger(name: Optional[str] = None):
    return structlog.get_logger(name)


def mask_phone(phone_number: str) -> str:
    if not phone_number:
        return ""
    return _DIGIT.sub("*", phone_number[:-2]) + phone_number[-2:]


def redact(metadata: Mapping[str, Any], sensitive_fields: Iterable[str]) -> dict:
    """Copy of metadata with sensitive keys replaced, nested dicts included."""
    sensitive = set(sensitive_fields)
    out = {}
    for key, value in metadata.items():
        if key in sensitive:
            out[key] = REDACTED
        elif isinstance(value, Mapping):
            out[key] = redact(value, sensitive)
        else:
            out[key] = value
    return out
