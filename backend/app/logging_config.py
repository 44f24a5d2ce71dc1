"""Structured logging configuration using structlog."""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from .settings import settings
from .utils import get_request_id

SERVICE_NAME = "local-discovery"
SERVICE_VERSION = "0.1.0"
LOGGED_QUERY_MAX_CHARS = 100


def add_request_id(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Attach the current request ID, when one is bound."""
    request_id = get_request_id()
    if request_id:
        event_dict["request_id"] = request_id
    return event_dict


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict["service"] = SERVICE_NAME
    event_dict["environment"] = settings.SENTRY_ENVIRONMENT
    event_dict["version"] = SERVICE_VERSION
    return event_dict


def clip_user_text(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """
    Shorten raw user queries before they reach log sinks.

    Discovery queries are free text typed by anonymous visitors; only a prefix is
    needed to correlate a suspicious request.
    """
    for key in ("query", "sanitized_query"):
        value = event_dict.get(key)
        if isinstance(value, str) and len(value) > LOGGED_QUERY_MAX_CHARS:
            event_dict[key] = value[:LOGGED_QUERY_MAX_CHARS] + "..."
    return event_dict


def drop_color_message_key(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.pop("color_message", None)
    return event_dict


def configure_structlog(json_logs: bool = False) -> None:
    """
    Configure structlog for the application.

    Args:
        json_logs: If True, output JSON logs. If False, use human-readable console format.
                   Defaults to JSON in production (non-DEBUG mode).
    """
    shared: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_request_id,
        add_app_context,
        clip_user_text,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
    ]
    if json_logs or not settings.DEBUG:
        processors: list[Processor] = [
            *shared,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            drop_color_message_key,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            *shared,
            structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=logging.DEBUG if settings.DEBUG else logging.INFO,
    )

    # Provider probes hit unreachable hosts routinely; keep transport chatter down.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """
    Get a structured logger instance.

    Usage:
        logger = get_logger(__name__)
        logger.info("discovery_blocked", risk_level="high", reasons=reasons)
    """
    return structlog.get_logger(name)


__all__ = ["configure_structlog", "get_logger"]
