"""
Structured logging configuration using structlog.
Shop credentials never reach the log output: redact_secrets masks them in every event.
"""
import logging
from typing import Any, MutableMapping, Optional

import structlog

from app.config import Settings, settings as default_settings

REDACTED = "***"
SECRET_KEYS = frozenset({"access_token", "client_secret", "code", "hmac", "token"})


def redact_secrets(logger: Any, method_name: str, event_dict: MutableMapping[str, Any]):
    """structlog processor masking credential-bearing keys."""
    for key in SECRET_KEYS.intersection(event_dict):
        if event_dict[key]:
            event_dict[key] = REDACTED
    return event_dict


def configure_logging(settings: Optional[Settings] = None):
    """
    Configure structured logging for the bridge.

    JSON lines in production, colored console output otherwise. Every event
    carries an ISO UTC timestamp and passes through redact_secrets.

    Args:
        settings: Settings to read environment and level from (defaults to global settings)
    """
    settings = settings or default_settings
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_secrets,
        structlog.dev.set_exc_info,
    ]

    if settings.app_environment == "production":
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )
    structlog.contextvars.bind_contextvars(environment=settings.app_environment)
