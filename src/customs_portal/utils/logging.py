"""Structured logging configuration using structlog."""

import logging
import sys
from typing import Any, Dict, Optional

import structlog
from rich.logging import RichHandler

from customs_portal.config import settings

SENSITIVE_KEYS = ("password", "api_key", "credentials", "secret", "token")
REDACTED = "***"


def _is_sensitive(key: Any) -> bool:
    return isinstance(key, str) and any(marker in key.lower() for marker in SENSITIVE_KEYS)


def _redact(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: REDACTED if _is_sensitive(k) else _redact(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return type(value)(_redact(item) for item in value)
    return value


def redact_sensitive(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask portal credentials and API keys anywhere in the event, including nested dicts."""
    for key, value in list(event_dict.items()):
        event_dict[key] = REDACTED if _is_sensitive(key) else _redact(value)
    return event_dict


def configure_logging(level: Optional[str] = None, json_output: Optional[bool] = None) -> None:
    """
    Route structlog events through a rich handler.

    Args:
        level: Log level name, defaults to ``settings.log_level``
        json_output: Render events as JSON; defaults to on unless ``settings.debug``
    """
    numeric_level = getattr(logging, (level or settings.log_level).upper(), logging.INFO)
    if json_output is None:
        json_output = not settings.debug

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=numeric_level,
        handlers=[RichHandler(rich_tracebacks=True, markup=False, show_path=settings.debug)],
    )

    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            redact_sensitive,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="ISO"),
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.WriteLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


def log_submission_context(submission_id: str, target_code: str, declaration_id: str) -> Dict[str, Any]:
    """Context bound to every event of one submission attempt."""
    return {
        "submission_id": submission_id,
        "target": target_code,
        "declaration_id": declaration_id,
    }
