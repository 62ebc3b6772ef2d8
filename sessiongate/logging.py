from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

import structlog

# Request id of the HTTP request being served, bound by the middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Substrings of event keys whose values must never reach the log verbatim
_PII_KEYS = frozenset({"password", "secret", "token", "verifier", "email", "authorization"})

_TRUTHY = {"1", "true", "yes", "on"}

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh UUID4) to the current context."""
    value = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(value)
    return value


def _add_correlation_id(_: Any, __: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    value = correlation_id_var.get()
    if value:
        event_dict.setdefault("correlation_id", value)
    return event_dict


def _mask(value: str) -> str:
    if len(value) <= 4:
        return "***"
    return f"{value[:2]}***{value[-2:]}"


def _redact_pii(_: Any, __: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Mask string values under credential- or address-like keys."""
    for key, value in event_dict.items():
        if key == "event" or not isinstance(value, str):
            continue
        if any(marker in key.lower() for marker in _PII_KEYS):
            event_dict[key] = _mask(value)
    return event_dict


def _renderer_chain(json_output: bool) -> List[Any]:
    if json_output:
        return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    return [structlog.dev.ConsoleRenderer(colors=True)]


def configure_logging(
    level: Optional[str] = None,
    json_output: Optional[bool] = None,
) -> None:
    """Install the structlog pipeline.

    Defaults come from ``LOG_LEVEL`` and ``LOG_JSON``; ``LOG_DEV_MODE`` forces
    the console renderer regardless of ``LOG_JSON``.
    """
    level_name = (level or os.getenv("LOG_LEVEL", "INFO")).upper()
    if json_output is None:
        json_output = _env_flag("LOG_JSON", "true") and not _env_flag("LOG_DEV_MODE", "false")

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            _add_correlation_id,
            _redact_pii,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            *_renderer_chain(json_output),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            _LEVELS.get(level_name, logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging()


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
