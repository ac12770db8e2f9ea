from __future__ import annotations

import logging
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Mapping, Optional

import structlog

# Context variable for the per-request correlation ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

REDACTED = "[REDACTED]"

# Compared against keys lower-cased with "-" and "_" removed
_SENSITIVE_KEY_PARTS = ("authorization", "cookie", "password", "secret", "token", "apikey")

# Inbound X-Request-ID values outside this shape are replaced by a fresh id
_CORRELATION_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")

_MAX_REDACT_DEPTH = 20


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID for request tracing."""
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Set or generate a correlation ID for the current request context.

    An inbound value is kept only when it is well formed; anything else is
    replaced by a new UUID4 so logs never carry attacker-shaped identifiers.
    """
    if correlation_id and _CORRELATION_ID_RE.match(correlation_id):
        cid = correlation_id
    else:
        cid = str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def is_sensitive_key(key: Any) -> bool:
    if not isinstance(key, str):
        return False
    normalized = key.lower().replace("-", "").replace("_", "")
    return any(part in normalized for part in _SENSITIVE_KEY_PARTS)


def redact(data: Any, *, depth: int = 0) -> Any:
    """Recursively replace values stored under sensitive keys with ``[REDACTED]``."""
    if depth > _MAX_REDACT_DEPTH:
        return "[max depth exceeded]"
    if isinstance(data, Mapping):
        return {
            key: REDACTED if is_sensitive_key(key) else redact(value, depth=depth + 1)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [redact(item, depth=depth + 1) for item in data]
    if isinstance(data, tuple):
        return tuple(redact(item, depth=depth + 1) for item in data)
    return data


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to add correlation_id to all log entries."""
    cid = get_correlation_id()
    if cid and "correlation_id" not in event_dict:
        event_dict["correlation_id"] = cid
    return event_dict


def _redact_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to redact credentials at any nesting depth."""
    return redact(event_dict)


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog with the shared processor chain.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_sensitive,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=False,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger with correlation ID support."""
    return structlog.get_logger(name)
