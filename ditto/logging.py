from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Request id bound by the HTTP middleware; empty outside a request
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Substrings of event keys whose values are masked before rendering
_PII_KEYS = frozenset(
    {"password", "secret", "token", "authorization", "email", "phone", "subject"}
)
_TRUTHY = {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh UUID) to the current context and return it."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = correlation_id_var.get()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _mask(value: str) -> str:
    return f"{value[:2]}***{value[-2:]}"


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask phone numbers, emails, tokens and secrets.

    Short values (four characters or fewer) carry nothing worth hiding and are
    left as-is so log lines stay readable.
    """
    for key, value in event_dict.items():
        if not isinstance(value, str) or len(value) <= 4:
            continue
        lowered = key.lower()
        if any(marker in lowered for marker in _PII_KEYS):
            event_dict[key] = _mask(value)
    return event_dict


def _select_renderer(json_output: bool, development_mode: bool) -> list:
    if development_mode or not json_output:
        return [structlog.dev.ConsoleRenderer(colors=True)]
    return [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the processor chain used by every ``get_logger`` logger.

    Args:
        log_level: minimum level name (DEBUG, INFO, WARNING, ERROR)
        json_output: render JSON lines; otherwise the console renderer
        development_mode: force the coloured console renderer
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
        *_select_renderer(json_output, development_mode),
    ]
    level = logging.getLevelName(log_level.upper())
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            level if isinstance(level, int) else logging.INFO
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in _TRUTHY


_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Provider and HTTP client errors can echo tokens, keys or filesystem paths
_SENSITIVE_ERROR_PATTERNS = [
    re.compile(r"(?i)(password|secret|token|key|credential|api.?key)\s*[:=]\s*\S+"),
    re.compile(r"(?i)bearer\s+[A-Za-z0-9._\-]+"),
    # JWT-shaped: three dot-separated base64url segments
    re.compile(r"[A-Za-z0-9_\-]{10,}\.[A-Za-z0-9_\-]{10,}\.[A-Za-z0-9_\-]{10,}"),
    re.compile(r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/\S+"),
    re.compile(r"(?i)traceback\s*\(most recent call last\)"),
]
_MAX_ERROR_LENGTH = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Scrub credentials, JWT-shaped strings and paths from an error message.

    The result is capped at 500 characters.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _SENSITIVE_ERROR_PATTERNS:
        result = pattern.sub(replacement, result)

    if len(result) > _MAX_ERROR_LENGTH:
        result = result[: _MAX_ERROR_LENGTH - 3] + "..."
    return result
