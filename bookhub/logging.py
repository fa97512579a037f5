from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def get_correlation_id() -> Optional[str]:
    return request_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    request_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


# Values under these keys never reach the log sink
_SECRET_KEYS = ("password", "secret", "token", "authorization", "cookie", "api_key")
# One-time codes; matched exactly so that keys like status_code are left alone
_CODE_KEYS = frozenset({"code", "otp", "reset_code"})

_EMAIL_VALUE = re.compile(r"^([^@\s]{1,2})[^@\s]*(@[^@\s]+)$")
_JWT_VALUE = re.compile(r"^[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}\.[A-Za-z0-9_-]{8,}$")


def mask_value(key: str, value: Any) -> Any:
    """Return ``value`` with credentials, codes and contact details masked.

    Emails keep their first two characters and domain (``ab***@example.com``),
    phone numbers keep their last two digits, and anything stored under a
    secret-looking key or shaped like a JWT is replaced outright.
    """
    if not isinstance(value, str) or not value:
        return value
    lower_key = key.lower()
    if lower_key in _CODE_KEYS or any(s in lower_key for s in _SECRET_KEYS):
        return "[redacted]"
    if _JWT_VALUE.match(value):
        return "[redacted]"
    email = _EMAIL_VALUE.match(value)
    if email:
        return f"{email.group(1)}***{email.group(2)}"
    if "phone" in lower_key:
        return f"***{value[-2:]}"
    return value


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key in list(event_dict.keys()):
        if key in ("event", "level", "timestamp", "correlation_id"):
            continue
        event_dict[key] = mask_value(key, event_dict[key])
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors.

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
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
        renderers = [structlog.dev.ConsoleRenderer(colors=True)]
    else:
        renderers = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=shared_processors + renderers,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Upstream (provider, gateway, database) error text can echo credentials back
_UPSTREAM_LEAKS = [
    re.compile(r"(?i)mongodb(\+srv)?://\S+"),
    re.compile(r"(?i)rediss?://\S+"),
    re.compile(r"(?i)bearer\s+\S+"),
    re.compile(r"(?i)(access_token|refresh_token|client_secret|code|password)\"?\s*[:=]\s*\"?[^\s&\"',]+"),
    re.compile(r"(?i)/(?:home|var|etc|usr|opt|tmp|srv)/\S+"),
    re.compile(r"(?i)traceback\s*\(most recent call last\)"),
]
MAX_ERROR_LENGTH = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Strip connection strings, bearer tokens, OAuth secrets and paths from ``error``."""
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _UPSTREAM_LEAKS:
        result = pattern.sub(replacement, result)

    if len(result) > MAX_ERROR_LENGTH:
        result = result[: MAX_ERROR_LENGTH - 3] + "..."
    return result
