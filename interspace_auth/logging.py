from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Set by the HTTP middleware for the lifetime of one request
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

EventDict = Dict[str, Any]

_PII_KEYS = ("password", "secret", "token", "signature", "authorization", "email", "code")
# contain a PII fragment but never a sensitive value
_PII_SAFE_KEYS = frozenset({"error_code", "status_code", "token_kind", "code_count"})


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context and return it."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    cid = correlation_id_var.get()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _mask(key: str, value: str) -> str:
    if "email" in key and "@" in value:
        local, domain = value.split("@", 1)
        return f"{local[:2]}***@{domain}"
    return f"{value[:2]}***{value[-2:]}"


def _redact_pii(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask credentials and email addresses.

    Masked values keep a short prefix and suffix (emails keep the domain) so
    lines about the same subject can still be correlated.
    """
    for key, value in list(event_dict.items()):
        lower_key = key.lower()
        if lower_key in _PII_SAFE_KEYS or not any(pii in lower_key for pii in _PII_KEYS):
            continue
        if isinstance(value, str) and len(value) > 4:
            event_dict[key] = _mask(lower_key, value)
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def configure_logging(
    log_level: str = "INFO", *, json_output: bool = True, development_mode: bool = False
) -> None:
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
