"""Structured logging for qcauth.

Events are rendered as JSON lines (or a colored console in dev mode) and pass
through a redaction processor so credentials, one-time codes and addresses
never reach a sink in clear text. Audit metadata nested in an event is
redacted the same way.
"""
from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Substring matches, masked completely
_SECRET_KEYS = ("password", "secret", "authorization", "mfa_key")
# Substring matches, short prefix kept so log lines can be tied to audit rows
_TOKEN_KEYS = ("token",)
# Exact matches; a partially shown six digit code is still guessable
_CODE_KEYS = frozenset({"code", "totp", "totp_code", "otp", "manual_entry_key"})
_TOKEN_PREFIX = 6
_MAX_DEPTH = 5


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind the request correlation id, generating one when the client sent none."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def bind_request_context(**fields: Any) -> None:
    """Attach request-scoped fields (client ip, route, user id) to later events."""
    structlog.contextvars.bind_contextvars(
        **{key: value for key, value in fields.items() if value is not None}
    )


def clear_request_context() -> None:
    structlog.contextvars.clear_contextvars()


def mask_email(value: str) -> str:
    local, sep, domain = value.partition("@")
    if not sep:
        return "***"
    return f"{local[:1]}***@{domain}"


def _mask_token(value: str) -> str:
    if len(value) <= _TOKEN_PREFIX + 2:
        return "***"
    return value[:_TOKEN_PREFIX] + "***"


def _redact_value(key: str, value: Any, depth: int) -> Any:
    lower_key = key.lower()
    if isinstance(value, dict):
        if depth >= _MAX_DEPTH:
            return "***"
        return {k: _redact_value(str(k), v, depth + 1) for k, v in value.items()}
    if not isinstance(value, str):
        return value
    if lower_key in _CODE_KEYS or any(s in lower_key for s in _SECRET_KEYS):
        return "***"
    if any(s in lower_key for s in _TOKEN_KEYS):
        return _mask_token(value)
    if "email" in lower_key:
        return mask_email(value)
    return value


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    for key, value in list(event_dict.items()):
        if key == "event":
            continue
        event_dict[key] = _redact_value(key, value, 0)
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
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


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
