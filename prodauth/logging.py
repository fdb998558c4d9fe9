from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request id, echoed as X-Request-ID and attached to every log line
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# keys whose values are credential material
_CREDENTIAL_KEYS = ("password", "secret", "authorization", "cookie")
# token ids and types are safe to log; raw tokens are not
_TOKEN_KEY_ALLOWLIST = {"token_id", "token_type"}
_JWT_PATTERN = re.compile(r"eyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]*")


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _is_sensitive_key(key: str) -> bool:
    lower_key = key.lower()
    if lower_key in _TOKEN_KEY_ALLOWLIST:
        return False
    return "token" in lower_key or any(k in lower_key for k in _CREDENTIAL_KEYS)


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask passwords, secrets and raw tokens before rendering."""
    for key, value in list(event_dict.items()):
        if key == "event":
            continue
        if _is_sensitive_key(key) and value is not None:
            event_dict[key] = "[redacted]"
        elif isinstance(value, str) and _JWT_PATTERN.search(value):
            event_dict[key] = _JWT_PATTERN.sub("[jwt]", value)
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_correlation_id,
        _redact_credentials,
        structlog.processors.StackInfoRenderer(),
    ]

    if development_mode or not json_output:
        renderer = structlog.dev.ConsoleRenderer(colors=development_mode)
        processors = shared_processors + [renderer]
    else:
        processors = shared_processors + [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]

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
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# Fragments that must not reach a client in a 5xx message
_INTERNAL_DETAIL_PATTERNS = [
    re.compile(r"(?i)\b(select|insert|update|delete)\b.{0,80}"),
    re.compile(r"(?i)(database|psycopg|pool)\s+error.*"),
    re.compile(r"(?i)(?:/[\w.-]+){2,}"),
    re.compile(r"(?i)(password|secret|token)\s*[:=]\s*\S+"),
    re.compile(r"(?i)traceback \(most recent call last\).*", re.DOTALL),
]


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Return ``error`` with SQL, filesystem paths and credentials replaced."""
    if not error or not isinstance(error, str):
        return "internal server error"

    result = error
    for pattern in _INTERNAL_DETAIL_PATTERNS:
        result = pattern.sub(replacement, result)
    return result[:300]
