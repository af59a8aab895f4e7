from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Values under these keys never reach a log line in the clear
_SECRET_KEYS = ("password", "secret", "csrf", "cookie", "authorization", "signature", "nonce")
_IDENTITY_KEYS = ("email", "session_id", "token")


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def get_request_id() -> Optional[str]:
    return request_id_var.get()


def set_correlation_id(request_id: Optional[str] = None) -> str:
    """Adopt the caller's X-Request-ID (or mint one) for the current request."""
    rid = request_id or uuid.uuid4().hex
    request_id_var.set(rid)
    return rid


def bind_request(**fields: Any) -> None:
    """Attach request-scoped fields (path, method, client ip) to every log line."""
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(**fields)


def _stamp_request_id(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    rid = get_request_id()
    if rid and "request_id" not in event_dict:
        event_dict["request_id"] = rid
    return event_dict


def _scrub(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Drop secrets and mask identities; ``*_hash`` keys are already safe."""
    for key in list(event_dict):
        lowered = key.lower()
        if lowered == "event" or lowered.endswith("_hash"):
            continue
        value = event_dict[key]
        if any(marker in lowered for marker in _SECRET_KEYS):
            event_dict[key] = "[redacted]"
        elif isinstance(value, str) and any(marker in lowered for marker in _IDENTITY_KEYS):
            event_dict[key] = value[:2] + "***" if len(value) > 4 else "***"
    return event_dict


def configure_logging(level: str = "INFO", *, json_output: bool = True) -> None:
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _stamp_request_id,
        _scrub,
        structlog.processors.StackInfoRenderer(),
    ]
    if json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", "true") and not _env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
