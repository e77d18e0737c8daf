from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, List, Optional

import structlog

# Request id of the HTTP call being served, set by the app middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Event keys whose values are masked before rendering
_PII_KEYS = frozenset({
    "password", "secret", "token", "code", "authorization", "email",
    "access_token", "refresh_token", "recovery_code",
})
_PII_SUFFIXES = ("_password", "_secret", "_email")

_TRUTHY = {"1", "true", "yes", "on"}


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
    cid = correlation_id_var.get()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credential and address values, keeping two chars at each end."""
    for key, value in list(event_dict.items()):
        lower_key = key.lower()
        if lower_key not in _PII_KEYS and not lower_key.endswith(_PII_SUFFIXES):
            continue
        if isinstance(value, str) and len(value) > 4:
            event_dict[key] = f"{value[:2]}***{value[-2:]}"
    return event_dict


def _processors(json_output: bool) -> List[Any]:
    chain: List[Any] = [
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
    ]
    if json_output:
        chain += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        chain.append(structlog.dev.ConsoleRenderer(colors=True))
    return chain


def configure_logging(level: str = "INFO", json_output: bool = True) -> None:
    """Route structlog events to stdout as JSON lines or console text."""
    structlog.configure(
        processors=_processors(json_output),
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=(
        os.getenv("LOG_JSON", "true").lower() in _TRUTHY
        and os.getenv("LOG_DEV_MODE", "false").lower() not in _TRUTHY
    ),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
