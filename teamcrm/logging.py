"""structlog setup shared by every teamcrm module.

Configured once at import from ``LOG_LEVEL``, ``LOG_JSON`` and ``LOG_DEV_MODE``.
Every event carries the request's correlation id, and credential or address
fields are scrubbed before the renderer sees them.
"""

from __future__ import annotations

import hashlib
import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, echoed back in the X-Request-ID header
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# key substrings whose values never reach a log line
_CREDENTIAL_MARKERS = ("password", "secret", "token", "authorization", "cookie")
_REDACTED = "[redacted]"


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def hash_email(email: str) -> str:
    """Stable, non-reversible identifier for an email address in log lines."""
    return hashlib.sha256(email.strip().lower().encode()).hexdigest()[:16]


def mask_email(value: str) -> str:
    """``olive@example.com`` becomes ``o***@example.com``."""
    local, at, domain = value.partition("@")
    if not at:
        return _REDACTED
    return f"{local[:1]}***@{domain}"


def _stamp_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = correlation_id_var.get()
    if cid:
        event_dict.setdefault("correlation_id", cid)
    return event_dict


def _scrub_sensitive(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Replace credential values outright and mask raw email addresses.

    ``*_hash`` keys are already one-way and pass through untouched.
    """
    for key, value in event_dict.items():
        lowered = key.lower()
        if not isinstance(value, str) or lowered.endswith("_hash"):
            continue
        if any(marker in lowered for marker in _CREDENTIAL_MARKERS):
            event_dict[key] = _REDACTED
        elif "email" in lowered:
            event_dict[key] = mask_email(value)
    return event_dict


def configure_logging(
    level: str = "INFO", *, json_output: bool = True, development_mode: bool = False
) -> None:
    """(Re)configure structlog for the process.

    JSON lines are the default; ``development_mode`` or ``json_output=False``
    switches to the coloured console renderer.
    """
    processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _stamp_correlation_id,
        _scrub_sensitive,
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
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


configure_logging(
    os.getenv("LOG_LEVEL", "INFO"),
    json_output=_env_flag("LOG_JSON", True),
    development_mode=_env_flag("LOG_DEV_MODE", False),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
