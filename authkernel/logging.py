from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Request id of the HTTP request being handled, echoed as X-Request-ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

_TRUTHY = {"1", "true", "yes", "on"}
# Values under these keys are never written, not even in part
_SECRET_KEYS = ("password", "secret", "token", "authorization", "cookie")
_JWT_RE = re.compile(r"eyJ[\w-]+\.[\w-]+\.[\w-]+")


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind (or generate) the request id for the current context.

    The id is also bound into structlog's context variables, so every line
    logged while the request is handled carries it as ``request_id``.
    """
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    structlog.contextvars.bind_contextvars(request_id=cid)
    return cid


def mask_email(value: str) -> str:
    """``ada@example.com`` -> ``a***@example.com``."""
    local, at, domain = value.partition("@")
    if not at:
        return "***"
    return f"{local[:1]}***@{domain}"


def _redact_credentials(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Keep credentials out of log sinks.

    Secret-bearing keys collapse to a marker, email addresses keep only
    their first character and domain, and signed tokens embedded in free
    text such as exception messages are cut out.
    """
    for key, value in list(event_dict.items()):
        if key == "event" or not isinstance(value, str):
            continue
        lower_key = key.lower()
        if any(marker in lower_key for marker in _SECRET_KEYS):
            event_dict[key] = "[redacted]"
        elif "email" in lower_key:
            event_dict[key] = mask_email(value)
        else:
            event_dict[key] = _JWT_RE.sub("[token]", value)
    return event_dict


def configure_logging(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the structlog processor chain.

    JSON lines by default; ``development_mode`` or ``json_output=False``
    switch to the console renderer.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _redact_credentials,
        structlog.processors.StackInfoRenderer(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=development_mode))
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
    log_level=os.getenv("LOG_LEVEL", "INFO"),
    json_output=os.getenv("LOG_JSON", "true").lower() in _TRUTHY,
    development_mode=os.getenv("LOG_DEV_MODE", "false").lower() in _TRUTHY,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Logger that tags each line with the module it came from."""
    return structlog.get_logger().bind(logger=name)


_audit_logger = get_logger("authkernel.audit").bind(audit=True)


def log_audit(event: str, user_id: Optional[str] = None, **fields: Any) -> None:
    """Record a security audit event.

    Audit lines go through the same redaction as everything else and are
    tagged ``audit=True`` so sinks can route them separately. Fields left
    as ``None`` are omitted.
    """
    extra = {key: value for key, value in fields.items() if value is not None}
    _audit_logger.info(event, user_id=user_id, **extra)
