"""
Structured logging with tenant correlation.

Features:
- JSON logs in production, pretty logs in development.
- Context-bound request_id, set by RequestIdMiddleware for each HTTP request.
- Context-bound tenant_id so batch jobs can tag every line for the tenant
  currently being processed.
- log_event helper for consistent structured logs with safe truncation.
"""

import json
import logging
import os
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Optional

tenant_id_ctx_var: ContextVar[Optional[str]] = ContextVar("tenant_id", default=None)
request_id_ctx_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)

# Keys every structured billing line may carry
_STRUCTURED_KEYS = ("request_id", "tenant_id", "subscription_id", "event_type", "error_code")


def get_tenant_id(default: Optional[str] = None) -> Optional[str]:
    """Fetch the current tenant_id from context (if any)."""
    tid = tenant_id_ctx_var.get()
    return tid if tid is not None else default


def get_request_id(default: Optional[str] = None) -> Optional[str]:
    """Fetch the current HTTP request_id from context (if any)."""
    rid = request_id_ctx_var.get()
    return rid if rid is not None else default


@contextmanager
def tenant_log_context(tenant_id: Optional[str]):
    """Bind tenant_id for every log line emitted inside the block."""
    token = tenant_id_ctx_var.set(tenant_id)
    try:
        yield
    finally:
        tenant_id_ctx_var.reset(token)


def _format_timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace('+00:00', 'Z')


class TenantIdFilter(logging.Filter):
    """Inject tenant_id and request_id into log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "tenant_id", None) is None:
            record.tenant_id = get_tenant_id()
        if getattr(record, "request_id", None) is None:
            record.request_id = get_request_id()
        return True


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": _format_timestamp(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for key in _STRUCTURED_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = value
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class PrettyFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        tid = getattr(record, "tenant_id", None)
        tid_part = f" [tenant={tid}]" if tid else ""
        ts = _format_timestamp(record)
        line = f"{ts} {record.levelname} [billing]{tid_part} {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def configure_logging(env: str = "development") -> None:
    """Configure structured logging based on environment."""
    logger = logging.getLogger("billing")
    logger.setLevel(logging.INFO)

    formatter: logging.Formatter
    if env.lower() == "production":
        formatter = JsonFormatter()
    else:
        formatter = PrettyFormatter()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)
    handler.addFilter(TenantIdFilter())

    logger.handlers = [handler]
    logger.propagate = True


def _safe_truncate(value, limit: int = 500):
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    if len(text) <= limit:
        return text
    return text[:limit] + "...<truncated>"


def log_event(
    level: str,
    msg: str,
    *,
    tenant_id: Optional[str],
    subscription_id: Optional[int] = None,
    event_type: Optional[str] = None,
    error_code: Optional[str] = None,
    extra: Optional[Dict[str, object]] = None,
):
    """Structured logging helper with safe truncation and tenant correlation."""

    logger = logging.getLogger("billing")
    if not logger.handlers:
        # Ensure logging configured in edge cases (tests)
        configure_logging(os.getenv("ENV", "development"))

    payload = {
        "tenant_id": tenant_id or get_tenant_id(),
        "subscription_id": subscription_id,
    }
    if event_type:
        payload["event_type"] = event_type
    if error_code:
        payload["error_code"] = error_code
    if extra:
        for k, v in extra.items():
            payload[k] = _safe_truncate(v)

    log_fn = getattr(logger, level, logger.info)
    log_fn(msg, extra=payload)
