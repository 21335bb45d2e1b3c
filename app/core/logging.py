from __future__ import annotations

import logging
import logging.config
from contextvars import ContextVar
from typing import Any, Optional

from pythonjsonlogger import jsonlogger


request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
user_id_ctx: ContextVar[Optional[str]] = ContextVar("user_id", default=None)
realm_id_ctx: ContextVar[Optional[str]] = ContextVar("realm_id", default=None)


class RequestContextFilter(logging.Filter):
    """Injects request scoped context variables into each log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        # explicit extras win over the ambient request context
        if getattr(record, "request_id", None) is None:
            record.request_id = request_id_ctx.get()
        if getattr(record, "user_id", None) is None:
            record.user_id = user_id_ctx.get()
        if getattr(record, "realm_id", None) is None:
            record.realm_id = realm_id_ctx.get()
        return True


def configure_logging(level: int = logging.INFO) -> None:
    """Configure JSON structured logging."""
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {
                "request_context": {
                    "()": RequestContextFilter,
                }
            },
            "formatters": {
                "json": {
                    "()": jsonlogger.JsonFormatter,
                    "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s",
                }
            },
            "handlers": {
                "default": {
                    "class": "logging.StreamHandler",
                    "stream": "ext://sys.stdout",
                    "level": level,
                    "formatter": "json",
                    "filters": ["request_context"],
                }
            },
            "loggers": {
                "": {
                    "handlers": ["default"],
                    "level": level,
                }
            },
        }
    )


def set_request_context(
    request_id: Optional[str] = None,
    user_id: Optional[str] = None,
    realm_id: Optional[str] = None,
) -> None:
    if request_id is not None:
        request_id_ctx.set(request_id)
    if user_id is not None:
        user_id_ctx.set(user_id)
    if realm_id is not None:
        realm_id_ctx.set(realm_id)


def clear_request_context() -> None:
    request_id_ctx.set(None)
    user_id_ctx.set(None)
    realm_id_ctx.set(None)


def _redact_value(value: Any) -> str:
    if value is None:
        return ""
    return "***redacted***"


def sanitize_payload(payload: Any) -> Any:
    """Remove obvious secrets from a payload while keeping business fields."""

    sensitive_keys = {
        "authorization",
        "access_token",
        "refresh_token",
        "token",
        "secret",
        "password",
    }

    def _sanitize(value: Any) -> Any:
        if isinstance(value, dict):
            sanitized: dict[str, Any] = {}
            for key, val in value.items():
                key_lower = str(key).lower()
                if any(token in key_lower for token in sensitive_keys):
                    sanitized[key] = _redact_value(val)
                else:
                    sanitized[key] = _sanitize(val)
            return sanitized
        if isinstance(value, list):
            return [_sanitize(item) for item in value]
        return value

    return _sanitize(payload)


def log_qbo_request_finished(
    *,
    user_id: Optional[str],
    realm_id: Optional[str],
    method: str,
    endpoint: str,
    attempts: int,
    status_code: Optional[int],
    latency_ms: Optional[float],
    result: str,
    error_code: Optional[str] = None,
    error_message: Optional[str] = None,
    qbo_error_details: Any = None,
) -> None:
    logger = logging.getLogger("app.qbo.request")
    logger.info(
        "qbo_request_finished",
        extra={
            "event": "qbo_request_finished",
            "request_id": request_id_ctx.get(),
            "user_id": user_id,
            "realm_id": realm_id,
            "method": method,
            "endpoint": endpoint,
            "attempts": attempts,
            "qbo_status_code": status_code,
            "latency_ms": None if latency_ms is None else round(latency_ms, 2),
            "result": result,
            "error_code": error_code,
            "error_message": error_message,
            "qbo_error_details": sanitize_payload(qbo_error_details),
        },
    )


def log_unhandled_exception(event: str, *, path: str, method: str, user_id: Optional[str] = None) -> None:
    logger = logging.getLogger("app.errors")
    logger.exception(
        event,
        extra={
            "path": path,
            "method": method,
            "request_id": request_id_ctx.get(),
            "user_id": user_id,
        },
    )
