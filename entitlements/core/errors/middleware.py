"""
Exception handlers for the entitlement API.

Every failure a client sees is an ``{"error": {...}}`` body built from the
registry entry of an ENT-* code:
  - EntitlementError          → its own code
  - RequestValidationError    → ENT-API-002
  - anything else             → ENT-SYS-001
Retryable entries with a ``retry_after_s`` hint also set Retry-After.
Monitoring-signal codes are never valid responses; raising one is treated
like an unregistered code.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from entitlements.core.errors import EntitlementError
from entitlements.core.errors.registry import ErrorEntry, error_registry

logger = logging.getLogger(__name__)

_FALLBACK_BODY = {
    "title": "Internal error",
    "message": "An unexpected error occurred.",
    "retryable": False,
    "user_action_required": False,
    "remediation": [],
}


async def entitlement_error_handler(request: Request, exc: EntitlementError) -> JSONResponse:
    """Convert EntitlementError into a structured JSON response."""
    entry = error_registry.get(exc.code)

    if entry is None or entry.is_signal:
        logger.error(
            "unanswerable_error_code",
            extra={
                "error.code": exc.code,
                "error.message": exc.detail,
                "error.signal": entry is not None,
                "http.path": request.url.path,
            },
        )
        return JSONResponse(status_code=500, content={"error": {"code": exc.code, **_FALLBACK_BODY}})

    _log_error(entry, exc)
    return JSONResponse(
        status_code=entry.http_status,
        content={"error": _body(entry)},
        headers=_headers(entry),
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return await entitlement_error_handler(
        request,
        EntitlementError("ENT-API-002", detail=str(exc.errors()), context={"path": request.url.path}),
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled exception on %s %s: %s", request.method, request.url.path, exc, exc_info=True)
    return await entitlement_error_handler(request, EntitlementError("ENT-SYS-001", detail=str(exc)))


def register_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(EntitlementError, entitlement_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    # Unhandled exceptions still answer JSON, not bare text
    app.add_exception_handler(Exception, unhandled_exception_handler)


def _body(entry: ErrorEntry) -> dict:
    return {
        "code": entry.code,
        "title": entry.title,
        "message": entry.safe_message,
        "retryable": entry.retryable,
        "user_action_required": entry.user_action_required,
        "remediation": entry.remediation,
    }


def _headers(entry: ErrorEntry) -> dict:
    if entry.retryable and entry.retry_after_s:
        return {"Retry-After": str(entry.retry_after_s)}
    return {}


def _log_error(entry: ErrorEntry, exc: EntitlementError) -> None:
    log_extra = {
        "error.code": exc.code,
        "error.kind": type(exc).__name__,
        "error.message_safe": entry.safe_message,
        "error.message": exc.detail,
        "error.retryable": entry.retryable,
        **{f"error.ctx.{k}": v for k, v in exc.context.items()},
    }
    _severity_to_log_fn(entry.severity)(entry.title, extra=log_extra)


def _severity_to_log_fn(severity: str):
    """Map registry severity to logger method."""
    return {
        "DEBUG": logger.debug,
        "INFO": logger.info,
        "WARN": logger.warning,
        "ERROR": logger.error,
        "CRITICAL": logger.critical,
    }.get(severity, logger.error)
