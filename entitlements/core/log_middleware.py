"""
Request correlation and access logging.

Every request gets request_id / correlation_id contextvars (from the
gateway's x-request-id / x-correlation-id, or fresh UUIDs) so structlog
includes them in each entry, and both are echoed back as headers.

One ``request_completed`` entry per request, keyed by route template
(``/api/usage/{metric}/consume``) rather than the raw path, with the user
resolved by get_current_user. Health checks log at debug.
"""
from __future__ import annotations

import logging
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from entitlements.core.structured_logging import correlation_id_var, request_id_var, user_id_var

logger = logging.getLogger(__name__)

QUIET_PREFIXES = ("/api/health",)


def _path_template(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


def _user_id(request: Request) -> str | None:
    user = getattr(request.state, "user", None)
    return getattr(user, "user_id", None)


class CorrelationMiddleware(BaseHTTPMiddleware):
    """Inject request_id / correlation_id into contextvars for every request."""

    async def dispatch(self, request: Request, call_next) -> Response:
        req_id = request.headers.get("x-request-id") or uuid.uuid4().hex
        corr_id = request.headers.get("x-correlation-id") or uuid.uuid4().hex

        rid_token = request_id_var.set(req_id)
        cid_token = correlation_id_var.set(corr_id)
        uid_token = user_id_var.set(None)

        start = time.perf_counter()
        response = None
        try:
            response = await call_next(request)
        finally:
            path = _path_template(request)
            log_fn = logger.debug if path.startswith(QUIET_PREFIXES) else logger.info
            log_fn(
                "request_completed",
                extra={
                    "http.method": request.method,
                    "http.path_template": path,
                    "http.status_code": response.status_code if response else None,
                    "duration_ms": round((time.perf_counter() - start) * 1000, 2),
                    "user_id": _user_id(request),
                },
            )
            request_id_var.reset(rid_token)
            correlation_id_var.reset(cid_token)
            user_id_var.reset(uid_token)

        response.headers["x-request-id"] = req_id
        response.headers["x-correlation-id"] = corr_id
        return response
