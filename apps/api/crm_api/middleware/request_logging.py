from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from crm_api.core.context import get_request_context
from crm_api.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("crm_api.request")

_QUIET_PATHS = {"/health", "/metrics"}


def _resolved_user_id(request: Request) -> str | None:
    context = get_request_context(request)
    return context.user_id if context is not None else None


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        method = request.method
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            path = resolve_http_path_label(request)
            observe_http_request(method=method, path=path, status=500, duration=duration_ms / 1000)
            logger.error(
                "http.error",
                exc_info=True,
                extra={
                    "method": method,
                    "path": path,
                    "status_code": 500,
                    "duration_ms": duration_ms,
                    "user_id": _resolved_user_id(request),
                },
            )
            raise

        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        # The route is only known once routing has happened inside call_next.
        path = resolve_http_path_label(request)
        observe_http_request(
            method=method,
            path=path,
            status=response.status_code,
            duration=duration_ms / 1000,
        )
        level = logging.DEBUG if request.url.path in _QUIET_PATHS else logging.INFO
        if response.status_code >= 500:
            level = logging.WARNING
        logger.log(
            level,
            "http.request",
            extra={
                "method": method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
                "user_id": _resolved_user_id(request),
            },
        )
        return response
