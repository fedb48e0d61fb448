from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from crmcore.context import get_log_context


logger = logging.getLogger("crmcore.request")


def resolve_path_label(request: Request) -> str:
    """Route template of the matched endpoint, or the raw path when nothing matched.

    The router records the matched route in the scope, so this is only meaningful
    once the request has been dispatched.
    """
    route = request.scope.get("route")
    template = getattr(route, "path_format", None) or getattr(route, "path", None)
    return template or request.url.path


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        method = request.method

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            logger.error(
                "http.error",
                exc_info=True,
                extra={
                    "method": method,
                    "path": resolve_path_label(request),
                    "status_code": 500,
                    "duration_ms": duration_ms,
                    **get_log_context(),
                },
            )
            raise

        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        logger.info(
            "http.request",
            extra={
                "method": method,
                "path": resolve_path_label(request),
                "status_code": response.status_code,
                "duration_ms": duration_ms,
                **get_log_context(),
            },
        )
        return response
