from __future__ import annotations

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from crmcore.context import CORRELATION_HEADER, correlation_scope
from crmcore.otel import annotate_current_span


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Binds the request's correlation id (supplied or generated) and echoes it back."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        with correlation_scope(request.headers.get(CORRELATION_HEADER)) as correlation_id:
            request.state.correlation_id = correlation_id
            annotate_current_span(correlation_id=correlation_id)
            response = await call_next(request)

        response.headers[CORRELATION_HEADER] = correlation_id
        return response
