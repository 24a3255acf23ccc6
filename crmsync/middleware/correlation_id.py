from __future__ import annotations

import re
import uuid

from opentelemetry import trace
from starlette.datastructures import Headers
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from crmsync.context import reset_correlation_id, set_correlation_id


CORRELATION_HEADER = "x-correlation-id"
REQUEST_ID_HEADER = "x-request-id"

# Must fit ghl_sync_log.correlation_id.
_ACCEPTED_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")


def resolve_correlation_id(headers: Headers) -> str:
    """Reuse a caller-supplied id when it is safe to store, otherwise mint one."""
    for name in (CORRELATION_HEADER, REQUEST_ID_HEADER):
        candidate = headers.get(name)
        if candidate and _ACCEPTED_ID.match(candidate):
            return candidate
    return str(uuid.uuid4())


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        correlation_id = resolve_correlation_id(request.headers)
        request.state.correlation_id = correlation_id
        span = trace.get_current_span()
        if span.is_recording():
            span.set_attribute("correlation_id", correlation_id)

        token = set_correlation_id(correlation_id)
        try:
            response = await call_next(request)
        finally:
            reset_correlation_id(token)

        response.headers[CORRELATION_HEADER] = correlation_id
        response.headers[REQUEST_ID_HEADER] = correlation_id
        return response
