from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from crmsync.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("crmsync.request")

# Probed by orchestrators and scrapers; counted in metrics but logged at DEBUG.
QUIET_PATHS = frozenset({"/health", "/metrics"})


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            self._emit(request, 500, started, failed=True)
            raise
        self._emit(request, response.status_code, started)
        return response

    def _emit(self, request: Request, status_code: int, started: float, *, failed: bool = False) -> None:
        elapsed = time.perf_counter() - started
        path = resolve_http_path_label(request)
        observe_http_request(method=request.method, path=path, status=status_code, duration=elapsed)
        fields = {
            "method": request.method,
            "path": path,
            "status_code": status_code,
            "duration_ms": round(elapsed * 1000, 2),
        }
        if failed:
            logger.error("http.error", exc_info=True, extra=fields)
        elif path in QUIET_PATHS:
            logger.debug("http.request", extra=fields)
        else:
            logger.info("http.request", extra=fields)
