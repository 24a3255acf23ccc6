from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

ghl_requests_total = Counter(
    "ghl_requests_total",
    "Outbound CRM API calls by event type and outcome",
    ["event_type", "outcome"],
)

ghl_request_duration_seconds = Histogram(
    "ghl_request_duration_seconds",
    "Outbound CRM API call duration in seconds",
    ["event_type"],
)

ghl_sync_total = Counter(
    "ghl_sync_total",
    "Lifecycle sync invocations by event and status",
    ["event", "status"],
)

ghl_backfill_rows_total = Counter(
    "ghl_backfill_rows_total",
    "Rows processed by operator backfill by actor type and status",
    ["actor_type", "status"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        for attribute in ("path_format", "path"):
            value = getattr(route, attribute, None)
            if isinstance(value, str) and value:
                return _PATH_PARAM_RE.sub("{id}", value)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    http_requests_total.labels(method=method, path=path, status=str(status)).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_ghl_request(event_type: str, outcome: str, duration: float) -> None:
    ghl_requests_total.labels(event_type=event_type, outcome=outcome).inc()
    ghl_request_duration_seconds.labels(event_type=event_type).observe(duration)


def observe_sync(event: str, status: str) -> None:
    ghl_sync_total.labels(event=event, status=status).inc()


def observe_backfill_row(actor_type: str, status: str) -> None:
    ghl_backfill_rows_total.labels(actor_type=actor_type, status=status).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
