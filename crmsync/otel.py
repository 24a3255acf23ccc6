from __future__ import annotations

from typing import Any

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor,
    ConsoleSpanExporter,
    SimpleSpanProcessor,
)
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import Span

from crmsync.context import get_correlation_id, get_sync_event
from crmsync.core.config import Settings


_provider: TracerProvider | None = None
_exporters_attached = False


def _provider_for(service_name: str, version: str) -> TracerProvider:
    global _provider

    if _provider is None:
        resource = Resource.create({"service.name": service_name, "service.version": version})
        _provider = TracerProvider(resource=resource)
        trace.set_tracer_provider(_provider)
    return _provider


def configure_tracing(settings: Settings) -> TracerProvider | None:
    """Install the global tracer provider and its exporters once; no-op when tracing is off."""
    global _exporters_attached

    if not settings.otel_enabled:
        return None

    provider = _provider_for(settings.otel_service_name, settings.app_version)
    if _exporters_attached:
        return provider

    if settings.otel_exporter_otlp_endpoint:
        provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=settings.otel_exporter_otlp_endpoint)))
    if settings.otel_console_exporter:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    _exporters_attached = True
    return provider


def setup_inmemory_otel(service_name: str = "crmsync", version: str = "test") -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    _provider_for(service_name, version).add_span_processor(SimpleSpanProcessor(exporter))
    return exporter


def tag_span(span: Span, **attributes: Any) -> None:
    """Stamp the correlation id, the enclosing sync event and any non-null attributes."""
    span.set_attribute("correlation_id", get_correlation_id() or "")
    sync_event = get_sync_event()
    if sync_event:
        span.set_attribute("ghl.sync.event", sync_event)
    for key, value in attributes.items():
        if value is not None:
            span.set_attribute(key, value)


def get_fastapi_server_request_hook():
    def server_request_hook(span, scope: dict[str, Any]) -> None:  # type: ignore[no-untyped-def]
        if span is None:
            return
        headers = dict(scope.get("headers", []))
        correlation_raw = headers.get(b"x-correlation-id")
        if correlation_raw:
            span.set_attribute("correlation_id", correlation_raw.decode("utf-8"))

    return server_request_hook
