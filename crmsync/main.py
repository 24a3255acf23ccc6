from contextlib import asynccontextmanager, contextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from crmsync.api.routes import router as api_router
from crmsync.core.config import get_settings
from crmsync.core.database import SessionLocal, get_db
from crmsync.core.events import InternalEvent, event_bus
from crmsync.ghl.client import GHLClient
from crmsync.ghl.handlers import SyncEventHandlers
from crmsync.ghl.notifications import NotificationService
from crmsync.ghl.sync import LifecycleSyncService
from crmsync.logging import configure_logging
from crmsync.middleware.correlation_id import CorrelationIdMiddleware
from crmsync.middleware.request_logging import RequestLoggingMiddleware
from crmsync.otel import configure_tracing, get_fastapi_server_request_hook


settings = get_settings()
configure_logging(settings.log_level)
logger = logging.getLogger("crmsync.lifecycle")
_subscriptions_registered = False


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event": event.name})


@contextmanager
def _sync_session_scope():
    # Honors a get_db override so handlers see the same session as requests.
    override = app.dependency_overrides.get(get_db) if "app" in globals() else None
    if override is None:
        session = SessionLocal()
        try:
            yield session
        finally:
            session.close()
        return

    generator = override()
    session = next(generator)
    try:
        yield session
    finally:
        generator.close()


def build_sync_handlers() -> SyncEventHandlers:
    client = GHLClient(get_settings())
    return SyncEventHandlers(
        LifecycleSyncService(client),
        NotificationService(client),
        _sync_session_scope,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        build_sync_handlers().register(event_bus)
        _subscriptions_registered = True
    current = get_settings()
    if not current.ghl_api_key:
        logger.warning("ghl.not_configured", extra={"reason": "GHL_API_KEY not set"})
    event_bus.publish("system.started", {"service": current.otel_service_name})
    yield


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

configure_tracing(settings)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
