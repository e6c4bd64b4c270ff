from contextlib import asynccontextmanager, contextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from salesflow.api.routes import router as api_router
from salesflow.core.config import get_settings
from salesflow.core.database import SessionLocal, get_db
from salesflow.core.events import InternalEvent, event_bus
from salesflow.logging import configure_logging
from salesflow.middleware.correlation_id import CorrelationIdMiddleware
from salesflow.middleware.rate_limit import MutationRateLimitMiddleware
from salesflow.middleware.request_logging import RequestLoggingMiddleware
from salesflow.otel import get_fastapi_server_request_hook, setup_otel
from salesflow.pipeline.automation import register_handlers, unregister_handlers


configure_logging()
logger = logging.getLogger("salesflow.lifecycle")


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


@contextmanager
def _session_scope():
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
        try:
            next(generator)
        except StopIteration:
            pass


@asynccontextmanager
async def lifespan(app: FastAPI):
    event_bus.subscribe("system.started", _on_system_started)
    register_handlers(_session_scope)
    event_bus.publish("system.started", {"service": "api"})
    try:
        yield
    finally:
        unregister_handlers()
        event_bus.unsubscribe("system.started", _on_system_started)


settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.add_middleware(MutationRateLimitMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel("salesflow-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
