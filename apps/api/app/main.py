import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from app import events
from app.api.routes import router as api_router
from app.core.config import get_settings
from app.core.context import RequestContextMiddleware
from app.core.database import SessionLocal
from app.logging import configure_logging
from app.middleware.request_logging import RequestLoggingMiddleware
from app.otel import setup_otel
from app.platform.integrity.services import IntegrityServices, build_integrity_services


settings = get_settings()
configure_logging(settings.log_level)
logger = logging.getLogger("app.lifecycle")

ENTITY_UPDATED_EVENTS = "crm.*.updated"


def _log_entity_update(event: events.DomainEvent) -> None:
    entity_type = event.event_type.split(".")[1]
    payload = event.envelope.get("payload", {})
    logger.info(
        "domain_event",
        extra={
            "event_name": event.event_type,
            "entity_type": entity_type,
            "entity_id": payload.get(f"{entity_type}_id"),
            "organization_id": event.envelope.get("organization_id"),
            "row_version": payload.get("row_version"),
        },
    )


async def _purge_expired_cache_entries(services: IntegrityServices, interval_seconds: float) -> None:
    while True:
        await asyncio.sleep(interval_seconds)
        removed = services.cache.store.purge_expired()
        if removed:
            logger.info("cache_expired_purged", extra={"removed": removed})


@asynccontextmanager
async def lifespan(app: FastAPI):
    services: IntegrityServices = app.state.integrity_services
    interval = get_settings().cache_purge_interval_seconds
    events.event_bus.subscribe(ENTITY_UPDATED_EVENTS, _log_entity_update)
    purger = asyncio.create_task(_purge_expired_cache_entries(services, interval)) if interval > 0 else None
    logger.info("system_started", extra={"event_name": "system.started"})
    try:
        yield
    finally:
        if purger is not None:
            purger.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await purger
        events.event_bus.unsubscribe(ENTITY_UPDATED_EVENTS, _log_entity_update)
        services.cache.clear()


app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
# Last added runs first: the context must be bound before requests are logged.
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(RequestContextMiddleware)
app.include_router(api_router)
app.state.integrity_services = build_integrity_services(SessionLocal, settings)

setup_otel(settings)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app)
