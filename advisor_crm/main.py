from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from advisor_crm.api.routes import router as api_router
from advisor_crm.core.config import get_settings
from advisor_crm.core.events import InternalEvent, event_bus
from advisor_crm.logging import configure_logging
from advisor_crm.middleware.correlation_id import CorrelationIdMiddleware
from advisor_crm.middleware.request_logging import RequestLoggingMiddleware
from advisor_crm.otel import get_fastapi_server_request_hook, setup_otel


configure_logging(service="advisor-crm-api")
logger = logging.getLogger("advisor_crm.lifecycle")
_subscriptions_registered = False

PIPELINE_OPPORTUNITY_EVENTS = "pipeline.opportunity.*"


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_pipeline_event(event: InternalEvent) -> None:
    if not isinstance(event.payload, dict):
        return
    payload = event.payload.get("payload") or {}
    logger.info(
        "pipeline_event",
        extra={
            "event_name": event.name,
            "opportunity_id": payload.get("opportunity_id"),
            "funnel_id": payload.get("funnel_id"),
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        event_bus.subscribe(PIPELINE_OPPORTUNITY_EVENTS, _on_pipeline_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="Advisor CRM API", version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("advisor-crm-api", True, environment=settings.app_env)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
