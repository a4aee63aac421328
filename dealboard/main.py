from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from dealboard.api.routes import router as api_router
from dealboard.core.config import get_settings
from dealboard.core.context import RequestContextMiddleware
from dealboard.core.events import InternalEvent, event_bus
from dealboard.logging import configure_logging
from dealboard.middleware.correlation_id import CorrelationIdMiddleware
from dealboard.middleware.rate_limit import DealMutationRateLimitMiddleware
from dealboard.middleware.request_logging import RequestLoggingMiddleware
from dealboard.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("dealboard.lifecycle")
_subscriptions_registered = False

_deal_event_types = [
    "deals.deal.created",
    "deals.deal.updated",
    "deals.deal.stage_changed",
    "deals.deal.watch_changed",
    "deals.deal.removed",
]


def _on_system_started(event: InternalEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_deal_event(event: InternalEvent) -> None:
    payload = event.payload.get("payload") if isinstance(event.payload, dict) else None
    deal_id = payload.get("deal_id") if isinstance(payload, dict) else None
    logger.info("deal_event", extra={"event_name": event.name, "deal_id": deal_id})


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        event_bus.subscribe(_deal_event_types, _on_deal_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


app = FastAPI(title="Dealboard API", version="0.1.0", lifespan=lifespan)
app.add_middleware(DealMutationRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

settings = get_settings()
if settings.otel_enabled:
    setup_otel("dealboard-api", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
