from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from pipeline_crm.api.routes import router as api_router
from pipeline_crm.core.config import get_settings
from pipeline_crm.core.context import RequestContextMiddleware
from pipeline_crm.core.events import DomainEvent, event_bus
from pipeline_crm.crm.api import crm_service_error_handler
from pipeline_crm.crm.service import CRMServiceError
from pipeline_crm.logging import configure_logging
from pipeline_crm.middleware.correlation_id import CorrelationIdMiddleware
from pipeline_crm.middleware.rate_limit import CrmMutationRateLimitMiddleware
from pipeline_crm.middleware.request_logging import RequestLoggingMiddleware
from pipeline_crm.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("crm.lifecycle")
_subscriptions_registered = False

_audited_event_types = [
    "crm.pipeline.saved",
    "crm.deal.stage_changed",
    "crm.user.role_changed",
]


def _on_system_started(event: DomainEvent) -> None:
    logger.info("system_event", extra={"event_name": event.name})


def _on_crm_domain_event(event: DomainEvent) -> None:
    logger.info(
        "domain_event",
        extra={"event_name": event.name, "user_id": event.payload.get("actor_user_id")},
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        for event_name in _audited_event_types:
            event_bus.subscribe(event_name, _on_crm_domain_event)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "api"})
    yield


settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.add_middleware(CrmMutationRateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)
app.add_exception_handler(CRMServiceError, crm_service_error_handler)

if settings.otel_enabled:
    setup_otel("pipeline-crm", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
