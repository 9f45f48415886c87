from contextlib import asynccontextmanager
import logging
from typing import Any

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from quotedesk import events
from quotedesk.api.routes import router as api_router
from quotedesk.core.config import get_settings
from quotedesk.logging import configure_logging
from quotedesk.middleware.correlation_id import CorrelationIdMiddleware
from quotedesk.middleware.request_logging import RequestLoggingMiddleware
from quotedesk.otel import configure_tracing, correlation_request_hook


configure_logging()
logger = logging.getLogger("quotedesk.lifecycle")


def _on_system_started(envelope: dict[str, Any]) -> None:
    logger.info("system_event", extra={"event_name": envelope["event_type"], "service": envelope.get("service")})


@asynccontextmanager
async def lifespan(app: FastAPI):
    events.subscribe("system.started", _on_system_started)
    events.publish({"event_type": "system.started", "service": "api"})
    yield


settings = get_settings()

app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

configure_tracing("quotedesk-api", enabled=settings.otel_enabled)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=correlation_request_hook)
