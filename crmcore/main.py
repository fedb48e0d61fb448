from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from crmcore.api.routes import router as api_router
from crmcore.core.config import get_settings
from crmcore.core.database import init_db
from crmcore.logging import configure_logging
from crmcore.middleware.correlation_id import CorrelationIdMiddleware
from crmcore.middleware.request_logging import RequestLoggingMiddleware
from crmcore.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("crmcore.lifecycle")


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    logger.info("system.started")
    yield


settings = get_settings()
app = FastAPI(title=settings.app_name, version="0.1.0", debug=settings.app_debug, lifespan=lifespan)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.include_router(api_router)

if settings.otel_enabled:
    setup_otel("crmcore", True)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
