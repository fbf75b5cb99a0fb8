from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor

from crm_api.api.routes import router as api_router
from crm_api.core.config import get_settings
from crm_api.core.context import RequestContextMiddleware
from crm_api.errors import register_exception_handlers
from crm_api.logging import configure_logging
from crm_api.middleware.correlation_id import CorrelationIdMiddleware
from crm_api.middleware.rate_limit import RateLimitMiddleware
from crm_api.middleware.request_logging import RequestLoggingMiddleware
from crm_api.middleware.security_headers import BodySizeLimitMiddleware, SecurityHeadersMiddleware
from crm_api.otel import configure_tracing, get_fastapi_server_request_hook


configure_logging()
logger = logging.getLogger("crm_api.lifecycle")


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = get_settings()
    logger.info(
        "system_started",
        extra={"operation": "startup", "outcome": settings.resolved_identity_backend()},
    )
    yield
    logger.info("system_stopped", extra={"operation": "shutdown"})


settings = get_settings()

app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(BodySizeLimitMiddleware)
app.add_middleware(RateLimitMiddleware)
app.add_middleware(RequestContextMiddleware)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
    expose_headers=["x-correlation-id", "x-request-id"],
)
register_exception_handlers(app)
app.include_router(api_router)

configure_tracing(settings)

if not getattr(app, "_is_instrumented_by_opentelemetry", False):
    FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
