"""
Booking Lifecycle Core - Main Application Entry Point

Booking orchestration and notification dispatch for the restaurant platform:
- Booking state machine with optimistic compare-and-swap transitions
- Signed domain-event ingestion with best-effort side effects
- Notification outbox drained by a bounded, parallel Web Push fan-out
- Structured logging with request correlation and Prometheus metrics
"""

from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from bookingcore.core.config import get_settings
from bookingcore.core.errors import CoreError, core_error_handler, unhandled_error_handler
from bookingcore.core.logging import setup_logging, get_logger
from bookingcore.core.metrics import metrics_endpoint
from bookingcore.api.deps import get_services
from bookingcore.api.router import api_router
from bookingcore.api.middleware import RequestLoggingMiddleware
from bookingcore.services.cache_service import PreferenceCache, create_redis
from bookingcore.services.channel_factory import build_services

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle: startup and shutdown hooks."""
    setup_logging()
    logger = get_logger(__name__)

    logger.info(
        "application_starting",
        app=settings.APP_NAME,
        version=settings.APP_VERSION,
        environment=settings.ENVIRONMENT,
    )

    # Initialize Redis connection for the preference cache
    redis_client = await create_redis(settings)
    if redis_client:
        logger.info("redis_ready")
    else:
        logger.warning("redis_unavailable", message="Running without preference cache")

    if not settings.WEBHOOK_SECRET:
        logger.warning("webhook_secret_missing", message="All webhook requests will be rejected")

    cache = PreferenceCache(redis_client, settings.PREFERENCE_CACHE_TTL)
    app.state.services = build_services(settings, cache=cache)

    yield

    # Cleanup
    await cache.close()
    logger.info("application_shutdown")


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="Booking lifecycle orchestration and notification dispatch",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
)

# Staff dashboards call the API from the browser
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Authorization", "Content-Type", "X-Request-ID"],
)

# Custom middleware
app.add_middleware(RequestLoggingMiddleware)

# Error mapping: every CoreError carries its own status
app.add_exception_handler(CoreError, core_error_handler)
app.add_exception_handler(Exception, unhandled_error_handler)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = sorted({".".join(str(p) for p in err["loc"] if p != "body") for err in exc.errors()})
    return JSONResponse(status_code=400, content={"error": f"Invalid request: {', '.join(fields)}"})


# Routes
app.include_router(api_router)


@app.get("/health", tags=["Health"])
async def health_check(request: Request):
    """Health check endpoint for Docker and load balancers."""
    services = get_services(request)
    return {
        "status": "healthy",
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "cache": await services.cache.stats(),
        "channels": list(services.channels),
    }


@app.get("/metrics", tags=["Health"])
async def metrics():
    return metrics_endpoint()

