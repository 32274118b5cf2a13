import logging
from contextlib import asynccontextmanager

import sentry_sdk
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from marketpulse.api.v1.health import router as health_router
from marketpulse.api.v1.router import api_router
from marketpulse.config import settings
from marketpulse.core.exceptions import MarketPulseError
from marketpulse.core.logging_config import configure_logging
from marketpulse.core.redis import close_redis
from marketpulse.middleware.request_id import RequestIDMiddleware
from marketpulse.schemas.job import ErrorResponse

# Configure structured logging (must happen before any logger is created)
configure_logging(log_format=settings.LOG_FORMAT, log_level=settings.LOG_LEVEL)

# Initialize Sentry error tracking
if settings.SENTRY_DSN:
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
        environment=settings.SENTRY_ENVIRONMENT,
        release=f"marketpulse-scraper@{settings.APP_VERSION}",
    )

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION}")

    yield

    logger.info("Shutting down...")
    if settings.PROXY_POOL_BACKEND == "redis":
        await close_redis()


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description="MarketPulse scraper - submit scrape jobs to the durable work queue.",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Request ID middleware (must be added before other middleware)
app.add_middleware(RequestIDMiddleware)


@app.exception_handler(MarketPulseError)
async def marketpulse_error_handler(request: Request, exc: MarketPulseError):
    if exc.status_code >= 500:
        logger.error(f"{exc.error_code} on {request.url.path}: {exc.message}")
    body = ErrorResponse(error=exc.message or exc.error_code, error_code=exc.error_code)
    return JSONResponse(status_code=exc.status_code, content=body.model_dump())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    detail = errors[0]["msg"] if errors else "Invalid request"
    body = ErrorResponse(error=f"Invalid request: {detail}", error_code="VALIDATION_ERROR")
    return JSONResponse(status_code=400, content=body.model_dump())


# Include API routes
app.include_router(api_router)

# Health & metrics routes (no /v1 prefix)
app.include_router(health_router)


@app.get("/")
async def root():
    return {
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "docs": "/docs",
        "status": "running",
    }
