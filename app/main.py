"""
FastAPI Application Entry Point

This module sets up the FastAPI application with all middleware,
routing, and configuration for the CampusReport backend.
"""

import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import structlog
import uvicorn
from fastapi import FastAPI, HTTPException, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from app.api.v1.api import api_router
from app.core.config import settings, setup_logging
from app.core.exceptions import CampusReportException
from app.core.metrics import REQUEST_COUNT, REQUEST_DURATION
from app.models.database import check_database_health, create_tables, engine, wait_for_database

logger = structlog.get_logger(__name__)

# =============================================================================
# Application Lifespan Management
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Waits for the database, creates the schema and disposes the engine on
    shutdown. If the database never comes up the startup fails.
    """
    setup_logging()
    structlog.contextvars.bind_contextvars(
        app=settings.APP_NAME,
        environment=settings.ENVIRONMENT,
        version=settings.APP_VERSION,
    )

    logger.info("Starting CampusReport application", version=settings.APP_VERSION, environment=settings.ENVIRONMENT)
    logger.info("Logging configured", log_level=settings.LOG_LEVEL, log_format=settings.LOG_FORMAT)

    try:
        await wait_for_database(max_attempts=settings.DATABASE_CONNECT_ATTEMPTS)
        await create_tables()
        logger.info("Database tables initialized")

        db_health = await check_database_health()
        if db_health["status"] == "healthy":
            logger.info("Database connection verified", **db_health)
        else:
            logger.error("Database health check failed", **db_health)

    except Exception as e:
        logger.error("Database initialization failed", error=str(e))
        raise

    if not settings.GEMINI_API_KEY:
        logger.warning("GEMINI_API_KEY is not set; AI endpoints will return errors")

    logger.info("Application startup completed", environment=settings.ENVIRONMENT, debug=settings.DEBUG)

    yield

    logger.info("Shutting down CampusReport application")
    await engine.dispose()
    logger.info("Database engine disposed")


# =============================================================================
# FastAPI Application Setup
# =============================================================================

app = FastAPI(
    title=settings.APP_NAME,
    version=settings.APP_VERSION,
    description=settings.APP_DESCRIPTION,
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json" if settings.SHOW_DOCS else None,
    docs_url="/docs" if settings.SHOW_DOCS else None,
    redoc_url="/redoc" if settings.SHOW_DOCS else None,
    lifespan=lifespan,
)

# =============================================================================
# Middleware Configuration
# =============================================================================

if settings.is_production:
    app.add_middleware(
        TrustedHostMiddleware,
        allowed_hosts=["*"]  # Configure with actual hosts in production
    )

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-Request-ID"],
)

app.add_middleware(GZipMiddleware, minimum_size=1000)


@app.middleware("http")
async def request_logging_middleware(request: Request, call_next):
    """
    Log all requests and add request ID for tracing.
    """
    request_id = str(uuid.uuid4())[:8]
    request.state.request_id = request_id

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(request_id=request_id)
    request_logger = logger.bind(
        method=request.method,
        path=request.url.path,
        client_ip=request.client.host if request.client else None,
    )

    start_time = time.time()
    request_logger.debug("Incoming request")

    try:
        response = await call_next(request)
    except Exception as exc:
        duration = time.time() - start_time
        request_logger.error("Request failed", error=str(exc), duration=f"{duration:.3f}s", exc_info=True)
        REQUEST_COUNT.labels(method=request.method, endpoint=_endpoint_label(request), status_code=500).inc()
        raise

    duration = time.time() - start_time
    endpoint = _endpoint_label(request)
    REQUEST_COUNT.labels(method=request.method, endpoint=endpoint, status_code=response.status_code).inc()
    REQUEST_DURATION.labels(method=request.method, endpoint=endpoint).observe(duration)

    response.headers["X-Request-ID"] = request_id
    response.headers["X-Response-Time"] = f"{duration:.3f}s"

    request_logger.info("Request completed", status_code=response.status_code, duration=f"{duration:.3f}s")
    return response


def _endpoint_label(request: Request) -> str:
    # Route template keeps metric cardinality bounded
    route = request.scope.get("route")
    return getattr(route, "path", None) or "unmatched"


# =============================================================================
# Exception Handlers
# =============================================================================

def _error_body(request: Request, message: str, error_code: str, details=None) -> dict:
    return {
        "success": False,
        "message": message,
        "error_code": error_code,
        "details": details or {},
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "request_id": getattr(request.state, "request_id", None),
    }


@app.exception_handler(CampusReportException)
async def campus_report_exception_handler(request: Request, exc: CampusReportException):
    """Handle custom application exceptions."""
    log = logger.bind(error_code=exc.error_code, error_type=type(exc).__name__)
    if exc.status_code >= 500:
        log.error("Application error", error=exc.message, details=exc.details)
    else:
        log.info("Request rejected", error=exc.message, status_code=exc.status_code)

    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(request, exc.message, exc.error_code, exc.details),
        headers=exc.headers,
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Request validation failures are client errors (400)."""
    errors = jsonable_encoder(exc.errors())
    logger.warning("Validation error", errors=errors)

    first = errors[0] if errors else {}
    field = ".".join(str(p) for p in first.get("loc", [])[1:]) or None
    message = f"Invalid {field}: {first.get('msg')}" if field else "Input validation failed"

    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=_error_body(request, message, "VALIDATION_ERROR", {"errors": errors}),
    )


@app.exception_handler(404)
async def not_found_handler(request: Request, exc: HTTPException):
    """Handle 404 errors with custom response."""
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content=_error_body(request, "The requested resource was not found", "NOT_FOUND"),
    )


@app.exception_handler(500)
async def internal_server_error_handler(request: Request, exc: Exception):
    """Handle internal server errors."""
    logger.error("Internal server error", error=str(exc), exc_info=True)

    # In production, don't expose internal error details
    error_message = (
        "An internal server error occurred"
        if settings.is_production
        else str(exc)
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_body(request, error_message, "INTERNAL_ERROR"),
    )


# =============================================================================
# Health Check and Monitoring Endpoints
# =============================================================================

@app.get("/health")
async def health_check():
    """
    Application health check endpoint.

    503 when the database is unreachable.
    """
    health_data = {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
        "services": {
            "database": await check_database_health(),
            "ai": {"status": "configured" if settings.GEMINI_API_KEY else "not_configured"},
        },
    }

    if health_data["services"]["database"]["status"] != "healthy":
        health_data["status"] = "unhealthy"

    status_code = 200 if health_data["status"] == "healthy" else 503
    return JSONResponse(content=health_data, status_code=status_code)


@app.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    if not settings.METRICS_ENABLED:
        return Response(status_code=status.HTTP_404_NOT_FOUND)
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.get("/version")
async def version_info():
    """Application version information."""
    return {
        "name": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "description": settings.APP_DESCRIPTION,
        "environment": settings.ENVIRONMENT,
    }


@app.get("/")
async def root():
    """API root endpoint with basic information."""
    return {
        "message": f"{settings.APP_NAME} API",
        "version": settings.APP_VERSION,
        "docs_url": "/docs" if settings.SHOW_DOCS else None,
        "health_url": "/health",
        "api_prefix": settings.API_V1_PREFIX,
        "environment": settings.ENVIRONMENT,
        "status": "running",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/favicon.ico")
async def favicon():
    """Favicon endpoint to avoid 404s."""
    return Response(status_code=204)


# =============================================================================
# API Routes and Uploaded Files
# =============================================================================

app.include_router(api_router, prefix=settings.API_V1_PREFIX)

settings.UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
app.mount(settings.UPLOAD_URL_PREFIX, StaticFiles(directory=settings.UPLOAD_DIR), name="uploads")


if __name__ == "__main__":
    # For production, use: uvicorn app.main:app --host 0.0.0.0 --port 8000
    uvicorn.run(
        "app.main:app",
        host="127.0.0.1",
        port=8000,
        reload=settings.AUTO_RELOAD,
        log_level=settings.LOG_LEVEL.lower(),
        access_log=not settings.is_production,
        server_header=False,
        date_header=False,
    )
