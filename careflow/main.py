import logging
from contextlib import asynccontextmanager
from typing import Callable

import structlog
from careflow.core.logging_config import configure_logging

# Initialize production logging configuration
configure_logging()

_startup_logger = logging.getLogger(__name__)

from careflow.api.v1 import onboarding
from careflow.core.config import settings
from careflow.core.exceptions import (
    AuthenticationError,
    DomainException,
    ExternalServiceError,
    ProfileNotFoundError,
    ValidationError,
)
from careflow.infrastructure.redis_client import redis_client
from careflow.middleware.trace_middleware import TraceMiddleware
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request as StarletteRequest
from starlette.responses import Response as StarletteResponse

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle"""
    _startup_logger.info("starting_application version=%s", settings.api_version)

    # Drafts degrade to no-ops if Redis is unreachable
    await redis_client.connect()

    yield

    _startup_logger.info("shutting_down_application")
    await redis_client.disconnect()


_is_production = settings.environment == "production"

app = FastAPI(
    title=settings.api_title,
    version=settings.api_version,
    lifespan=lifespan,
    docs_url=None if _is_production else f"{settings.api_v1_prefix}/docs",
    redoc_url=None if _is_production else f"{settings.api_v1_prefix}/redoc",
    openapi_url=None if _is_production else f"{settings.api_v1_prefix}/openapi.json",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,  # Must be explicit list, no wildcards
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "PATCH", "DELETE"],
    allow_headers=["Content-Type", "Authorization", "X-Trace-Id"],
    expose_headers=["Content-Type", "X-Trace-Id"],
    max_age=600,
)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: StarletteRequest, call_next: Callable) -> StarletteResponse:
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        # Flow views carry entered profile data
        response.headers["Cache-Control"] = "no-store"
        if _is_production:
            response.headers["Strict-Transport-Security"] = "max-age=63072000; includeSubDomains; preload"
        return response


app.add_middleware(SecurityHeadersMiddleware)

# Add trace ID middleware for request tracking
app.add_middleware(TraceMiddleware)

app.include_router(onboarding.router, prefix=settings.api_v1_prefix)


# Exception handlers
@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions"""
    logger.warning(
        "http_exception",
        status_code=exc.status_code,
        detail=exc.detail,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "error": "HTTP_ERROR",
            "message": exc.detail,
            "status_code": exc.status_code,
        },
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle request body validation errors"""
    errors = [
        {"loc": list(error.get("loc", ())), "msg": error.get("msg"), "type": error.get("type")}
        for error in exc.errors()
    ]
    logger.warning("request_validation_error", errors=errors, path=request.url.path)
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={
            "error": "VALIDATION_ERROR",
            "message": "Request validation failed",
            "details": errors,
        },
    )


def _domain_status(exc: DomainException) -> int:
    if isinstance(exc, ValidationError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(exc, AuthenticationError):
        return status.HTTP_401_UNAUTHORIZED
    if isinstance(exc, ProfileNotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, ExternalServiceError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_400_BAD_REQUEST


# Domain exceptions normally become StepResults inside the controller; this
# covers the few raised at the HTTP edge.
@app.exception_handler(DomainException)
async def domain_exception_handler(request: Request, exc: DomainException):
    status_code = _domain_status(exc)
    message = exc.user_message if isinstance(exc, ExternalServiceError) else exc.message
    logger.warning(
        "domain_exception",
        error_code=exc.error_code,
        error=str(exc),
        status_code=status_code,
        path=request.url.path,
    )
    return JSONResponse(
        status_code=status_code,
        content={
            "error": exc.error_code,
            "message": message,
            "details": exc.details,
        },
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle general exceptions"""
    logger.error(
        "unhandled_exception", error=str(exc), path=request.url.path, exc_info=exc
    )
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={
            "error": "INTERNAL_SERVER_ERROR",
            "message": "An unexpected error occurred",
        },
    )


@app.get("/health")
async def health() -> JSONResponse:
    """Health check endpoint"""
    return JSONResponse({"status": "ok", "version": settings.api_version})


@app.get(f"{settings.api_v1_prefix}/health")
async def health_v1() -> JSONResponse:
    """API v1 health check including backing services"""
    redis_status = "connected" if redis_client.is_connected else "disconnected"
    logger.info("healthcheck", status="ok", redis=redis_status)
    return JSONResponse(
        {"status": "ok", "version": settings.api_version, "redis": redis_status}
    )
