"""
Clearance - Withdrawal Approval Workflow Engine

FastAPI application entry point with security hardening.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware

from clearance import __version__
from clearance.config import settings
from clearance.exceptions import (
    AuthorityError,
    ConfigurationError,
    ConflictError,
    ValidationError,
    WorkflowNotFoundError,
)
from clearance.models.workflow import utcnow
from clearance.policy.loader import load_policy
from clearance.workflow.service import ApprovalService

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


# Rate limiter
limiter = Limiter(key_func=get_remote_address, default_limits=[
    f"{settings.rate_limit_requests}/{settings.rate_limit_window_seconds}seconds"
])


class RequestSizeLimitMiddleware(BaseHTTPMiddleware):
    """Limit request body size to prevent DoS attacks."""

    MAX_BODY_SIZE = 1 * 1024 * 1024  # 1MB

    # Per-endpoint limits (path prefix -> max bytes)
    ENDPOINT_LIMITS = {
        "/api/v1/workflows/bulk": 256 * 1024,
    }

    async def dispatch(self, request: Request, call_next) -> Response:
        max_size = self.MAX_BODY_SIZE
        for prefix, limit in self.ENDPOINT_LIMITS.items():
            if request.url.path.startswith(prefix):
                max_size = limit
                break

        content_length = request.headers.get("content-length")
        if content_length:
            try:
                if int(content_length) > max_size:
                    return JSONResponse(
                        status_code=413,
                        content={
                            "error": "Request entity too large",
                            "message": f"Request body exceeds maximum size of {max_size // 1024}KB",
                            "max_size_bytes": max_size,
                        },
                    )
            except ValueError:
                pass

        return await call_next(request)


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Add security headers to all responses."""

    async def dispatch(self, request: Request, call_next) -> Response:
        response = await call_next(request)

        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        response.headers["Cache-Control"] = "no-store"

        # HSTS (only in production with HTTPS)
        if settings.is_production:
            response.headers["Strict-Transport-Security"] = (
                "max-age=31536000; includeSubDomains; preload"
            )

        if "server" in response.headers:
            del response.headers["server"]

        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log requests for auditing."""

    async def dispatch(self, request: Request, call_next) -> Response:
        start_time = time.time()
        request_id = request.headers.get("X-Request-ID", f"req_{int(time.time() * 1000)}")

        logger.info(
            f"Request: {request.method} {request.url.path} "
            f"[{request_id}] from {request.client.host if request.client else 'unknown'}"
        )

        response = await call_next(request)

        process_time = time.time() - start_time
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Process-Time"] = str(process_time)

        logger.info(
            f"Response: {request.method} {request.url.path} "
            f"[{request_id}] status={response.status_code} time={process_time:.3f}s"
        )

        return response


async def sla_sweep(service: ApprovalService, interval: float) -> None:
    """Fire due escalation triggers periodically."""
    while True:
        await asyncio.sleep(interval)
        try:
            await service.check_sla()
        except ConfigurationError as e:
            logger.error(f"SLA sweep failed: {e}")
        except Exception as e:
            logger.exception(f"Unexpected SLA sweep error: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown events."""
    logger.info("Starting Clearance...")

    policy = load_policy(settings.policy_path)
    app.state.policy = policy
    app.state.service = ApprovalService(policy=policy)
    logger.info(f"Active approval policy {policy.version} (sha256 {policy.checksum})")

    sweeper = None
    if settings.sla_sweep_interval_seconds > 0:
        sweeper = asyncio.create_task(
            sla_sweep(app.state.service, settings.sla_sweep_interval_seconds)
        )

    logger.info("Clearance started successfully")

    yield

    logger.info("Shutting down Clearance...")
    if sweeper is not None:
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass
    logger.info("Clearance shutdown complete")


app = FastAPI(
    title="Clearance",
    description="Withdrawal approval workflow engine",
    version=__version__,
    lifespan=lifespan,
    # Disable docs in production
    docs_url="/docs" if not settings.is_production else None,
    redoc_url="/redoc" if not settings.is_production else None,
    openapi_url="/openapi.json" if not settings.is_production else None,
)

# Rate limiting
app.state.limiter = limiter
app.add_middleware(SlowAPIMiddleware)

app.add_middleware(RequestSizeLimitMiddleware)

# Security headers middleware (must be added before CORS)
app.add_middleware(SecurityHeadersMiddleware)

app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=settings.cors_allow_credentials,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=[
        "Authorization",
        "Content-Type",
        "X-Request-ID",
    ],
    expose_headers=["X-Request-ID", "X-Process-Time"],
    max_age=600,
)


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Handle rate limit exceeded errors."""
    return JSONResponse(
        status_code=429,
        content={
            "error": "Rate limit exceeded",
            "message": "Too many requests. Please try again later.",
            "retry_after": exc.detail,
        },
        headers={"Retry-After": str(exc.detail)},
    )


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=422, content=exc.to_dict())


@app.exception_handler(AuthorityError)
async def authority_error_handler(request: Request, exc: AuthorityError) -> JSONResponse:
    return JSONResponse(status_code=403, content=exc.to_dict())


@app.exception_handler(ConflictError)
async def conflict_error_handler(request: Request, exc: ConflictError) -> JSONResponse:
    """Stale view; the client should re-fetch and retry."""
    return JSONResponse(
        status_code=409,
        content={
            "error": "conflict",
            "message": str(exc),
            "expected_version": exc.expected_version,
            "actual_version": exc.actual_version,
        },
    )


@app.exception_handler(WorkflowNotFoundError)
async def not_found_handler(request: Request, exc: WorkflowNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": "not_found", "message": str(exc)})


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
    logger.error(f"Configuration error: {exc}")
    return JSONResponse(
        status_code=500,
        content={"error": "configuration_error", "message": "Approval policy is misconfigured"},
    )


@app.get("/health")
async def health_check(request: Request) -> dict[str, Any]:
    """
    Health check endpoint.

    Reports the active policy and realtime subscriber count.
    """
    service: ApprovalService = request.app.state.service
    return {
        "status": "healthy",
        "timestamp": utcnow().isoformat(),
        "version": __version__,
        "policy": {
            "version": service.policy.version,
            "checksum": service.policy.checksum,
        },
        "workflows": len(service.store),
        "realtime_subscribers": service.bus.subscriber_count,
    }


@app.get("/")
async def root() -> dict[str, str]:
    """Root endpoint with API information."""
    return {
        "name": "Clearance",
        "description": "Withdrawal approval workflow engine",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
    }


# Global exception handler
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle uncaught exceptions securely."""
    logger.exception(f"Unhandled exception: {exc}")

    if settings.is_production:
        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal server error",
                "message": "An unexpected error occurred. Please contact support.",
            },
        )

    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "message": str(exc),
            "type": type(exc).__name__,
        },
    )


# Import and include routers
from clearance.api.routes import realtime_router, workflows_router

app.include_router(workflows_router, prefix="/api/v1/workflows", tags=["workflows"])
app.include_router(realtime_router, prefix="/api/v1", tags=["realtime"])
