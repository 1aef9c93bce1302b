"""Main FastAPI application for the entitlement service

Creates the app, wires middleware and maps entitlement errors onto HTTP
responses. A storage failure is reported as 503 with a retryable body; it
is never presented as an allow or a deny.
"""

from typing import Dict, Any
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError
import uvicorn

from .subscription_endpoints import router as subscription_router, plans_router
from .license_endpoints import router as license_router
from .admin_endpoints import router as admin_router
from entitlements import __version__
from entitlements.common.exceptions import (
    ConfigurationError, CredentialFormatError, EntitlementError, LicenseOperationError,
    PersistenceError, RecordNotFoundError
)
from entitlements.config.settings import get_settings
from entitlements.services.factory import get_services
from entitlements.utils.logging import bind_request_id, get_logger, reset_request_id, setup_logging

logger = get_logger(__name__)

RETRY_MESSAGE = "Unable to verify entitlement right now. Please try again."


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager"""
    settings = get_settings()
    setup_logging(settings.logging)

    logger.info("Starting entitlement API")
    services = get_services()
    await services.startup()
    logger.info(f"Entitlement API started on {settings.api.host}:{settings.api.port}")

    yield

    logger.info("Shutting down entitlement API")
    await services.shutdown()
    logger.info("Entitlement API shutdown complete")


def create_app() -> FastAPI:
    """Create and configure FastAPI application"""
    settings = get_settings()

    app = FastAPI(
        title="Monadier Entitlement API",
        description="""
        Subscription plans, trade quotas and license validation.

        - Free, Starter, Pro, Elite and Desktop plans
        - Atomic daily and lifetime trade counters
        - License code activation and desktop machine binding
        - Forex EA license validation and renewal
        """,
        version=__version__,
        docs_url="/docs" if settings.api.debug else None,
        redoc_url="/redoc" if settings.api.debug else None,
        lifespan=lifespan
    )

    setup_middleware(app, settings)
    setup_exception_handlers(app)

    app.include_router(subscription_router)
    app.include_router(plans_router)
    app.include_router(license_router)
    app.include_router(admin_router)

    @app.get("/health")
    async def health() -> Dict[str, Any]:
        """Liveness plus storage reachability"""
        services = get_services()
        storage_ok = True
        pool_stats = None
        if services.store is not None:
            pool_manager = services.store.pool_manager
            storage_ok = await pool_manager.health_check(services.store.pool_id)
            pool_stats = await pool_manager.get_pool_stats(services.store.pool_id)

        return {
            "status": "healthy" if storage_ok else "degraded",
            "version": __version__,
            "catalogVersion": services.catalog.current_version,
            "storage": settings.entitlements.storage_backend.value,
            "pool": pool_stats,
            "timestamp": time.time()
        }

    return app


def setup_middleware(app: FastAPI, settings) -> None:
    """Setup middleware for the FastAPI app"""

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.api.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE"],
        allow_headers=["*"],
    )

    # Request ID and timing middleware
    @app.middleware("http")
    async def add_request_id_and_timing(request: Request, call_next):
        """Add request ID and measure request timing"""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        token = bind_request_id(request_id)
        start_time = time.time()

        try:
            response = await call_next(request)

            process_time = time.time() - start_time
            response.headers["X-Request-ID"] = request_id
            response.headers["X-Process-Time"] = str(process_time)
            logger.debug(
                f"{request.method} {request.url.path} -> {response.status_code} in {process_time:.4f}s"
            )
            return response
        finally:
            reset_request_id(token)


def _error_response(request: Request, status_code: int, exc: EntitlementError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={
            "error": exc.error_code,
            "detail": exc.message,
            "request_id": getattr(request.state, "request_id", None),
            "timestamp": time.time()
        }
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Setup custom exception handlers"""

    @app.exception_handler(PersistenceError)
    async def persistence_exception_handler(request: Request, exc: PersistenceError):
        """Storage unavailable: tell the caller to retry"""
        logger.error(f"Persistence failure for {request.url}: {exc.message}")

        return JSONResponse(
            status_code=503,
            headers={"Retry-After": "1"},
            content={
                "allowed": False,
                "retryable": True,
                "reason": RETRY_MESSAGE,
                "error": exc.error_code,
                "request_id": getattr(request.state, "request_id", None),
                "timestamp": time.time()
            }
        )

    @app.exception_handler(CredentialFormatError)
    async def credential_exception_handler(request: Request, exc: CredentialFormatError):
        return _error_response(request, 400, exc)

    @app.exception_handler(RecordNotFoundError)
    async def not_found_exception_handler(request: Request, exc: RecordNotFoundError):
        return _error_response(request, 404, exc)

    @app.exception_handler(LicenseOperationError)
    async def operation_exception_handler(request: Request, exc: LicenseOperationError):
        return _error_response(request, 409, exc)

    @app.exception_handler(ConfigurationError)
    async def configuration_exception_handler(request: Request, exc: ConfigurationError):
        return _error_response(request, 500, exc)

    @app.exception_handler(EntitlementError)
    async def entitlement_exception_handler(request: Request, exc: EntitlementError):
        return _error_response(request, 500, exc)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Handle request validation errors"""
        logger.warning(f"Validation error for {request.url}: {exc}")

        return JSONResponse(
            status_code=422,
            content={
                "error": "Validation Error",
                "detail": exc.errors(),
                "request_id": getattr(request.state, "request_id", None),
                "timestamp": time.time()
            }
        )

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        """Handle HTTP exceptions"""
        logger.warning(f"HTTP error {exc.status_code} for {request.url}: {exc.detail}")

        return JSONResponse(
            status_code=exc.status_code,
            headers=exc.headers,
            content={
                "error": "HTTP Error",
                "detail": exc.detail,
                "status_code": exc.status_code,
                "request_id": getattr(request.state, "request_id", None),
                "timestamp": time.time()
            }
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception):
        """Handle general exceptions"""
        logger.error(f"Unhandled error for {request.url}: {exc}", exc_info=True)

        return JSONResponse(
            status_code=500,
            content={
                "error": "Internal Server Error",
                "detail": "An unexpected error occurred",
                "request_id": getattr(request.state, "request_id", None),
                "timestamp": time.time()
            }
        )


def run_server():
    """Run the FastAPI server"""
    settings = get_settings()
    setup_logging(settings.logging)

    uvicorn.run(
        "entitlements.api.app:create_app",
        factory=True,
        host=settings.api.host,
        port=settings.api.port,
        reload=settings.api.debug,
        log_level="info" if not settings.api.debug else "debug",
        access_log=True
    )


if __name__ == "__main__":
    run_server()
