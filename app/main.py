"""
Application entry point with resource lifecycle management.

create_app() builds the FastAPI app; the lifespan opens the database pool and
Redis only when the configured backends need them, then wires the job
lifecycle services onto app.state. Tests pass a prebuilt service graph.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.config import settings
from app.db.pool import db_pool
from app.features.job_lifecycle.api import routers as job_lifecycle_routers
from app.features.job_lifecycle.container import MarketplaceServices, build_services
from app.features.job_lifecycle.domain.errors import ErrorKind, StorageUnavailableError
from app.features.job_lifecycle.services.payment_gateway import PaymentGatewayError
from app.infrastructure.observability.logging import get_logger, log_request, setup_logging
from app.infrastructure.redis_client import fast_redis
from app.middleware.request_context import RequestContextMiddleware
from app.routes import health

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown with proper resource management."""

    setup_logging(log_level=settings.LOG_LEVEL)
    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    startup_tasks = []

    try:
        if settings.STORE_BACKEND == "postgres":
            logger.info("Initializing database pool")
            await db_pool.initialize()
            startup_tasks.append("database_pool")

        if settings.PRESENCE_BACKEND == "redis":
            logger.info("Initializing Redis connection")
            await fast_redis.initialize()
            startup_tasks.append("redis")

        if getattr(app.state, "services", None) is None:
            app.state.services = build_services(settings)

        logger.info("All services initialized successfully", services=startup_tasks)

    except Exception as e:
        logger.error("Failed to initialize services", error=str(e), completed_tasks=startup_tasks)

        # Clean up any successfully initialized services in reverse order
        if "redis" in startup_tasks:
            await fast_redis.close()

        if "database_pool" in startup_tasks:
            try:
                await db_pool.close()
            except Exception as cleanup_error:
                logger.error("Error cleaning up database pool", error=str(cleanup_error))

        raise

    yield

    # Shutdown sequence (reverse order)
    logger.info("Application shutting down")

    if "redis" in startup_tasks:
        logger.info("Closing Redis connection")
        await fast_redis.close()

    if "database_pool" in startup_tasks:
        try:
            logger.info("Closing database pool")
            await db_pool.close()
        except Exception as e:
            logger.error("Error closing database pool", error=str(e))

    logger.info("Shutdown complete")


async def storage_unavailable_handler(request: Request, exc: StorageUnavailableError) -> JSONResponse:
    logger.error(
        "Storage unavailable",
        path=request.url.path,
        operation=exc.operation,
        error=str(exc),
    )
    return JSONResponse(
        status_code=503,
        content={
            "detail": {
                "code": ErrorKind.STORAGE_UNAVAILABLE.value,
                "message": "The service is temporarily unavailable",
            }
        },
    )


async def payment_gateway_error_handler(request: Request, exc: PaymentGatewayError) -> JSONResponse:
    logger.error(
        "Payment gateway error",
        path=request.url.path,
        gateway_status=exc.status_code,
        error=str(exc),
    )
    return JSONResponse(
        status_code=502,
        content={"detail": {"code": "PAYMENT_GATEWAY_ERROR", "message": str(exc)}},
    )


def create_app(services: MarketplaceServices | None = None) -> FastAPI:
    app = FastAPI(
        title="Mechanic Marketplace API",
        description="Job lifecycle backend: quotes, live job tracking, notifications and ratings",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )
    app.add_middleware(RequestContextMiddleware)

    app.add_exception_handler(StorageUnavailableError, storage_unavailable_handler)
    app.add_exception_handler(PaymentGatewayError, payment_gateway_error_handler)

    app.include_router(health.router)
    for router in job_lifecycle_routers:
        app.include_router(router)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log HTTP requests with timing."""
        start_time = time.time()
        response = await call_next(request)
        process_time = (time.time() - start_time) * 1000

        log_request(
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(process_time, 2),
        )
        return response

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
