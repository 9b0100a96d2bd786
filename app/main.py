"""
Chat service entry point: lifecycle management, routers and error mapping.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.config import settings
from app.db.helpers import DatabaseError
from app.db.pool import db_pool
from app.features.messaging.api import admin_router as messaging_admin_router
from app.features.messaging.api import router as messaging_router
from app.features.messaging.container import build_messaging_services
from app.features.messaging.domain.errors import MessagingError
from app.infrastructure.observability.logging import get_logger, log_request, setup_logging
from app.routes import health
from app.services.infrastructure.redis_client import redis_client
from app.services.infrastructure.storage_client import StorageClient, StorageError

# Setup logging before creating the app
setup_logging(log_level="DEBUG" if settings.debug else "INFO")
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown with proper resource management."""

    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    startup_tasks = []
    storage = None

    try:
        # Initialize database pool first
        logger.info("Initializing database pool")
        await db_pool.initialize()
        startup_tasks.append("database_pool")

        logger.info("Initializing Redis connection")
        await redis_client.initialize()
        startup_tasks.append("redis")

        storage = StorageClient()
        startup_tasks.append("storage")

        app.state.messaging = build_messaging_services(redis_client, storage)
        startup_tasks.append("messaging")

        logger.info("All services initialized successfully", services=startup_tasks)

    except Exception as e:
        logger.error("Failed to initialize services", error=str(e), completed_tasks=startup_tasks)

        # Clean up any successfully initialized services in reverse order
        if storage is not None:
            try:
                await storage.close()
            except Exception as cleanup_error:
                logger.error("Error cleaning up storage client", error=str(cleanup_error))

        if "redis" in startup_tasks:
            try:
                await redis_client.close()
            except Exception as cleanup_error:
                logger.error("Error cleaning up Redis", error=str(cleanup_error))

        if "database_pool" in startup_tasks:
            try:
                await db_pool.close()
            except Exception as cleanup_error:
                logger.error("Error cleaning up database pool", error=str(cleanup_error))

        raise

    yield

    # Shutdown sequence (reverse order)
    logger.info("Application shutting down")
    app.state.messaging = None

    shutdown_errors = []

    try:
        await storage.close()
    except Exception as e:
        logger.error("Error closing storage client", error=str(e))
        shutdown_errors.append(f"Storage: {e}")

    try:
        logger.info("Closing Redis connection")
        await redis_client.close()
    except Exception as e:
        logger.error("Error closing Redis", error=str(e))
        shutdown_errors.append(f"Redis: {e}")

    # Close database pool last (may have active connections)
    try:
        logger.info("Closing database pool")
        await db_pool.close()
    except Exception as e:
        logger.error("Error closing database pool", error=str(e))
        shutdown_errors.append(f"Database: {e}")

    if shutdown_errors:
        logger.warning("Some services had shutdown errors", errors=shutdown_errors)
    else:
        logger.info("All services closed successfully")


def _error_body(code: str, message: str) -> dict:
    return {"error": {"code": code, "message": message}}


async def messaging_error_handler(request: Request, exc: MessagingError) -> JSONResponse:
    logger.info(
        "Messaging request rejected",
        path=request.url.path,
        code=exc.code,
        status_code=exc.status_code,
    )
    return JSONResponse(status_code=exc.status_code, content=_error_body(exc.code, exc.message))


async def database_error_handler(request: Request, exc: DatabaseError) -> JSONResponse:
    logger.error(
        "Database error while handling request",
        path=request.url.path,
        operation=exc.operation,
        error=str(exc),
    )
    return JSONResponse(status_code=500, content=_error_body("internal_error", "Internal error"))


async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
    logger.error(
        "Storage error while handling request",
        path=request.url.path,
        operation=exc.operation,
        storage_status=exc.status_code,
        error=str(exc),
    )
    return JSONResponse(
        status_code=502, content=_error_body("storage_unavailable", "Storage unavailable")
    )


def create_app() -> FastAPI:
    application = FastAPI(
        title="Splits Chat Service",
        description="Direct messaging between candidates, recruiters and companies",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.include_router(health.router)
    application.include_router(messaging_router)
    application.include_router(messaging_admin_router)

    application.add_exception_handler(MessagingError, messaging_error_handler)
    application.add_exception_handler(DatabaseError, database_error_handler)
    application.add_exception_handler(StorageError, storage_error_handler)

    @application.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log HTTP requests with timing."""
        start_time = time.time()
        response = await call_next(request)
        log_request(
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round((time.time() - start_time) * 1000, 2),
        )
        return response

    return application


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
