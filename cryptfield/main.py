"""
FastAPI application hosting the encrypted field storage service.
"""
from contextlib import asynccontextmanager
from fastapi import FastAPI

from cryptfield.config import settings
from cryptfield.database import check_db_connection, init_models
from cryptfield.middleware.logging import RequestLoggingMiddleware
from cryptfield.routes import health
from cryptfield.services.field_storage import STORAGE_TYPE, create_field_storage_service
from cryptfield.services.key_store import KeyUnavailableError
from cryptfield.utils.logger import get_logger

logger = get_logger("main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    The service refuses to start without a usable encryption key: there is
    no unencrypted mode to fall back to.
    """
    logger.info("Starting encrypted field storage service")

    if not await check_db_connection():
        raise RuntimeError("Cannot start without a database connection")

    await init_models()

    storage = create_field_storage_service()
    try:
        await storage.key_store.get_active_key()
    except KeyUnavailableError as e:
        raise RuntimeError(f"Cannot start application: {e}") from None

    app.state.field_storage = storage
    logger.info("Field storage initialized", languages=",".join(storage.languages))

    yield

    logger.info("Shutting down encrypted field storage service")
    app.state.field_storage = None


app = FastAPI(
    title="Encrypted Field Storage",
    description="Encrypted, versioned, multi-valued field storage backend",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)

app.include_router(health.router, tags=["Health"])


@app.get("/", include_in_schema=False)
async def root():
    """Service information."""
    return {
        "message": "Encrypted field storage service",
        "storage": STORAGE_TYPE,
        "health": "/health",
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "cryptfield.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.RELOAD,
        log_level=settings.LOG_LEVEL.lower()
    )
