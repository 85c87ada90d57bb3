"""
Health check endpoint for monitoring.
"""
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from cryptfield.database import get_db
from cryptfield.schemas.health import HealthResponse
from cryptfield.services.field_storage import FieldStorageService
from cryptfield.utils.logger import get_logger

logger = get_logger("health")
router = APIRouter()


def get_field_storage(request: Request) -> Optional[FieldStorageService]:
    """
    Dependency to get the storage service from app state.

    Returns:
        FieldStorageService instance or None if not initialized
    """
    return getattr(request.app.state, "field_storage", None)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check database and encryption key availability",
    responses={
        200: {"description": "Service is healthy"},
        503: {"description": "Service is unhealthy"}
    }
)
async def health_check(
    db: AsyncSession = Depends(get_db),
    storage: Optional[FieldStorageService] = Depends(get_field_storage),
) -> HealthResponse:
    """
    Health check endpoint.

    Checks:
    - Database connection is working
    - The encryption key can be obtained

    Returns:
        HealthResponse (200 if healthy, 503 if not)
    """
    try:
        await db.execute(text("SELECT 1"))
        db_healthy = True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        db_healthy = False

    key_healthy = storage is not None and await storage.key_store.is_available()

    if db_healthy and key_healthy:
        logger.debug("Health check: all systems operational")
        return HealthResponse(
            status="healthy",
            database="connected",
            key_store="available",
            timestamp=datetime.now(timezone.utc)
        )

    logger.warning("Health check failed", database=db_healthy, key_store=key_healthy)
    raise HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={
            "status": "degraded",
            "database": "connected" if db_healthy else "disconnected",
            "key_store": "available" if key_healthy else "unavailable",
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
    )
