"""
Pydantic schemas for service health reporting.
"""
from datetime import datetime

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Schema for health check response."""
    status: str = Field(..., description="Service status")
    database: str = Field(..., description="Database connection status")
    key_store: str = Field(..., description="Encryption key availability")
    timestamp: datetime = Field(..., description="Health check timestamp")
