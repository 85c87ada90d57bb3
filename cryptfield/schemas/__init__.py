"""
Pydantic schemas for host metadata and API responses.
"""
from cryptfield.schemas.field import (
    CARDINALITY_UNLIMITED,
    LANGUAGE_NONE,
    Entity,
    FieldDescriptor,
    InstanceDescriptor,
    LoadAge,
    LoadOptions,
    WriteOp,
)
from cryptfield.schemas.health import HealthResponse

__all__ = [
    "CARDINALITY_UNLIMITED",
    "LANGUAGE_NONE",
    "Entity",
    "FieldDescriptor",
    "InstanceDescriptor",
    "LoadAge",
    "LoadOptions",
    "WriteOp",
    "HealthResponse",
]
