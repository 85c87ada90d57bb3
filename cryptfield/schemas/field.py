"""
Pydantic schemas for the host-owned field metadata consumed by field storage.

The host entity framework owns fields, instances, bundles and languages.
These models are the validated shape in which that metadata reaches the
storage service.
"""
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator


CARDINALITY_UNLIMITED = -1

# Language code of values that are not translatable
LANGUAGE_NONE = "und"

FieldItems = Dict[str, List[Dict[str, Any]]]


class LoadAge(str, Enum):
    """Which version of entity data to load."""
    CURRENT = "current"
    REVISION = "revision"


class WriteOp(str, Enum):
    """Kind of entity save being persisted."""
    INSERT = "insert"
    UPDATE = "update"


class FieldDescriptor(BaseModel):
    """A field definition as supplied by the host."""
    id: int = Field(ge=0, description="Stable field id, used for table naming")
    name: str = Field(min_length=1, max_length=32, description="Field machine name")
    columns: List[str] = Field(min_length=1, description="Logical columns of one value, in order")
    cardinality: int = Field(1, description="Maximum values per language, -1 for unlimited")
    translatable: bool = Field(False, description="Whether values vary per language")
    deleted: bool = Field(False, description="Whether the field has been deleted")

    @field_validator("columns")
    @classmethod
    def columns_are_unique(cls, columns: List[str]) -> List[str]:
        if len(set(columns)) != len(columns):
            raise ValueError("Field columns must be unique")
        if any(not column for column in columns):
            raise ValueError("Field columns must be non-empty names")
        return columns

    @field_validator("cardinality")
    @classmethod
    def cardinality_is_valid(cls, cardinality: int) -> int:
        if cardinality != CARDINALITY_UNLIMITED and cardinality < 1:
            raise ValueError("Cardinality must be positive or -1 (unlimited)")
        return cardinality

    @property
    def unlimited(self) -> bool:
        return self.cardinality == CARDINALITY_UNLIMITED


class InstanceDescriptor(BaseModel):
    """Attachment of a field to one bundle of an entity type."""
    field: FieldDescriptor
    entity_type: str = Field(max_length=128)
    bundle: str = Field(max_length=128)


class Entity(BaseModel):
    """
    An entity carrying field values.

    ``values`` maps field name -> language -> ordered list of items, each
    item being a mapping of column name to scalar. Loading attaches values
    to this structure in place.
    """
    id: int = Field(ge=0)
    revision_id: Optional[int] = Field(None, ge=0)
    bundle: str = Field(max_length=128)
    values: Dict[str, FieldItems] = Field(default_factory=dict)


class LoadOptions(BaseModel):
    """Options for loading field values."""
    include_deleted: bool = Field(False, description="Also return rows flagged deleted")
