"""
SQLAlchemy models and table layouts for encrypted field storage.
"""
from cryptfield.models.variable import ConfigVariable
from cryptfield.models.field_tables import FieldTableRegistry, TableScope, table_name

__all__ = [
    "ConfigVariable",
    "FieldTableRegistry",
    "TableScope",
    "table_name",
]
