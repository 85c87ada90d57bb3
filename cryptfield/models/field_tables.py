"""
Per-field storage tables.

Every field owns two tables sharing one record layout:

- the current table holds the live value of each entity,
- the revision table holds one copy per entity revision.

Both are generated from RECORD_COLUMNS so the two layouts cannot drift.
Value payloads are opaque: ``nonce`` and ``data`` hold base64 text of the
AES-GCM nonce and ciphertext of one serialized value.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Tuple

from sqlalchemy import Column, Index, Integer, MetaData, SmallInteger, String, Table, Text

from cryptfield.schemas.field import FieldDescriptor


TABLE_PREFIX = "cryptfield"


class TableScope(str, Enum):
    CURRENT = "data"
    REVISION = "revision"


@dataclass(frozen=True)
class RecordColumn:
    """Declarative description of one stored column."""
    name: str
    type_: object
    nullable: bool = True
    default: object = None
    in_primary_key: bool = False
    indexed: bool = False


RECORD_COLUMNS: Tuple[RecordColumn, ...] = (
    RecordColumn("entity_type", String(128), nullable=False, default="", in_primary_key=True, indexed=True),
    RecordColumn("bundle", String(128), nullable=False, default="", indexed=True),
    RecordColumn("deleted", SmallInteger, nullable=False, default=0, in_primary_key=True, indexed=True),
    RecordColumn("entity_id", Integer, nullable=False, in_primary_key=True, indexed=True),
    RecordColumn("revision_id", Integer, indexed=True),
    RecordColumn("language", String(32), nullable=False, default="", in_primary_key=True, indexed=True),
    RecordColumn("delta", Integer, nullable=False, in_primary_key=True),
    RecordColumn("nonce", Text),
    RecordColumn("data", Text),
)


def table_name(field: FieldDescriptor, scope: TableScope) -> str:
    """
    Resolve the table name for a field.

    Deleted fields live in their own namespace, so a new field can reuse a
    name while the old one waits to be purged.
    """
    if field.deleted:
        return f"{TABLE_PREFIX}_deleted_{scope.value}_{field.id}"
    return f"{TABLE_PREFIX}_{scope.value}_{field.id}"


def build_table(name: str, scope: TableScope, metadata: MetaData) -> Table:
    """Build a record table; revision tables key on (and require) revision_id."""
    revisioned = scope is TableScope.REVISION
    columns = []
    for spec in RECORD_COLUMNS:
        is_revision_id = spec.name == "revision_id"
        columns.append(
            Column(
                spec.name,
                spec.type_,
                primary_key=spec.in_primary_key or (revisioned and is_revision_id),
                nullable=spec.nullable and not (revisioned and is_revision_id),
                default=spec.default,
                autoincrement=False,
            )
        )
    indexes = [
        Index(f"ix_{name}_{spec.name}", spec.name)
        for spec in RECORD_COLUMNS
        if spec.indexed
    ]
    return Table(name, metadata, *columns, *indexes)


@dataclass(frozen=True)
class FieldTables:
    current: Table
    revision: Table

    def __iter__(self):
        return iter((self.current, self.revision))


class FieldTableRegistry:
    """Caches Table objects per table name."""

    def __init__(self):
        self._metadata = MetaData()
        self._tables: Dict[str, Table] = {}

    def table(self, field: FieldDescriptor, scope: TableScope) -> Table:
        name = table_name(field, scope)
        if name not in self._tables:
            self._tables[name] = build_table(name, scope, self._metadata)
        return self._tables[name]

    def tables(self, field: FieldDescriptor) -> FieldTables:
        return FieldTables(
            current=self.table(field, TableScope.CURRENT),
            revision=self.table(field, TableScope.REVISION),
        )
