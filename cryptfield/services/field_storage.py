"""
Encrypted field storage backend.

Maps the host's field storage operations onto a pair of tables per field
(current values and revisions, see cryptfield.models.field_tables). Every
stored value is sealed by RecordCodec under the master key from KeyStore.

Consistency:
    Each operation runs in one database transaction, so replacing the rows
    of a field (delete, then insert) is atomic on transactional databases.
    There is no application-level locking: two concurrent writers of the
    same entity can still race, and the last commit wins (or the loser
    fails on the primary key).

Lifecycle of a field's tables:
    ACTIVE --delete_field--> SOFT_DELETED --purge_field--> GONE
    ACTIVE --update_field (no data)--> ACTIVE (tables rebuilt)
"""
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from sqlalchemy import Table, delete, func, insert, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cryptfield.models.field_tables import FieldTableRegistry, TableScope
from cryptfield.schemas.field import (
    LANGUAGE_NONE,
    Entity,
    FieldDescriptor,
    InstanceDescriptor,
    LoadAge,
    LoadOptions,
    WriteOp,
)
from cryptfield.services.key_store import KeyStore
from cryptfield.services.record_codec import RecordCodec, RecordCorrupt
from cryptfield.utils.logger import get_logger

logger = get_logger("field_storage")

STORAGE_TYPE = "cryptfield_storage"


class UnsupportedOperationError(Exception):
    """Raised for operations that cannot run against encrypted values."""
    pass


class FieldUpdateForbiddenError(Exception):
    """Raised when a field update would orphan existing data."""
    pass


class FieldStorageService:
    """
    Storage backend persisting encrypted field values.

    Example:
        >>> storage = FieldStorageService(AsyncSessionLocal, key_store, languages=["en"])
        >>> await storage.create_field(field)
        >>> await storage.write("node", entity, WriteOp.INSERT, [field])
        >>> await storage.load("node", {entity.id: entity}, LoadAge.CURRENT, [field])
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        key_store: KeyStore,
        codec: Optional[RecordCodec] = None,
        languages: Optional[Sequence[str]] = None,
    ):
        """
        Initialize the storage service.

        Args:
            session_factory: Factory for database sessions
            key_store: Source of the master key
            codec: Value codec (default RecordCodec())
            languages: Languages enabled on the site
        """
        self._sessions = session_factory
        self.key_store = key_store
        self.codec = codec or RecordCodec()
        self.languages = list(languages or [])
        self._tables = FieldTableRegistry()

    # =========================================================================
    # Declarations
    # =========================================================================

    def storage_info(self) -> Dict[str, Dict[str, str]]:
        """Declare this storage backend to the host."""
        return {
            STORAGE_TYPE: {
                "label": "Encrypted SQL storage",
                "description": "Stores field values encrypted at rest in the local SQL database.",
            }
        }

    def storage_details(self, field: FieldDescriptor) -> Dict[str, str]:
        """Table names used by a field."""
        tables = self._tables.tables(field)
        return {
            TableScope.CURRENT.value: tables.current.name,
            TableScope.REVISION.value: tables.revision.name,
        }

    def available_languages(self, field: FieldDescriptor) -> List[str]:
        """Languages a field can hold values in."""
        if not field.translatable:
            return [LANGUAGE_NONE]
        languages = [lang for lang in self.languages if lang != LANGUAGE_NONE]
        return languages + [LANGUAGE_NONE]

    def query(self, *args: Any, **kwargs: Any):
        """
        Structured queries cannot run against encrypted values.

        Raises:
            UnsupportedOperationError: Always
        """
        raise UnsupportedOperationError(
            "Encrypted field storage does not support queries on field values"
        )

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        async with self._sessions() as db:
            async with db.begin():
                yield db

    # =========================================================================
    # Field lifecycle
    # =========================================================================

    async def create_field(self, field: FieldDescriptor) -> None:
        """Create the current and revision tables of a new field."""
        if field.deleted:
            raise ValueError("Cannot create tables for a deleted field")

        async with self._transaction() as db:
            conn = await db.connection()
            for table in self._tables.tables(field):
                await conn.run_sync(table.create)

        logger.info("Created field tables", field=field.name, field_id=field.id)

    async def update_field(
        self,
        field: FieldDescriptor,
        prior_field: FieldDescriptor,
        has_data: bool,
    ) -> None:
        """
        Apply a field definition change.

        Without data the tables are rebuilt. With data, the stored payloads
        were sealed against the prior column set, so a column change is
        refused; other changes (cardinality, translatability) need no
        storage work.

        Raises:
            FieldUpdateForbiddenError: If columns change while data exists
        """
        if field.id != prior_field.id or field.deleted or prior_field.deleted:
            raise ValueError("update_field expects two live versions of the same field")

        if has_data:
            if list(field.columns) != list(prior_field.columns):
                raise FieldUpdateForbiddenError(
                    f"Cannot change the columns of field '{field.name}' while it has data"
                )
            return

        async with self._transaction() as db:
            conn = await db.connection()
            for table in self._tables.tables(prior_field):
                await conn.run_sync(table.drop, checkfirst=True)
            for table in self._tables.tables(field):
                await conn.run_sync(table.create)

        logger.info("Rebuilt field tables", field=field.name, field_id=field.id)

    async def delete_field(self, field: FieldDescriptor) -> FieldDescriptor:
        """
        Soft-delete a field.

        Flags all current rows deleted and moves both tables into the
        deleted namespace.

        Returns:
            The field descriptor marked deleted, addressing the moved tables
        """
        if field.deleted:
            raise ValueError(f"Field '{field.name}' is already deleted")

        deleted_field = field.model_copy(update={"deleted": True})
        live = self._tables.tables(field)
        moved = self._tables.tables(deleted_field)

        async with self._transaction() as db:
            await db.execute(update(live.current).values(deleted=1))
            await self._rename_table(db, live.current, moved.current.name)
            await self._rename_table(db, live.revision, moved.revision.name)

        logger.info("Soft-deleted field", field=field.name, field_id=field.id)
        return deleted_field

    async def purge_field(self, field: FieldDescriptor) -> None:
        """Drop the tables of a soft-deleted field."""
        if not field.deleted:
            raise ValueError(f"Field '{field.name}' must be deleted before it is purged")

        async with self._transaction() as db:
            conn = await db.connection()
            for table in self._tables.tables(field):
                await conn.run_sync(table.drop, checkfirst=True)

        logger.info("Purged field tables", field=field.name, field_id=field.id)

    async def has_data(self, field: FieldDescriptor) -> bool:
        """Whether any row (deleted or not) exists for a field."""
        table = self._tables.table(field, TableScope.CURRENT)
        async with self._sessions() as db:
            result = await db.execute(select(func.count()).select_from(table))
            return result.scalar_one() > 0

    async def _rename_table(self, db: AsyncSession, table: Table, new_name: str) -> None:
        conn = await db.connection()
        quote = conn.dialect.identifier_preparer.quote
        await conn.execute(
            text(f"ALTER TABLE {quote(table.name)} RENAME TO {quote(new_name)}")
        )

    # =========================================================================
    # Entity data
    # =========================================================================

    async def load(
        self,
        entity_type: str,
        entities: Mapping[int, Entity],
        age: LoadAge,
        fields: Sequence[FieldDescriptor],
        options: Optional[LoadOptions] = None,
    ) -> None:
        """
        Attach decrypted field values to entities in place.

        Current values are selected by entity id; revisions by each entity's
        revision_id. A value that fails to decode is replaced by an all-null
        placeholder in its slot and the load carries on.

        Args:
            entity_type: Entity type of all entities
            entities: Entities keyed by entity id
            age: Load current values or the entities' revisions
            fields: Fields to load
            options: Load options
        """
        options = options or LoadOptions()
        load_current = age is LoadAge.CURRENT

        if load_current:
            ids = list(entities)
        else:
            ids = [e.revision_id for e in entities.values() if e.revision_id is not None]

        for entity in entities.values():
            for field in fields:
                entity.values[field.name] = {}

        if not ids or not fields:
            return

        async with self.key_store.active_key() as key:
            async with self._sessions() as db:
                for field in fields:
                    await self._load_field(db, key, entity_type, entities, ids, field, load_current, options)

    async def _load_field(
        self,
        db: AsyncSession,
        key: bytearray,
        entity_type: str,
        entities: Mapping[int, Entity],
        ids: List[int],
        field: FieldDescriptor,
        load_current: bool,
        options: LoadOptions,
    ) -> None:
        tables = self._tables.tables(field)
        table = tables.current if load_current else tables.revision
        id_column = table.c.entity_id if load_current else table.c.revision_id

        stmt = (
            select(table.c.entity_id, table.c.language, table.c.nonce, table.c.data)
            .where(
                table.c.entity_type == entity_type,
                id_column.in_(ids),
                table.c.language.in_(self.available_languages(field)),
            )
            .order_by(table.c.delta)
        )
        if not options.include_deleted:
            stmt = stmt.where(table.c.deleted == 0)

        result = await db.execute(stmt)

        # Values already emitted per (entity_id, language); this is the
        # delta of the next value, whatever gaps the stored deltas have.
        emitted: Dict[Tuple[int, str], int] = defaultdict(int)

        for row in result:
            entity = entities.get(row.entity_id)
            if entity is None:
                continue

            slot = (row.entity_id, row.language)
            delta = emitted[slot]
            if not field.unlimited and delta >= field.cardinality:
                continue

            value = self.codec.unpack(row.nonce, row.data, key, field.columns)
            if isinstance(value, RecordCorrupt):
                logger.warning(
                    "Corrupt encrypted field value replaced with placeholder",
                    field=field.name,
                    entity_type=entity_type,
                    entity_id=row.entity_id,
                    language=row.language,
                    delta=delta,
                    reason=value.reason,
                )
                value = self.codec.placeholder(field.columns)

            entity.values[field.name].setdefault(row.language, []).append(value)
            emitted[slot] = delta + 1

    async def write(
        self,
        entity_type: str,
        entity: Entity,
        op: WriteOp,
        fields: Sequence[FieldDescriptor],
    ) -> None:
        """
        Persist an entity's field values.

        Fields absent from ``entity.values`` are left untouched. On update,
        the rows of every language present in the incoming value are
        replaced; an empty incoming value clears all languages. Values past
        the field's cardinality are not stored. Revision rows are written
        only when the entity has a revision id.
        """
        async with self.key_store.active_key() as key:
            async with self._transaction() as db:
                for field in fields:
                    if field.name not in entity.values:
                        continue
                    await self._write_field(db, key, entity_type, entity, op, field)

    async def _write_field(
        self,
        db: AsyncSession,
        key: bytearray,
        entity_type: str,
        entity: Entity,
        op: WriteOp,
        field: FieldDescriptor,
    ) -> None:
        tables = self._tables.tables(field)
        incoming = entity.values[field.name]
        all_languages = self.available_languages(field)
        field_languages = [lang for lang in all_languages if lang in incoming]

        if op is WriteOp.UPDATE:
            languages = field_languages if incoming else all_languages
            if languages:
                await db.execute(
                    delete(tables.current).where(
                        tables.current.c.entity_type == entity_type,
                        tables.current.c.entity_id == entity.id,
                        tables.current.c.language.in_(languages),
                    )
                )
                if entity.revision_id is not None:
                    await db.execute(
                        delete(tables.revision).where(
                            tables.revision.c.entity_type == entity_type,
                            tables.revision.c.entity_id == entity.id,
                            tables.revision.c.revision_id == entity.revision_id,
                            tables.revision.c.language.in_(languages),
                        )
                    )

        current_rows = []
        revision_rows = []
        for language in field_languages:
            for delta, item in enumerate(incoming[language]):
                if not field.unlimited and delta >= field.cardinality:
                    break
                current_rows.append(self._record(key, field, entity_type, entity, language, delta, item))
                if entity.revision_id is not None:
                    # Separate record, separate nonce
                    revision_rows.append(self._record(key, field, entity_type, entity, language, delta, item))

        if current_rows:
            await db.execute(insert(tables.current), current_rows)
        if revision_rows:
            await db.execute(insert(tables.revision), revision_rows)

        logger.debug(
            "Wrote field values",
            field=field.name,
            entity_type=entity_type,
            entity_id=entity.id,
            values=len(current_rows),
        )

    def _record(
        self,
        key: bytearray,
        field: FieldDescriptor,
        entity_type: str,
        entity: Entity,
        language: str,
        delta: int,
        item: Mapping[str, Any],
    ) -> Dict[str, Union[str, int, None]]:
        nonce, data = self.codec.pack(item, key, field.columns)
        return {
            "entity_type": entity_type,
            "bundle": entity.bundle,
            "deleted": 0,
            "entity_id": entity.id,
            "revision_id": entity.revision_id,
            "language": language,
            "delta": delta,
            "nonce": nonce,
            "data": data,
        }

    async def delete(
        self,
        entity_type: str,
        entity: Entity,
        fields: Sequence[FieldDescriptor],
    ) -> None:
        """Remove all current and revision values of a deleted entity."""
        async with self._transaction() as db:
            for field in fields:
                await self._purge_entity_rows(db, entity_type, entity, field)

        logger.debug("Deleted entity field values", entity_type=entity_type, entity_id=entity.id)

    async def purge(self, entity_type: str, entity: Entity, field: FieldDescriptor) -> None:
        """Physically remove one entity's values of a (usually deleted) field."""
        async with self._transaction() as db:
            await self._purge_entity_rows(db, entity_type, entity, field)

        logger.debug(
            "Purged entity field values",
            field=field.name,
            entity_type=entity_type,
            entity_id=entity.id,
        )

    async def _purge_entity_rows(
        self,
        db: AsyncSession,
        entity_type: str,
        entity: Entity,
        field: FieldDescriptor,
    ) -> None:
        for table in self._tables.tables(field):
            await db.execute(
                delete(table).where(
                    table.c.entity_type == entity_type,
                    table.c.entity_id == entity.id,
                )
            )

    async def delete_revision(
        self,
        entity_type: str,
        entity: Entity,
        fields: Sequence[FieldDescriptor],
    ) -> None:
        """Remove the values of one entity revision."""
        if entity.revision_id is None:
            return

        async with self._transaction() as db:
            for field in fields:
                table = self._tables.table(field, TableScope.REVISION)
                await db.execute(
                    delete(table).where(
                        table.c.entity_type == entity_type,
                        table.c.entity_id == entity.id,
                        table.c.revision_id == entity.revision_id,
                    )
                )

    async def delete_instance(self, instance: InstanceDescriptor) -> None:
        """Flag deleted every value of a field in one bundle."""
        async with self._transaction() as db:
            for table in self._tables.tables(instance.field):
                await db.execute(
                    update(table)
                    .where(
                        table.c.entity_type == instance.entity_type,
                        table.c.bundle == instance.bundle,
                    )
                    .values(deleted=1)
                )

        logger.info(
            "Deleted field instance",
            field=instance.field.name,
            entity_type=instance.entity_type,
            bundle=instance.bundle,
        )

    async def rename_bundle(
        self,
        entity_type: str,
        bundle_old: str,
        bundle_new: str,
        fields: Sequence[FieldDescriptor],
    ) -> None:
        """Move the values of fields stored here from one bundle name to another."""
        async with self._transaction() as db:
            for field in fields:
                for table in self._tables.tables(field):
                    await db.execute(
                        update(table)
                        .where(
                            table.c.entity_type == entity_type,
                            table.c.bundle == bundle_old,
                        )
                        .values(bundle=bundle_new)
                    )

        logger.info(
            "Renamed bundle",
            entity_type=entity_type,
            bundle_old=bundle_old,
            bundle_new=bundle_new,
        )


# =============================================================================
# Factory Function
# =============================================================================


def create_field_storage_service(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> FieldStorageService:
    """
    Factory function to create the storage service from application settings.

    Args:
        session_factory: Session factory (default: the application's)

    Returns:
        Configured FieldStorageService
    """
    from cryptfield.config import settings
    from cryptfield.database import AsyncSessionLocal
    from cryptfield.services.config_store import DatabaseConfigStore
    from cryptfield.services.key_store import create_key_store

    session_factory = session_factory or AsyncSessionLocal
    config_store = DatabaseConfigStore(session_factory, overrides=settings.config_overrides)

    return FieldStorageService(
        session_factory,
        create_key_store(config_store),
        codec=RecordCodec(),
        languages=settings.languages_list,
    )
