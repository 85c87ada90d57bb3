"""
Pytest configuration and fixtures for encrypted field storage tests.
"""
import logging
import os
from pathlib import Path
from typing import AsyncGenerator, Dict, Optional, Set

import pytest
from httpx import AsyncClient, ASGITransport
from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Set environment before importing settings so the default engine is in-memory
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ.pop("CRYPTFIELD_NONCE", None)
os.environ.pop("CRYPTFIELD_SECRETBOX_KEY_KEY", None)

from cryptfield.database import Base, get_db
from cryptfield.models.variable import ConfigVariable  # noqa: F401
from cryptfield.schemas.field import CARDINALITY_UNLIMITED, FieldDescriptor
from cryptfield.services.config_store import ConfigStore, DatabaseConfigStore
from cryptfield.services.field_storage import FieldStorageService
from cryptfield.services.key_store import KeyStore


class MemoryConfigStore(ConfigStore):
    """In-memory configuration store for tests that need no database."""

    def __init__(self, values: Optional[Dict[str, str]] = None):
        self.values: Dict[str, str] = dict(values or {})

    async def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.values.get(name, default)

    async def set(self, name: str, value: str) -> None:
        self.values[name] = value


@pytest.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    """In-memory SQLite engine with the static tables created."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        db_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture
def scheme_roots(tmp_path: Path) -> Dict[str, Path]:
    """Private and public file directories under the test's tmp_path."""
    return {
        "private": tmp_path / "private",
        "public": tmp_path / "files",
    }


@pytest.fixture
def envelope_path(scheme_roots) -> Path:
    return scheme_roots["private"] / "cryptfield.key"


@pytest.fixture
def memory_config() -> MemoryConfigStore:
    return MemoryConfigStore()


@pytest.fixture
def config_store(session_factory) -> DatabaseConfigStore:
    return DatabaseConfigStore(session_factory)


@pytest.fixture
def key_store(config_store, scheme_roots) -> KeyStore:
    return KeyStore(config_store, scheme_roots=scheme_roots)


@pytest.fixture
def storage(session_factory, key_store) -> FieldStorageService:
    return FieldStorageService(session_factory, key_store, languages=["en", "fr"])


@pytest.fixture
def text_field() -> FieldDescriptor:
    """Untranslatable text field holding up to 3 values."""
    return FieldDescriptor(id=1, name="field_secret", columns=["value", "format"], cardinality=3)


@pytest.fixture
def translatable_field() -> FieldDescriptor:
    return FieldDescriptor(
        id=2,
        name="field_note",
        columns=["value"],
        cardinality=CARDINALITY_UNLIMITED,
        translatable=True,
    )


@pytest.fixture
async def text_field_storage(storage, text_field) -> FieldStorageService:
    """Storage service with the text field's tables created."""
    await storage.create_field(text_field)
    return storage


@pytest.fixture
async def client(db_session: AsyncSession, storage: FieldStorageService) -> AsyncGenerator[AsyncClient, None]:
    """
    Async test client for the FastAPI application.

    The lifespan does not run under ASGITransport, so the storage service is
    placed on app.state directly.
    """
    from cryptfield.main import app

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.state.field_storage = storage

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
    app.state.field_storage = None


@pytest.fixture
def list_tables(db_engine):
    """Async callable returning the table names currently in the database."""

    async def _list_tables() -> Set[str]:
        async with db_engine.connect() as conn:
            return set(await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names()))

    return _list_tables


@pytest.fixture
def package_logs(caplog):
    """
    Capture package logs.

    The package logger does not propagate to the root logger, so caplog's
    handler is attached to it directly.
    """
    package_logger = logging.getLogger("cryptfield")
    package_logger.addHandler(caplog.handler)
    caplog.set_level(logging.DEBUG, logger="cryptfield")
    yield caplog
    package_logger.removeHandler(caplog.handler)
