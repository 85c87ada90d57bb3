"""
Integration tests for the database-backed configuration store.
"""
import base64
import os

import pytest
from sqlalchemy import select

from cryptfield.models.variable import ConfigVariable
from cryptfield.services.config_store import DatabaseConfigStore
from cryptfield.services.key_store import (
    KEY_GENERATED_VARIABLE,
    NONCE_VARIABLE,
    WRAPPING_KEY_VARIABLE,
    KeyStore,
)


@pytest.mark.asyncio
async def test_get_missing_returns_default(config_store):
    assert await config_store.get("cryptfield_missing") is None
    assert await config_store.get("cryptfield_missing", "fallback") == "fallback"


@pytest.mark.asyncio
async def test_set_then_get(config_store):
    await config_store.set("cryptfield_key_path", "private://a.key")
    assert await config_store.get("cryptfield_key_path") == "private://a.key"


@pytest.mark.asyncio
async def test_set_overwrites(config_store, db_session):
    await config_store.set("cryptfield_key_path", "private://a.key")
    await config_store.set("cryptfield_key_path", "private://b.key")

    result = await db_session.execute(select(ConfigVariable))
    variables = result.scalars().all()

    assert [(v.name, v.value) for v in variables] == [("cryptfield_key_path", "private://b.key")]


@pytest.mark.asyncio
async def test_pinned_entry_wins_and_is_read_only(session_factory):
    store = DatabaseConfigStore(session_factory, overrides={"cryptfield_key_path": "/secure/site.key"})

    assert store.is_pinned("cryptfield_key_path")
    assert await store.get("cryptfield_key_path") == "/secure/site.key"

    with pytest.raises(ValueError, match="pinned"):
        await store.set("cryptfield_key_path", "private://other.key")


@pytest.mark.asyncio
async def test_key_store_persists_generated_secrets(key_store, config_store):
    await key_store.get_active_key()

    wrapping_key = await config_store.get(WRAPPING_KEY_VARIABLE)
    nonce = await config_store.get(NONCE_VARIABLE)

    assert len(base64.b64decode(wrapping_key)) == 32
    assert len(base64.b64decode(nonce)) == 12
    assert await config_store.get(KEY_GENERATED_VARIABLE) is not None


@pytest.mark.asyncio
async def test_pinned_wrapping_key_never_reaches_database(session_factory, db_session, scheme_roots):
    pinned = base64.b64encode(os.urandom(32)).decode("ascii")
    store = DatabaseConfigStore(session_factory, overrides={WRAPPING_KEY_VARIABLE: pinned})
    key_store = KeyStore(store, env_nonce=base64.b64encode(os.urandom(12)).decode("ascii"), scheme_roots=scheme_roots)

    await key_store.get_active_key()

    result = await db_session.execute(select(ConfigVariable.name))
    names = set(result.scalars().all())
    assert WRAPPING_KEY_VARIABLE not in names
    assert NONCE_VARIABLE not in names
    assert names == {KEY_GENERATED_VARIABLE}


@pytest.mark.asyncio
async def test_setdefault_keeps_existing_value(config_store):
    assert await config_store.setdefault("cryptfield_configuration_nonce", "first") == "first"
    assert await config_store.setdefault("cryptfield_configuration_nonce", "second") == "first"
    assert await config_store.get("cryptfield_configuration_nonce") == "first"


@pytest.mark.asyncio
async def test_setdefault_on_pinned_entry(session_factory, db_session):
    store = DatabaseConfigStore(session_factory, overrides={"cryptfield_key_path": "/secure/site.key"})

    assert await store.setdefault("cryptfield_key_path", "private://other.key") == "/secure/site.key"

    result = await db_session.execute(select(ConfigVariable))
    assert result.scalars().all() == []
