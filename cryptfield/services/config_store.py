"""
Host configuration store.

The key store keeps the wrapping key and the fallback configuration nonce
here, apart from the key envelope on disk. Values are text; binary secrets
are stored base64-encoded by their owners.
"""
from abc import ABC, abstractmethod
from typing import Mapping, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cryptfield.models.variable import ConfigVariable
from cryptfield.utils.logger import get_logger

logger = get_logger("config_store")


class ConfigStore(ABC):
    """
    Abstract key-value configuration store.

    Implementations must make ``set`` durable before returning. The key
    store creates its secrets through ``setdefault``; implementations that
    can insert atomically should override it so concurrent first starts
    agree on one value.
    """

    @abstractmethod
    async def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        """
        Read a configuration entry.

        Args:
            name: Entry name
            default: Value returned when the entry is absent

        Returns:
            Stored value or default
        """
        pass

    @abstractmethod
    async def set(self, name: str, value: str) -> None:
        """
        Persist a configuration entry, replacing any previous value.

        Args:
            name: Entry name
            value: Text value
        """
        pass

    async def setdefault(self, name: str, value: str) -> str:
        """
        Persist an entry only if it is absent.

        Returns:
            The stored value: ``value``, unless the entry already existed
        """
        current = await self.get(name)
        if current is not None:
            return current
        await self.set(name, value)
        return value

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}>"


class DatabaseConfigStore(ConfigStore):
    """
    Configuration store backed by the ``cryptfield_variable`` table.

    Entries listed in ``overrides`` are pinned by the deployment: reads
    return the pinned value and writes to them are refused, so a pinned
    secret never reaches the database.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        overrides: Optional[Mapping[str, str]] = None,
    ):
        self._sessions = session_factory
        self._overrides = dict(overrides or {})

    def is_pinned(self, name: str) -> bool:
        return name in self._overrides

    async def get(self, name: str, default: Optional[str] = None) -> Optional[str]:
        if name in self._overrides:
            return self._overrides[name]

        async with self._sessions() as db:
            result = await db.execute(
                select(ConfigVariable.value).where(ConfigVariable.name == name)
            )
            value = result.scalar_one_or_none()

        return default if value is None else value

    async def set(self, name: str, value: str) -> None:
        if name in self._overrides:
            raise ValueError(f"Configuration entry '{name}' is pinned and cannot be written")

        async with self._sessions() as db:
            async with db.begin():
                variable = await db.get(ConfigVariable, name)
                if variable is None:
                    db.add(ConfigVariable(name=name, value=value))
                else:
                    variable.value = value

        logger.debug("Configuration entry stored", name=name)

    async def setdefault(self, name: str, value: str) -> str:
        current = await self.get(name)
        if current is not None:
            return current

        # Plain INSERT: a concurrent writer's entry wins over ours.
        try:
            async with self._sessions() as db:
                async with db.begin():
                    db.add(ConfigVariable(name=name, value=value))
        except IntegrityError:
            logger.debug("Configuration entry created concurrently", name=name)
            return await self.get(name)

        logger.debug("Configuration entry stored", name=name)
        return value
