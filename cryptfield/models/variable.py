"""
SQLAlchemy model for the host configuration store.

Each row is one named configuration entry. Binary entries (the wrapping key,
the fallback configuration nonce) are stored base64-encoded.
"""
from typing import Optional

from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column

from cryptfield.database import Base


class ConfigVariable(Base):
    """
    Named configuration entry.

    Attributes:
        name: Entry name (e.g. "cryptfield_key_path")
        value: Entry value as text
    """

    __tablename__ = "cryptfield_variable"

    name: Mapped[str] = mapped_column(String(128), primary_key=True)
    value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<ConfigVariable(name={self.name})>"
