"""
Envelope key management for encrypted field storage.

A single master key encrypts every stored field value. It never exists on
disk in plaintext; it is kept in an envelope file sealed with AES-256-GCM:

    envelope = AES-GCM(key=wrapping_key, nonce=configuration_nonce, data=master_key)

The two unwrapping secrets live in different media:
- wrapping key: host configuration store (or pinned by the deployment)
- configuration nonce: CRYPTFIELD_NONCE environment variable, falling back
  to the configuration store

Opening the envelope needs the file plus both secrets. Every failure to get
a usable key raises the same KeyUnavailableError, whatever the cause, so
neither errors nor logs reveal which secret is missing or wrong.

The opened key is cached for the lifetime of the KeyStore instance. A
change to the envelope or the secrets is only seen after a restart.
"""
import base64
import binascii
import os
import tempfile
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator, Dict, Optional

from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from cryptfield.services.config_store import ConfigStore
from cryptfield.utils.logger import get_logger
from cryptfield.utils.paths import resolve_uri
from cryptfield.utils.secure_memory import secure_zero, wiped

logger = get_logger("encryption.key_store")

# Constants
KEY_LENGTH = 32  # AES-256
NONCE_LENGTH = 12  # 96 bits for GCM
TAG_LENGTH = 16
ENVELOPE_LENGTH = KEY_LENGTH + TAG_LENGTH

# Configuration store entries
KEY_PATH_VARIABLE = "cryptfield_key_path"
WRAPPING_KEY_VARIABLE = "cryptfield_secretbox_key_key"
NONCE_VARIABLE = "cryptfield_configuration_nonce"
KEY_GENERATED_VARIABLE = "cryptfield_key_generated"

DEFAULT_KEY_PATH = "private://cryptfield.key"
NONCE_ENV_VAR = "CRYPTFIELD_NONCE"

KEY_UNAVAILABLE_MESSAGE = "Encryption key is unavailable"


class KeyUnavailableError(Exception):
    """Raised for any failure to obtain the master key."""

    def __init__(self):
        super().__init__(KEY_UNAVAILABLE_MESSAGE)


class KeyStore:
    """
    Owner of the master key used to encrypt field values.

    Example:
        >>> key_store = KeyStore(config_store, env_nonce=os.environ.get("CRYPTFIELD_NONCE"))
        >>> async with key_store.active_key() as key:
        ...     nonce, ciphertext = codec.encode(value, key, columns)
    """

    def __init__(
        self,
        config_store: ConfigStore,
        env_nonce: Optional[str] = None,
        scheme_roots: Optional[Dict[str, Path]] = None,
    ):
        """
        Initialize the key store.

        Args:
            config_store: Store holding the wrapping key and fallback nonce
            env_nonce: Base64 configuration nonce from the environment, if set
            scheme_roots: Directories backing private:// and public:// URIs
        """
        self._config = config_store
        self._env_nonce = env_nonce
        self._scheme_roots = scheme_roots
        self._key: Optional[bytearray] = None

    async def get_active_key(self) -> bytes:
        """
        Return the master key, opening or creating the envelope on first use.

        Raises:
            KeyUnavailableError: If the key cannot be obtained for any reason
        """
        if self._key is None:
            self._key = await self._load_key()
        return bytes(self._key)

    @asynccontextmanager
    async def active_key(self) -> AsyncIterator[bytearray]:
        """
        Borrow the master key for the duration of a block.

        The yielded buffer is a copy that is zeroed when the block exits,
        including on error.
        """
        if self._key is None:
            self._key = await self._load_key()
        with wiped(self._key) as key:
            yield key

    async def is_available(self) -> bool:
        """Check whether the master key can be obtained, without raising."""
        try:
            async with self.active_key():
                return True
        except KeyUnavailableError:
            return False

    # =========================================================================
    # Envelope handling
    # =========================================================================

    async def _load_key(self) -> bytearray:
        wrapping_key = None
        try:
            wrapping_key = await self._wrapping_key()
            nonce = await self._configuration_nonce()
            path = await self._key_path()

            if path.exists():
                return self._open_envelope(path.read_bytes(), wrapping_key, nonce)

            if await self._config.get(KEY_GENERATED_VARIABLE) is not None:
                # The envelope was created before and has since vanished.
                raise KeyUnavailableError()

            return await self._create_envelope(path, wrapping_key, nonce)

        except KeyUnavailableError:
            logger.error(KEY_UNAVAILABLE_MESSAGE)
            raise
        except Exception:
            logger.error(KEY_UNAVAILABLE_MESSAGE)
            raise KeyUnavailableError() from None
        finally:
            secure_zero(wrapping_key)

    def _open_envelope(self, envelope: bytes, wrapping_key: bytearray, nonce: bytes) -> bytearray:
        if len(envelope) != ENVELOPE_LENGTH:
            raise KeyUnavailableError()

        key = bytearray(AESGCM(wrapping_key).decrypt(nonce, envelope, None))
        if len(key) != KEY_LENGTH:
            secure_zero(key)
            raise KeyUnavailableError()
        return key

    async def _create_envelope(self, path: Path, wrapping_key: bytearray, nonce: bytes) -> bytearray:
        key = bytearray(os.urandom(KEY_LENGTH))
        try:
            created = self._write_envelope(path, AESGCM(wrapping_key).encrypt(nonce, key, None))
            if created:
                await self._config.set(
                    KEY_GENERATED_VARIABLE, datetime.now(timezone.utc).isoformat()
                )
        except BaseException:
            secure_zero(key)
            raise

        if not created:
            # Another process created the envelope first; use theirs.
            secure_zero(key)
            logger.info("Key envelope created concurrently, opening existing envelope")
            return self._open_envelope(path.read_bytes(), wrapping_key, nonce)

        logger.info("Generated new encryption key envelope", path=str(path))
        return key

    def _write_envelope(self, path: Path, envelope: bytes) -> bool:
        """
        Write the envelope without ever replacing an existing file.

        Returns:
            False if another process created the envelope first
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=".cryptfield-", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(envelope)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(temp_name, 0o600)
            # link() refuses to replace an existing file, unlike rename()
            try:
                os.link(temp_name, path)
            except FileExistsError:
                return False
            return True
        finally:
            os.unlink(temp_name)

    # =========================================================================
    # Secrets
    # =========================================================================

    async def _wrapping_key(self) -> bytearray:
        encoded = await self._config.get(WRAPPING_KEY_VARIABLE)
        if encoded is None:
            generated = base64.b64encode(os.urandom(KEY_LENGTH)).decode("ascii")
            encoded = await self._config.setdefault(WRAPPING_KEY_VARIABLE, generated)
            if encoded == generated:
                logger.info("Generated wrapping key in configuration store")

        key = bytearray(_b64decode(encoded))
        if len(key) != KEY_LENGTH:
            secure_zero(key)
            raise KeyUnavailableError()
        return key

    async def _configuration_nonce(self) -> bytes:
        encoded = self._env_nonce
        if not encoded:
            encoded = await self._config.get(NONCE_VARIABLE)
            if encoded is None:
                generated = base64.b64encode(os.urandom(NONCE_LENGTH)).decode("ascii")
                encoded = await self._config.setdefault(NONCE_VARIABLE, generated)
                logger.warning(
                    "Configuration nonce generated in configuration store; "
                    f"set {NONCE_ENV_VAR} to keep it out of the database"
                )

        nonce = _b64decode(encoded)
        if len(nonce) != NONCE_LENGTH:
            raise KeyUnavailableError()
        return nonce

    async def _key_path(self) -> Path:
        uri = await self._config.get(KEY_PATH_VARIABLE, DEFAULT_KEY_PATH)
        return resolve_uri(uri, self._scheme_roots)


def _b64decode(encoded: str) -> bytes:
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError):
        raise KeyUnavailableError() from None


def create_key_store(config_store: ConfigStore) -> KeyStore:
    """
    Factory function to create a key store from application settings.

    Args:
        config_store: Store holding the wrapping key and fallback nonce

    Returns:
        Configured KeyStore
    """
    from cryptfield.config import settings

    return KeyStore(config_store, env_nonce=settings.CRYPTFIELD_NONCE)
