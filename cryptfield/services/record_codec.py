"""
Encryption of individual field values.

A field value is a mapping of the field's declared columns to scalars. It is
serialized to compact JSON and sealed with AES-256-GCM under the master key
and a fresh random nonce. The nonce is stored next to the ciphertext in the
same row.

Decoding never raises for bad stored data: an authentication failure or a
payload that does not have exactly the declared columns comes back as a
RecordCorrupt value, so one damaged row cannot abort a batch load.
"""
import base64
import binascii
import json
import os
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

# Constants
NONCE_LENGTH = 12  # 96 bits for GCM

SCALAR_TYPES = (str, int, float, bool, type(None))


@dataclass(frozen=True)
class RecordCorrupt:
    """Marker returned when a stored value cannot be decoded."""
    reason: str


DecodeResult = Union[Dict[str, Any], RecordCorrupt]


class RecordCodec:
    """
    Seals and opens single field values.

    Example:
        >>> codec = RecordCodec()
        >>> nonce, ciphertext = codec.encode({"value": "secret"}, key, ["value"])
        >>> codec.decode(nonce, ciphertext, key, ["value"])
        {'value': 'secret'}
    """

    def project(self, value: Mapping[str, Any], columns: Sequence[str]) -> Dict[str, Any]:
        """
        Restrict a value to the declared columns.

        Undeclared keys are dropped and missing columns become None.

        Raises:
            TypeError: If value is not a mapping or holds a non-scalar column
        """
        if not isinstance(value, Mapping):
            raise TypeError(f"Field value must be a mapping, got {type(value).__name__}")

        projected = {column: value.get(column) for column in columns}
        for column, item in projected.items():
            if not isinstance(item, SCALAR_TYPES):
                raise TypeError(
                    f"Column '{column}' must hold a scalar, got {type(item).__name__}"
                )
        return projected

    def placeholder(self, columns: Sequence[str]) -> Dict[str, Any]:
        """All-null value substituted for a corrupt record."""
        return {column: None for column in columns}

    def encode(
        self,
        value: Mapping[str, Any],
        key: Union[bytes, bytearray],
        columns: Sequence[str],
    ) -> Tuple[bytes, bytes]:
        """
        Encrypt one field value.

        Args:
            value: Column name -> scalar mapping
            key: Master key
            columns: Declared columns of the field

        Returns:
            Tuple of (nonce, ciphertext)
        """
        payload = json.dumps(
            self.project(value, columns),
            sort_keys=True,
            separators=(",", ":"),
            allow_nan=False,
        ).encode("utf-8")

        nonce = os.urandom(NONCE_LENGTH)
        ciphertext = AESGCM(key).encrypt(nonce, payload, None)
        return nonce, ciphertext

    def decode(
        self,
        nonce: bytes,
        ciphertext: bytes,
        key: Union[bytes, bytearray],
        columns: Sequence[str],
    ) -> DecodeResult:
        """
        Decrypt one field value.

        Args:
            nonce: Nonce stored with the record
            ciphertext: Stored ciphertext
            key: Master key
            columns: Declared columns of the field

        Returns:
            The decoded mapping, or RecordCorrupt
        """
        if len(nonce) != NONCE_LENGTH:
            return RecordCorrupt("invalid nonce length")

        try:
            payload = AESGCM(key).decrypt(nonce, ciphertext, None)
        except InvalidTag:
            return RecordCorrupt("authentication failed")

        try:
            value = json.loads(payload.decode("utf-8"))
        except ValueError:
            return RecordCorrupt("payload is not valid JSON")

        if not isinstance(value, dict):
            return RecordCorrupt("payload is not a mapping")
        if set(value) != set(columns):
            return RecordCorrupt("payload columns do not match field columns")
        if not all(isinstance(item, SCALAR_TYPES) for item in value.values()):
            return RecordCorrupt("payload holds non-scalar columns")

        return {column: value[column] for column in columns}

    # =========================================================================
    # Stored (base64 text) representation
    # =========================================================================

    def pack(
        self,
        value: Mapping[str, Any],
        key: Union[bytes, bytearray],
        columns: Sequence[str],
    ) -> Tuple[str, str]:
        """Encode a value into the (nonce, data) text columns of a record."""
        nonce, ciphertext = self.encode(value, key, columns)
        return (
            base64.b64encode(nonce).decode("ascii"),
            base64.b64encode(ciphertext).decode("ascii"),
        )

    def unpack(
        self,
        nonce_b64: Optional[str],
        data_b64: Optional[str],
        key: Union[bytes, bytearray],
        columns: Sequence[str],
    ) -> DecodeResult:
        """Decode the (nonce, data) text columns of a record."""
        if not nonce_b64 or not data_b64:
            return RecordCorrupt("missing nonce or data")
        try:
            nonce = base64.b64decode(nonce_b64, validate=True)
            ciphertext = base64.b64decode(data_b64, validate=True)
        except (binascii.Error, ValueError):
            return RecordCorrupt("invalid base64 encoding")
        return self.decode(nonce, ciphertext, key, columns)
