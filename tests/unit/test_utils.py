"""
Unit tests for secure memory, storage URI and logging helpers.
"""
import logging
from pathlib import Path

import pytest

from cryptfield.utils.logger import REDACTED, StructuredFormatter, get_logger
from cryptfield.utils.paths import resolve_uri
from cryptfield.utils.secure_memory import secure_zero, wiped


def test_secure_zero_bytearray():
    buffer = bytearray(b"secret material")
    secure_zero(buffer)
    assert buffer == bytearray(len(b"secret material"))


def test_secure_zero_memoryview():
    buffer = bytearray(b"secret")
    secure_zero(memoryview(buffer))
    assert buffer == bytearray(6)


def test_secure_zero_ignores_empty():
    secure_zero(None)
    secure_zero(bytearray())


def test_secure_zero_rejects_immutable():
    with pytest.raises(TypeError):
        secure_zero(b"immutable")


def test_wiped_copies_and_erases():
    source = b"key material"
    with wiped(source) as buffer:
        assert bytes(buffer) == source
    assert buffer == bytearray(len(source))


def test_wiped_erases_on_error():
    with pytest.raises(ValueError):
        with wiped(b"key material") as buffer:
            raise ValueError("fail")
    assert not any(buffer)


def test_resolve_private_uri(tmp_path):
    roots = {"private": tmp_path / "private"}
    assert resolve_uri("private://cryptfield.key", roots) == (tmp_path / "private" / "cryptfield.key").resolve()


def test_resolve_plain_path():
    assert resolve_uri("/etc/cryptfield.key", {}) == Path("/etc/cryptfield.key")


def test_resolve_unknown_scheme(tmp_path):
    with pytest.raises(ValueError, match="Unknown storage scheme"):
        resolve_uri("s3://bucket/key", {"private": tmp_path})


def test_resolve_rejects_escape(tmp_path):
    with pytest.raises(ValueError, match="escapes its root"):
        resolve_uri("private://../../etc/passwd", {"private": tmp_path / "private"})


def test_logger_redacts_secret_fields(package_logs):
    get_logger("test").info("Sealed value", key=b"\x01" * 32, field="field_secret")

    record = package_logs.records[-1]
    assert record.name == "cryptfield.test"
    assert record.key == REDACTED
    assert record.field == "field_secret"


def test_logger_prefixes_record_attributes(package_logs):
    get_logger("test").info("Prefixed", module="custom")

    assert package_logs.records[-1].ctx_module == "custom"


def test_formatter_renders_extra_fields():
    record = logging.makeLogRecord({
        "name": "cryptfield.test",
        "levelname": "INFO",
        "msg": "hello",
        "entity_id": 5,
    })

    line = StructuredFormatter().format(record)

    assert line.endswith("| INFO     | cryptfield.test | hello | entity_id=5")
