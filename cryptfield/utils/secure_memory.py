"""
Best-effort erasure of key material held in memory.

Python cannot guarantee erasure: immutable ``bytes`` objects cannot be
overwritten, and the interpreter or allocator may have copied a buffer
before it is wiped. Key material is therefore kept in ``bytearray`` buffers
wherever this package controls the allocation, and those buffers are zeroed
when their scope ends.
"""
from contextlib import contextmanager
from typing import Iterator, Union


def secure_zero(data: Union[bytearray, memoryview, None]) -> None:
    """Overwrite a mutable buffer with zeros in place."""
    if not data:
        return

    if isinstance(data, memoryview):
        if data.readonly:
            raise TypeError("Cannot zero a read-only buffer")
        data[:] = b"\x00" * data.nbytes
        return

    if isinstance(data, bytearray):
        data[:] = b"\x00" * len(data)
        return

    raise TypeError(f"Cannot zero immutable buffer of type {type(data).__name__}")


@contextmanager
def wiped(data: Union[bytes, bytearray]) -> Iterator[bytearray]:
    """
    Yield a mutable copy of ``data`` that is zeroed on every exit path.

    Example:
        >>> with wiped(secret) as buf:
        ...     use(buf)
    """
    buffer = bytearray(data)
    try:
        yield buffer
    finally:
        secure_zero(buffer)
