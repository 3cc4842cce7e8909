"""Binary header and stream helpers shared by the serialized indexes."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import BinaryIO

MAGIC = bytes(
    [0x77, 0x79, 0x73, 0x20, 0x69, 0x73, 0x20, 0x61,
     0x77, 0x65, 0x73, 0x6F, 0x6D, 0x65, 0x00, 0x00]
)
VERSION = 1


class IndexFormatError(ValueError):
    """Raised when serialized index data does not carry the expected header."""


class Codec(ABC):
    """Something that can write itself to a binary stream and read itself back."""

    @abstractmethod
    def encode_to(self, stream: BinaryIO) -> None:
        """Write the encoded form to ``stream``."""

    @abstractmethod
    def decode_from(self, stream: BinaryIO) -> None:
        """Replace the current state with the one read from ``stream``."""


def read_exact(stream: BinaryIO, size: int) -> bytes:
    """Read exactly ``size`` bytes, raising EOFError when the stream ends early."""
    parts: list[bytes] = []
    remaining = size
    while remaining > 0:
        data = stream.read(remaining)
        if not data:
            break
        parts.append(bytes(data))
        remaining -= len(data)
    if remaining:
        raise EOFError(f"expected {size} bytes, got {size - remaining}")
    return b"".join(parts)


def write_header(stream: BinaryIO) -> None:
    """Write the magic number followed by the one-byte format version."""
    stream.write(MAGIC)
    stream.write(bytes([VERSION]))


def read_header(stream: BinaryIO) -> None:
    """Read and check the magic number and format version."""
    if read_exact(stream, len(MAGIC)) != MAGIC:
        raise IndexFormatError("invalid magic number")
    if read_exact(stream, 1)[0] != VERSION:
        raise IndexFormatError("invalid version")