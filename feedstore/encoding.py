"""Record format for feeds stored in chunk files.

A record is ``[payload length: u32][crc32 of payload: u32][payload]``, all
little endian. The payload holds the feed id, its time in Unix nanoseconds,
its labels and its float32 vectors.
"""

from __future__ import annotations

import struct
import zlib
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import BinaryIO

from feedstore.codec import read_exact

HEADER_SIZE = 8
_MAX_U32 = 0xFFFFFFFF
_U32 = struct.Struct("<I")
_U64 = struct.Struct("<Q")
_I64 = struct.Struct("<q")
_RECORD_HEADER = struct.Struct("<II")
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MICROSECOND = timedelta(microseconds=1)


class RecordError(ValueError):
    """Raised when a feed cannot be encoded or a record payload is malformed."""


class ChecksumMismatchError(RecordError):
    """Raised when a record's payload does not match its stored checksum."""


@dataclass(frozen=True)
class Label:
    key: str
    value: str


@dataclass
class Feed:
    id: int
    time: datetime
    labels: list[Label] = field(default_factory=list)
    vectors: list[list[float]] = field(default_factory=list)


def _to_unix_nanos(moment: datetime) -> int:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return (moment - _EPOCH) // _MICROSECOND * 1000


def _from_unix_nanos(nanos: int) -> datetime:
    return _EPOCH + timedelta(microseconds=nanos // 1000)


def write_string(stream: BinaryIO, value: str) -> None:
    """Write ``value`` as a u32 byte length followed by its UTF-8 bytes."""
    data = value.encode("utf-8")
    if len(data) > _MAX_U32:
        raise RecordError("string too long")
    stream.write(_U32.pack(len(data)))
    stream.write(data)


def read_string(stream: BinaryIO) -> str:
    """Read a string written by :func:`write_string`."""
    (length,) = _U32.unpack(read_exact(stream, _U32.size))
    return read_exact(stream, length).decode("utf-8")


def _encode_payload(feed: Feed) -> bytes:
    parts: list[bytes] = []
    try:
        parts.append(_U64.pack(feed.id))
        parts.append(_I64.pack(_to_unix_nanos(feed.time)))
    except struct.error as exc:
        raise RecordError(f"invalid feed id or time: {exc}") from exc

    if len(feed.labels) > _MAX_U32:
        raise RecordError("too many labels")
    parts.append(_U32.pack(len(feed.labels)))
    for label in feed.labels:
        for text in (label.key, label.value):
            data = text.encode("utf-8")
            if len(data) > _MAX_U32:
                raise RecordError("label too long")
            parts.append(_U32.pack(len(data)))
            parts.append(data)

    if len(feed.vectors) > _MAX_U32:
        raise RecordError("too many vectors")
    parts.append(_U32.pack(len(feed.vectors)))
    if feed.vectors:
        dimension = len(feed.vectors[0])
        if dimension > _MAX_U32:
            raise RecordError("vector dimension exceeds maximum uint32")
        parts.append(_U32.pack(dimension))
        packer = struct.Struct(f"<{dimension}f")
        for i, vector in enumerate(feed.vectors):
            if len(vector) != dimension:
                raise RecordError(
                    f"vector {i} has inconsistent dimension {len(vector)}, expected {dimension}"
                )
            parts.append(packer.pack(*vector))
    return b"".join(parts)


def encode_record(feed: Feed) -> bytes:
    """Encode ``feed`` as a complete record, header included."""
    payload = _encode_payload(feed)
    return _RECORD_HEADER.pack(len(payload), zlib.crc32(payload)) + payload


def _check_checksum(payload: bytes, expected: int) -> None:
    actual = zlib.crc32(payload)
    if actual != expected:
        raise ChecksumMismatchError(f"checksum mismatch: expected {expected:x}, got {actual:x}")


def read_record(stream: BinaryIO) -> bytes:
    """Read one record from ``stream`` and verify its checksum.

    Returns the raw record bytes, header included. Raises EOFError when the
    stream ends before the record does.
    """
    header = read_exact(stream, HEADER_SIZE)
    length, expected = _RECORD_HEADER.unpack(header)
    payload = read_exact(stream, length)
    _check_checksum(payload, expected)
    return header + payload


class _Cursor:
    def __init__(self, data: bytes):
        self._data = data
        self._pos = 0

    def take(self, size: int) -> bytes:
        end = self._pos + size
        if end > len(self._data):
            raise RecordError("payload truncated")
        chunk = self._data[self._pos:end]
        self._pos = end
        return chunk

    def unpack(self, fmt: struct.Struct) -> int:
        return fmt.unpack(self.take(fmt.size))[0]

    def string(self) -> str:
        length = self.unpack(_U32)
        try:
            return self.take(length).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise RecordError(f"invalid string: {exc}") from exc


def _decode_payload(payload: bytes) -> Feed:
    cursor = _Cursor(payload)
    feed_id = cursor.unpack(_U64)
    try:
        moment = _from_unix_nanos(cursor.unpack(_I64))
    except OverflowError as exc:
        raise RecordError("time out of range") from exc

    labels = []
    for _ in range(cursor.unpack(_U32)):
        key = cursor.string()
        value = cursor.string()
        labels.append(Label(key, value))

    vectors: list[list[float]] = []
    count = cursor.unpack(_U32)
    if count:
        dimension = cursor.unpack(_U32)
        unpacker = struct.Struct(f"<{dimension}f")
        vectors = [list(unpacker.unpack(cursor.take(unpacker.size))) for _ in range(count)]

    return Feed(id=feed_id, time=moment, labels=labels, vectors=vectors)


def decode_record(data, offset: int = 0) -> tuple[Feed, int]:
    """Decode the record starting at ``offset`` in a bytes-like ``data``.

    Returns the feed and the number of bytes the record occupies.
    """
    with memoryview(data) as view:
        if offset + HEADER_SIZE > len(view):
            raise EOFError("record header truncated")
        length, expected = _RECORD_HEADER.unpack_from(view, offset)
        start = offset + HEADER_SIZE
        if start + length > len(view):
            raise EOFError("record payload truncated")
        payload = bytes(view[start:start + length])
    _check_checksum(payload, expected)
    return _decode_payload(payload), HEADER_SIZE + length