"""Append-only chunk files holding encoded feed records.

A chunk file starts with a 64-byte header (magic number and a u32 format
version) followed by feed records as produced by
:func:`feedstore.encoding.encode_record`. A file is opened either read-write,
keeping its valid contents in memory for reads, or read-only, served from a
memory map.
"""

from __future__ import annotations

import mmap
import os
import struct
import threading
from collections.abc import Callable, Iterable, Iterator

from feedstore.codec import MAGIC
from feedstore.encoding import (
    ChecksumMismatchError,
    Feed,
    RecordError,
    decode_record,
    encode_record,
    read_record,
)

HEADER_SIZE = 64
DATA_START = HEADER_SIZE
_HEADER_VERSION = 1
_VERSION = struct.Struct("<I")
_VERSION_START = len(MAGIC)

HEADER = (MAGIC + _VERSION.pack(_HEADER_VERSION)).ljust(HEADER_SIZE, b"\x00")


class ChunkError(Exception):
    """Raised when a chunk file cannot be opened, written or read."""


def _check_path(path: str, readonly_at_first: bool) -> bool:
    """Validate the path and return whether a file already exists there."""
    if not path:
        raise ChunkError("validate config: path is required")
    try:
        is_dir = os.path.isdir(path)
        exists = os.path.exists(path)
    except OSError as exc:
        raise ChunkError(f"validate config: stat path: {exc}") from exc
    if is_dir:
        raise ChunkError("validate config: path is a directory")
    if not exists and readonly_at_first:
        raise ChunkError("validate config: path does not exist")
    return exists


def _create_file(path: str):
    try:
        fd = os.open(path, os.O_RDWR | os.O_CREAT | os.O_EXCL | getattr(os, "O_BINARY", 0), 0o600)
    except OSError as exc:
        raise ChunkError(f"create file: {exc}") from exc
    handle = os.fdopen(fd, "r+b")
    try:
        handle.write(HEADER)
        handle.flush()
        os.fsync(handle.fileno())
    except OSError as exc:
        handle.close()
        raise ChunkError(f"write header: {exc}") from exc
    return handle


def _validate_header(handle) -> bytes:
    handle.seek(0)
    header = handle.read(HEADER_SIZE)
    if len(header) != HEADER_SIZE:
        raise ChunkError("validate os file: read header: file too short")
    if header[:len(MAGIC)] != MAGIC:
        raise ChunkError("validate os file: invalid magic number")
    (version,) = _VERSION.unpack_from(header, _VERSION_START)
    if version != _HEADER_VERSION:
        raise ChunkError("validate os file: invalid version")
    return header


def _load_valid_contents(handle) -> tuple[bytearray, int]:
    """Return the header plus every complete, intact record, and their count.

    Reading stops at the first truncated or corrupted record; whatever follows
    it is treated as an unfinished write and left out.
    """
    contents = bytearray(_validate_header(handle))
    handle.seek(DATA_START)
    count = 0
    while True:
        try:
            record = read_record(handle)
        except (EOFError, ChecksumMismatchError):
            return contents, count
        contents += record
        count += 1


class ChunkFile:
    """A chunk file of feed records. Safe to use from several threads."""

    def __init__(self, path: str, readonly_at_first: bool = False) -> None:
        exists = _check_path(path, readonly_at_first)
        self.path = path
        self._lock = threading.RLock()
        self._buffer: bytearray | None = None
        self._map: mmap.mmap | None = None
        self._append_offset = 0

        if exists:
            try:
                handle = open(path, "rb" if readonly_at_first else "r+b")
            except OSError as exc:
                raise ChunkError(f"load from existing: open file: {exc}") from exc
        else:
            handle = _create_file(path)

        try:
            contents, self._count = _load_valid_contents(handle)
            if readonly_at_first:
                self._map = mmap.mmap(handle.fileno(), 0, access=mmap.ACCESS_READ)
            else:
                self._buffer = contents
                self._append_offset = len(contents)
        except ChunkError:
            handle.close()
            raise
        except (OSError, ValueError) as exc:
            handle.close()
            raise ChunkError(f"open chunk file: {exc}") from exc

        self._file = handle
        self._readonly = readonly_at_first

    @property
    def readonly(self) -> bool:
        return self._readonly

    def ensure_readonly(self) -> None:
        """Switch to read-only mode, dropping the in-memory copy for a memory map."""
        if self._readonly:
            return
        with self._lock:
            if self._readonly:
                return
            try:
                mapped = mmap.mmap(self._file.fileno(), 0, access=mmap.ACCESS_READ)
            except (OSError, ValueError) as exc:
                raise ChunkError(f"mmap file: {exc}") from exc
            self._buffer = None
            self._map = mapped
            self._readonly = True

    def count(self) -> int:
        """Return the number of feeds in the file."""
        return self._count

    def __len__(self) -> int:
        return self._count

    def append(
        self,
        feeds: Iterable[Feed],
        on_success: Callable[[Feed, int], object] | None = None,
    ) -> None:
        """Write ``feeds`` to the end of the file and sync it to disk.

        ``on_success`` is then called with each feed and its offset in the file.
        Nothing is buffered between calls, so callers should batch feeds.
        """
        feeds = list(feeds)
        with self._lock:
            if self._readonly:
                raise ChunkError("file is readonly")

            start = self._append_offset
            offsets: list[int] = []
            records: list[bytes] = []
            position = start
            for i, feed in enumerate(feeds):
                try:
                    record = encode_record(feed)
                except RecordError as exc:
                    raise ChunkError(f"encode feeds: encode feed {i}: {exc}") from exc
                offsets.append(position)
                records.append(record)
                position += len(record)
            data = b"".join(records)

            try:
                self._file.seek(start)
                self._file.write(data)
                self._file.flush()
                os.fsync(self._file.fileno())
            except OSError as exc:
                # A partial write is overwritten by the next append.
                raise ChunkError(f"commit append to file: {exc}") from exc

            self._buffer += data
            self._append_offset = position
            self._count += len(feeds)

        if on_success is not None:
            for feed, offset in zip(feeds, offsets):
                on_success(feed, offset)

    def read(self, offset: int) -> Feed:
        """Return the feed whose record starts at ``offset``."""
        if offset < DATA_START:
            raise ChunkError("offset too small")
        if self._readonly:
            data = self._map
            if data is None or offset >= len(data):
                raise ChunkError("offset too large")
            return self._decode(data, offset)[0]
        with self._lock:
            if offset >= self._append_offset:
                raise ChunkError("offset too large")
            return self._decode(self._buffer, offset)[0]

    def __iter__(self) -> Iterator[tuple[Feed, int]]:
        """Yield every feed in the file together with its offset, in file order."""
        if self._readonly:
            data = self._map
            offset = DATA_START
            while data is not None and offset < len(data):
                feed, length = self._decode(data, offset)
                yield feed, offset
                offset += length
            return

        offset = DATA_START
        while True:
            with self._lock:
                if self._buffer is None:
                    # Switched to read-only mode meanwhile; the map holds the same records.
                    data = self._map
                    if data is None or offset >= len(data):
                        return
                else:
                    data = self._buffer
                    if offset >= self._append_offset:
                        return
                feed, length = self._decode(data, offset)
            yield feed, offset
            offset += length

    def range(self, callback: Callable[[Feed, int], object]) -> None:
        """Call ``callback(feed, offset)`` for every feed; its exceptions stop the walk."""
        for feed, offset in self:
            callback(feed, offset)

    @staticmethod
    def _decode(data, offset: int) -> tuple[Feed, int]:
        try:
            return decode_record(data, offset)
        except (EOFError, RecordError) as exc:
            raise ChunkError(f"read feed: {exc}") from exc

    def close(self) -> None:
        """Release the memory map and the underlying file."""
        with self._lock:
            if self._map is not None:
                self._map.close()
                self._map = None
            if self._file is not None:
                self._file.close()
                self._file = None
            self._buffer = None
            self._append_offset = 0

    def __enter__(self) -> ChunkFile:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()