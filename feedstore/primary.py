"""Primary index: maps feed ids to their location in the chunk files."""

from __future__ import annotations

import struct
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import BinaryIO

from feedstore.codec import Codec, read_exact, read_header, write_header

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MICROSECOND = timedelta(microseconds=1)
_COUNT = struct.Struct("<Q")
_ENTRY = struct.Struct("<QIQq")  # id, chunk, offset, time in Unix nanoseconds


def _to_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


@dataclass(frozen=True)
class FeedRef:
    """Where a feed lives: chunk number, byte offset within it, and feed time."""

    chunk: int = 0
    offset: int = 0
    time: datetime = field(default=_EPOCH)


class PrimaryIndex(Codec):
    """Thread-safe mapping from feed id to :class:`FeedRef`."""

    def __init__(self) -> None:
        self._refs: dict[int, FeedRef] = {}
        self._lock = threading.RLock()

    def search(self, feed_id: int) -> FeedRef | None:
        """Return the location of ``feed_id``, or None if it is not indexed."""
        with self._lock:
            return self._refs.get(feed_id)

    def add(self, feed_id: int, ref: FeedRef) -> None:
        """Index ``ref`` under ``feed_id``, replacing any earlier location."""
        ref = replace(ref, time=_to_utc(ref.time))
        with self._lock:
            self._refs[feed_id] = ref

    def ids(self) -> set[int]:
        """Return all indexed feed ids."""
        with self._lock:
            return set(self._refs)

    def count(self) -> int:
        """Return the number of indexed feeds."""
        with self._lock:
            return len(self._refs)

    def __len__(self) -> int:
        return self.count()

    def encode_to(self, stream: BinaryIO) -> None:
        with self._lock:
            write_header(stream)
            stream.write(_COUNT.pack(len(self._refs)))
            for feed_id, ref in self._refs.items():
                nanos = (ref.time - _EPOCH) // _MICROSECOND * 1000
                stream.write(_ENTRY.pack(feed_id, ref.chunk, ref.offset, nanos))

    def decode_from(self, stream: BinaryIO) -> None:
        with self._lock:
            read_header(stream)
            (count,) = _COUNT.unpack(read_exact(stream, _COUNT.size))
            refs: dict[int, FeedRef] = {}
            for _ in range(count):
                feed_id, chunk, offset, nanos = _ENTRY.unpack(read_exact(stream, _ENTRY.size))
                moment = _EPOCH + timedelta(microseconds=nanos // 1000)
                refs[feed_id] = FeedRef(chunk=chunk, offset=offset, time=moment)
            self._refs = refs