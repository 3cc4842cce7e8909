"""Inverted index: maps label key and value pairs to the feed ids that carry them."""

from __future__ import annotations

import struct
import threading
from collections.abc import Iterable
from dataclasses import dataclass
from typing import BinaryIO

from feedstore.codec import Codec, read_exact, read_header, write_header
from feedstore.encoding import Label, read_string, write_string

MAX_LABEL_VALUE_LENGTH = 64

_U32 = struct.Struct("<I")
_U64 = struct.Struct("<Q")


@dataclass(frozen=True)
class LabelFilter:
    """Matches feeds by one label.

    With a non-empty ``value``, ``equal`` selects feeds having exactly that
    key and value; otherwise feeds lacking that exact pair. With an empty
    ``value``, ``equal`` selects feeds without the label at all; otherwise
    feeds having it with any value.
    """

    label: str
    value: str = ""
    equal: bool = True


class InvertedIndex(Codec):
    """Thread-safe label index over feed ids."""

    def __init__(self) -> None:
        self._postings: dict[str, dict[str, set[int]]] = {}
        self._ids: set[int] = set()
        self._lock = threading.RLock()

    def search(self, matcher: LabelFilter) -> set[int]:
        """Return the ids of the feeds that ``matcher`` selects."""
        with self._lock:
            if matcher.value == "":
                return self._search_empty_value(matcher.label, matcher.equal)
            return self._search_value(matcher)

    def add(self, feed_id: int, labels: Iterable[Label]) -> None:
        """Index ``feed_id`` under its labels.

        Labels with an empty key or value, and values longer than
        ``MAX_LABEL_VALUE_LENGTH`` bytes, are not indexed; the id is still
        recorded as known.
        """
        with self._lock:
            for label in labels:
                if not label.key or not label.value:
                    continue
                if len(label.value.encode("utf-8")) > MAX_LABEL_VALUE_LENGTH:
                    continue
                values = self._postings.setdefault(label.key, {})
                values.setdefault(label.value, set()).add(feed_id)
            self._ids.add(feed_id)

    def _search_empty_value(self, label: str, equal: bool) -> set[int]:
        with_label: set[int] = set()
        for ids in self._postings.get(label, {}).values():
            with_label |= ids
        if not equal:
            return with_label
        return self._ids - with_label

    def _search_value(self, matcher: LabelFilter) -> set[int]:
        matching = self._postings.get(matcher.label, {}).get(matcher.value, set())
        if matcher.equal:
            return set(matching)
        return self._ids - matching

    def encode_to(self, stream: BinaryIO) -> None:
        with self._lock:
            write_header(stream)
            stream.write(_U32.pack(len(self._ids)))
            stream.write(_U32.pack(len(self._postings)))
            for label, values in self._postings.items():
                write_string(stream, label)
                stream.write(_U32.pack(len(values)))
                for value, ids in values.items():
                    write_string(stream, value)
                    stream.write(_U32.pack(len(ids)))
                    for feed_id in ids:
                        stream.write(_U64.pack(feed_id))

    def decode_from(self, stream: BinaryIO) -> None:
        read_header(stream)
        read_exact(stream, _U32.size)  # Total id count; the ids come from the entries.
        (label_count,) = _U32.unpack(read_exact(stream, _U32.size))
        postings: dict[str, dict[str, set[int]]] = {}
        all_ids: set[int] = set()
        for _ in range(label_count):
            label = read_string(stream)
            (value_count,) = _U32.unpack(read_exact(stream, _U32.size))
            values = postings.setdefault(label, {})
            for _ in range(value_count):
                value = read_string(stream)
                (id_count,) = _U32.unpack(read_exact(stream, _U32.size))
                ids = {
                    _U64.unpack(read_exact(stream, _U64.size))[0]
                    for _ in range(id_count)
                }
                values[value] = ids
                all_ids |= ids
        with self._lock:
            self._postings = postings
            self._ids = all_ids