# feedstore

Embedded building blocks for storing and searching feeds. Everything is
written in pure Python with no third-party dependencies.

- **Chunk files** (`feedstore.chunk.ChunkFile`): append-only files of
  checksummed feed records behind a 64-byte header. A file opens read-write
  (its valid records kept in memory) or read-only (served from a memory
  map), and `ensure_readonly()` switches a read-write file to read-only.
  On opening, any trailing record that is truncated or fails its checksum
  is left out. Errors are raised as `ChunkError`.
- **Record format** (`feedstore.encoding`): `Feed`, `Label`,
  `encode_record`, `decode_record` and `read_record`. A record is a u32
  payload length, a CRC-32 of the payload, then the payload (id, time in
  Unix nanoseconds, labels, float32 vectors), all little endian.
- **Primary index** (`feedstore.primary.PrimaryIndex`): maps a feed id to
  its location, a `FeedRef` (chunk, offset, time in UTC).
- **Inverted index** (`feedstore.inverted.InvertedIndex`): finds feed ids
  by label with a `LabelFilter`. Labels with an empty key or value, or a
  value longer than 64 bytes, are not indexed.
- **Vector index** (`feedstore.vector.VectorIndex`): a multi-layer graph
  (HNSW) for approximate cosine-similarity search over feeds that carry one
  or more vectors; a feed's score is the best similarity of any of its
  vectors. Parameters are set with `VectorConfig`. Vectors are quantized to
  8 bits when the index is saved, so a decoded index holds approximations.
- **Key-value store** (`feedstore.kv.KVStore`): byte keys to byte values in
  a directory (an SQLite file `kv.db`), with a per-key time-to-live in
  whole seconds. A missing or expired key raises `KeyNotFoundError`.

The three indexes implement `feedstore.codec.Codec`: `encode_to(stream)`
writes them to a binary stream and `decode_from(stream)` replaces their
contents with what was written. A stream with the wrong header raises
`IndexFormatError`.

## Installation

```
pip install .
```

## Example

```python
import io
from datetime import datetime, timezone

from feedstore.chunk import ChunkFile
from feedstore.encoding import Feed, Label
from feedstore.inverted import InvertedIndex, LabelFilter
from feedstore.primary import FeedRef, PrimaryIndex
from feedstore.vector import VectorIndex

feed = Feed(
    id=1,
    time=datetime.now(timezone.utc),
    labels=[Label("category", "tech")],
    vectors=[[1.0, 0.0, 0.0]],
)

primary = PrimaryIndex()
inverted = InvertedIndex()
vectors = VectorIndex()

def indexed(stored, offset):
    primary.add(stored.id, FeedRef(chunk=0, offset=offset, time=stored.time))
    inverted.add(stored.id, stored.labels)
    vectors.add(stored.id, stored.vectors)

with ChunkFile("data.chunk", readonly_at_first=False) as chunk:
    chunk.append([feed], indexed)
    ref = primary.search(1)
    print(chunk.read(ref.offset).labels)
    for stored, offset in chunk:
        print(stored.id, offset)

print(inverted.search(LabelFilter(label="category", value="tech", equal=True)))
print(vectors.search([1.0, 0.0, 0.0], threshold=0.9, limit=5))

buffer = io.BytesIO()
primary.encode_to(buffer)
buffer.seek(0)
restored = PrimaryIndex()
restored.decode_from(buffer)
```

`LabelFilter` with a non-empty `value` selects feeds having (or, with
`equal=False`, lacking) that exact key and value; with an empty `value` it
selects feeds without the label at all (or, with `equal=False`, with the
label at any value).

The key-value store:

```python
from feedstore.kv import KVStore, KeyNotFoundError

with KVStore("./data/kv") as store:
    store.set(b"last-run", b"2025-03-03", ttl=3600)
    print(store.get(b"last-run"))
    try:
        store.get(b"missing")
    except KeyNotFoundError:
        pass
```

## What it does not do

These are library pieces only. There is no command, no server, and no
component that ties chunk files and indexes together into time-based
blocks, moves old blocks to read-only storage or deletes expired ones; a
caller arranges that. The package does not compute embeddings: vectors must
be supplied with each feed.

## Running the tests

```
pip install .[test]
pytest
```