import io
import struct
import zlib
from datetime import datetime, timezone

import pytest

from feedstore.encoding import (
    ChecksumMismatchError,
    Feed,
    Label,
    RecordError,
    decode_record,
    encode_record,
    read_record,
    read_string,
    write_string,
)


def make_feed(feed_id=1, **overrides):
    values = dict(
        id=feed_id,
        time=datetime(2025, 3, 2, 11, 0, 0, 123456, tzinfo=timezone.utc),
        labels=[Label("test", "value"), Label("title", "héllo wörld")],
        vectors=[[1.0, 2.0, 3.0], [4.0, 5.0, 6.0]],
    )
    values.update(overrides)
    return Feed(**values)


def test_round_trip():
    feed = make_feed()
    decoded, length = decode_record(encode_record(feed))
    assert decoded == feed
    assert length == len(encode_record(feed))


def test_record_header_describes_payload():
    record = encode_record(make_feed())
    length, checksum = struct.unpack("<II", record[:8])
    assert length == len(record) - 8
    assert checksum == zlib.crc32(record[8:])


def test_payload_starts_with_id_little_endian():
    record = encode_record(make_feed(feed_id=7))
    assert record[8:16] == (7).to_bytes(8, "little")


def test_decoded_time_is_utc():
    feed = make_feed(time=datetime(2025, 1, 1, 12, 0, 0))
    decoded, _ = decode_record(encode_record(feed))
    assert decoded.time == datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
    assert decoded.time.tzinfo == timezone.utc


def test_empty_labels_and_vectors_round_trip():
    feed = make_feed(labels=[], vectors=[])
    decoded, _ = decode_record(encode_record(feed))
    assert decoded.labels == []
    assert decoded.vectors == []


def test_decode_at_offset():
    first = encode_record(make_feed(1))
    second = encode_record(make_feed(2))
    data = first + second
    decoded, length = decode_record(data, len(first))
    assert decoded.id == 2
    assert length == len(second)


def test_read_record_sequence_from_stream():
    records = [encode_record(make_feed(i)) for i in (1, 2, 3)]
    stream = io.BytesIO(b"".join(records))
    assert [read_record(stream) for _ in records] == records
    with pytest.raises(EOFError):
        read_record(stream)


def test_checksum_mismatch_detected():
    record = bytearray(encode_record(make_feed()))
    record[-1] ^= 0xFF
    with pytest.raises(ChecksumMismatchError):
        decode_record(bytes(record))
    with pytest.raises(ChecksumMismatchError):
        read_record(io.BytesIO(bytes(record)))


def test_checksum_mismatch_is_record_error():
    record = bytearray(encode_record(make_feed()))
    record[10] ^= 0x01
    with pytest.raises(RecordError):
        decode_record(bytes(record))


def test_truncated_record_raises_eof():
    record = encode_record(make_feed())
    with pytest.raises(EOFError):
        decode_record(record[:-3])
    with pytest.raises(EOFError):
        read_record(io.BytesIO(record[:-3]))
    with pytest.raises(EOFError):
        decode_record(record[:4])


def test_inconsistent_vector_dimension_rejected():
    feed = make_feed(vectors=[[1.0, 2.0], [1.0]])
    with pytest.raises(RecordError, match="inconsistent dimension"):
        encode_record(feed)


def test_negative_id_rejected():
    with pytest.raises(RecordError):
        encode_record(make_feed(feed_id=-1))


def test_write_string_wire_format():
    buf = io.BytesIO()
    write_string(buf, "hi")
    assert buf.getvalue() == b"\x02\x00\x00\x00hi"


def test_string_round_trip():
    buf = io.BytesIO()
    for text in ("", "category", "日本語"):
        write_string(buf, text)
    buf.seek(0)
    assert [read_string(buf) for _ in range(3)] == ["", "category", "日本語"]


def test_read_string_truncated():
    buf = io.BytesIO()
    write_string(buf, "category")
    with pytest.raises(EOFError):
        read_string(io.BytesIO(buf.getvalue()[:-1]))