import io
from datetime import datetime, timedelta, timezone

import pytest

from feedstore.codec import MAGIC, VERSION, IndexFormatError
from feedstore.primary import FeedRef, PrimaryIndex


def build(refs):
    index = PrimaryIndex()
    for feed_id, ref in refs.items():
        index.add(feed_id, ref)
    return index


@pytest.mark.parametrize(
    "existing, feed_id, ref, expected",
    [
        (
            {0: FeedRef(chunk=0, offset=0)},
            1,
            FeedRef(chunk=1, offset=100),
            {0: FeedRef(chunk=0, offset=0), 1: FeedRef(chunk=1, offset=100)},
        ),
        (
            {1: FeedRef(chunk=1, offset=100)},
            1,
            FeedRef(chunk=2, offset=200),
            {1: FeedRef(chunk=2, offset=200)},
        ),
    ],
    ids=["add single feed", "update existing feed"],
)
def test_add(existing, feed_id, ref, expected):
    index = build(existing)
    index.add(feed_id, ref)
    assert index.ids() == set(expected)
    for key, value in expected.items():
        assert index.search(key) == value


def test_search_existing():
    index = build({1: FeedRef(chunk=1, offset=100), 2: FeedRef(chunk=2, offset=200)})
    assert index.search(1) == FeedRef(chunk=1, offset=100)


def test_search_missing():
    index = build({1: FeedRef(chunk=1, offset=100)})
    assert index.search(2) is None


def test_add_normalizes_time_to_utc():
    offset_zone = timezone(timedelta(hours=8))
    moment = datetime(2025, 3, 2, 18, 0, tzinfo=offset_zone)
    index = build({1: FeedRef(chunk=1, offset=64, time=moment)})
    stored = index.search(1)
    assert stored.time == moment
    assert stored.time.tzinfo == timezone.utc


def test_count_and_ids():
    index = build({5: FeedRef(), 9: FeedRef(chunk=1)})
    assert index.count() == 2
    assert len(index) == 2
    assert index.ids() == {5, 9}


def test_encode_decode_round_trip():
    now = datetime.now(timezone.utc)
    original = build(
        {
            1: FeedRef(chunk=1, offset=100, time=now),
            2: FeedRef(chunk=2, offset=200, time=now),
        }
    )
    buf = io.BytesIO()
    original.encode_to(buf)
    buf.seek(0)

    decoded = PrimaryIndex()
    decoded.decode_from(buf)

    assert decoded.ids() == original.ids()
    for feed_id in original.ids():
        assert decoded.search(feed_id) == original.search(feed_id)


def test_encode_empty_index():
    buf = io.BytesIO()
    PrimaryIndex().encode_to(buf)
    assert buf.getvalue() == MAGIC + bytes([VERSION]) + bytes(8)


def test_decode_replaces_existing_entries():
    buf = io.BytesIO()
    build({3: FeedRef(chunk=3, offset=300)}).encode_to(buf)
    buf.seek(0)
    index = build({7: FeedRef(chunk=7, offset=700)})
    index.decode_from(buf)
    assert index.ids() == {3}


def test_decode_rejects_bad_header():
    with pytest.raises(IndexFormatError):
        PrimaryIndex().decode_from(io.BytesIO(b"\x00" * 32))


def test_decode_truncated_entry():
    buf = io.BytesIO()
    build({1: FeedRef(chunk=1, offset=100)}).encode_to(buf)
    index = PrimaryIndex()
    with pytest.raises(EOFError):
        index.decode_from(io.BytesIO(buf.getvalue()[:-4]))
    assert index.count() == 0