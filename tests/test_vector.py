import io
import random

import pytest

from feedstore.codec import IndexFormatError
from feedstore.vector import VectorConfig, VectorIndex

SEARCH_DATA = {
    1: [[1.0, 0.0, 0.0]],
    2: [[0.8, 1.0, 0.0]],
    3: [[0.8, 0.1, 0.1], [0.7, 0.1, 0.9]],
}


@pytest.fixture(autouse=True)
def _seed():
    random.seed(1234)


def build(data):
    index = VectorIndex()
    for feed_id, vectors in data.items():
        index.add(feed_id, vectors)
    return index


@pytest.mark.parametrize(
    "limit, expected",
    [
        (5, {1: 1.0, 3: 0.9847}),
        (1, {1: 1.0}),
    ],
)
def test_search_similar(limit, expected):
    index = build(SEARCH_DATA)
    result = index.search([1.0, 0.0, 0.0], 0.9, limit)
    assert set(result) == set(expected)
    for feed_id, value in expected.items():
        assert result[feed_id] == pytest.approx(value, abs=0.01)


def test_search_dimension_mismatch():
    index = build({1: [[1.0, 0.0, 0.0]]})
    with pytest.raises(ValueError, match="vector dimension mismatch"):
        index.search([1.0, 0.0], 0.8, 10)


def test_search_empty_index():
    assert VectorIndex().search([1.0, 0.0, 0.0], 0.0, 10) == {}


def test_add_to_empty_index():
    index = VectorIndex()
    index.add(1, [[1.0, 0.0, 0.0]])
    assert index.nodes[1].vectors == [[1.0, 0.0, 0.0]]
    assert 1 in index.layers[0].node_ids


def test_add_second_vector_makes_friends():
    index = build({1: [[1.0, 0.0, 0.0]]})
    index.add(2, [[0.0, 1.0, 0.0]])
    node = index.nodes[2]
    assert node.vectors == [[0.0, 1.0, 0.0]]
    assert 2 in index.layers[0].node_ids
    assert any(friends for friends in node.friends_on_layers)


def test_add_dimension_mismatch():
    index = build({1: [[1.0, 0.0, 0.0]]})
    with pytest.raises(ValueError, match="vector dimension mismatch"):
        index.add(2, [[1.0, 0.0]])
    assert 2 not in index


def test_add_existing_id_is_ignored():
    index = build({1: [[1.0, 0.0, 0.0]]})
    index.add(1, [[0.0, 1.0, 0.0]])
    assert index.nodes[1].vectors == [[1.0, 0.0, 0.0]]
    assert len(index) == 1


def test_add_empty_vectors_rejected():
    with pytest.raises(ValueError):
        VectorIndex().add(1, [])


def test_config_defaults():
    config = VectorConfig()
    config.validate()
    assert (config.m, config.ml, config.ef_search, config.ef_construct) == (8, 0.2, 32, 64)


def test_config_keeps_given_values():
    config = VectorConfig(m=4, ml=0.5, ef_search=10, ef_construct=20)
    config.validate()
    assert (config.m, config.ml, config.ef_search, config.ef_construct) == (4, 0.5, 10, 20)


def test_encode_decode_preserves_search():
    data = {1: [[1.0, 0.0, 0.0]], 2: [[0.0, 1.0, 0.0]]}
    original = build(data)
    buf = io.BytesIO()
    original.encode_to(buf)
    buf.seek(0)
    decoded = VectorIndex()
    decoded.decode_from(buf)

    for vectors in data.values():
        for vector in vectors:
            original_results = original.search(vector, 0.99, 10)
            decoded_results = decoded.search(vector, 0.99, 10)
            assert set(decoded_results) == set(original_results)
            for feed_id, value in original_results.items():
                assert decoded_results[feed_id] == pytest.approx(value, abs=1e-6)


def test_decode_restores_structure_and_config():
    original = VectorIndex(VectorConfig(m=4, ml=0.25, ef_search=16, ef_construct=24))
    original.add(1, [[1.0, 0.0, 0.0]])
    original.add(2, [[0.0, 1.0, 0.0], [0.5, 0.5, 0.0]])
    buf = io.BytesIO()
    original.encode_to(buf)
    buf.seek(0)
    decoded = VectorIndex()
    decoded.decode_from(buf)

    assert decoded.config.m == 4
    assert decoded.config.ef_search == 16
    assert decoded.config.ef_construct == 24
    assert decoded.config.ml == pytest.approx(0.25)
    assert set(decoded.nodes) == {1, 2}
    assert len(decoded.layers) == len(original.layers)
    assert decoded.nodes[2].vectors[1] == pytest.approx([0.5, 0.5, 0.0], abs=0.01)
    assert decoded.nodes[1].vectors[0] == pytest.approx([1.0, 0.0, 0.0], abs=0.01)


def test_decode_rejects_bad_magic():
    with pytest.raises(IndexFormatError):
        VectorIndex().decode_from(io.BytesIO(b"\x00" * 40))


def test_search_respects_limit_and_threshold():
    rng = random.Random(7)
    index = VectorIndex()
    for feed_id in range(60):
        index.add(feed_id, [[rng.uniform(-1, 1) for _ in range(8)]])
    query = [rng.uniform(-1, 1) for _ in range(8)]
    result = index.search(query, 0.2, 5)
    assert len(result) <= 5
    assert all(value >= 0.2 for value in result.values())
    assert set(result) <= set(range(60))
    assert len(index) == 60


def test_search_finds_own_vector_in_small_index():
    index = build(SEARCH_DATA)
    result = index.search([0.8, 1.0, 0.0], 0.99, 10)
    assert result == {2: pytest.approx(1.0, abs=1e-6)}