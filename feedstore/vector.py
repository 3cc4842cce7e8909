"""Vector index: approximate nearest-neighbour search over feed embeddings.

Each feed may carry several vectors (one per chunk of its content). A feed
matches a query when any of its vectors is similar to it, and its score is
the best of those similarities.
"""

from __future__ import annotations

import math
import random
import struct
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from typing import BinaryIO

from feedstore.codec import Codec, read_exact, read_header, write_header
from feedstore.hnsw import Layer, Node, best, dequantize, quantize

_U32 = struct.Struct("<I")
_U64 = struct.Struct("<Q")
_F32 = struct.Struct("<f")
_CONFIG = struct.Struct("<IfII")  # M, Ml, EfSearch, EfConstruct
_FRIEND = struct.Struct("<Qf")


def _read(stream: BinaryIO, fmt: struct.Struct):
    return fmt.unpack(read_exact(stream, fmt.size))


@dataclass
class VectorConfig:
    """Graph parameters.

    ``m`` is the maximum number of neighbours per node (twice that on layer
    0), ``ml`` the level generation factor, and ``ef_search`` and
    ``ef_construct`` the candidate list sizes when searching and inserting.
    """

    m: int = 0
    ml: float = 0.0
    ef_search: int = 0
    ef_construct: int = 0

    def validate(self) -> None:
        """Fill in defaults for unset or non-positive parameters."""
        if self.m <= 0:
            self.m = 8
        if self.ml <= 0:
            self.ml = 0.2  # About 1/ln(32).
        if self.ef_search <= 0:
            self.ef_search = 32
        if self.ef_construct <= 0:
            self.ef_construct = 64


class VectorIndex(Codec):
    """Thread-safe multi-layer graph index from feed id to vectors."""

    def __init__(self, config: VectorConfig | None = None) -> None:
        self.config = config if config is not None else VectorConfig()
        self.config.validate()
        self._nodes: dict[int, Node] = {}
        self._layers: list[Layer] = [Layer(level=0, nodes=self._nodes)]
        self._lock = threading.RLock()

    @property
    def nodes(self) -> dict[int, Node]:
        """A snapshot of the indexed nodes by feed id."""
        with self._lock:
            return dict(self._nodes)

    @property
    def layers(self) -> list[Layer]:
        """A snapshot of the graph layers, lowest first."""
        with self._lock:
            return list(self._layers)

    def __len__(self) -> int:
        with self._lock:
            return len(self._nodes)

    def __contains__(self, feed_id: object) -> bool:
        with self._lock:
            return feed_id in self._nodes

    def search(self, query: Sequence[float], threshold: float, limit: int) -> dict[int, float]:
        """Return up to ``limit`` feed ids scoring at least ``threshold``, with their scores.

        Results are approximate: some similar feeds may be missed.
        """
        query = [float(v) for v in query]
        with self._lock:
            example = self._layers[0].random_entry()
            if example is not None and example.dimension != len(query):
                raise ValueError("vector dimension mismatch")

            entry: Node | None = None
            entry_level = 0
            for level in range(len(self._layers) - 1, -1, -1):
                entry = self._layers[level].random_entry()
                if entry is not None:
                    entry_level = level
                    break
            if entry is None:
                return {}

            queries = [query]
            for level in range(entry_level, 0, -1):
                similar = self._layers[level].search(
                    queries, entry, self.config.ef_search, 1, 0.0
                )
                entry = best(similar).node

            similar = self._layers[0].search(
                queries, entry, self.config.ef_search, max(limit, 0), threshold
            )
            return {item.id: item.score for item in similar}

    def add(self, feed_id: int, vectors: Sequence[Sequence[float]]) -> None:
        """Index ``vectors`` under ``feed_id``; an already indexed id is left unchanged."""
        vectors = [[float(v) for v in vector] for vector in vectors]
        if not vectors or not vectors[0]:
            raise ValueError("at least one non-empty vector is required")
        with self._lock:
            if feed_id in self._nodes:
                return
            example = self._layers[0].random_entry()
            if example is not None and example.dimension != len(vectors[0]):
                raise ValueError("vector dimension mismatch")

            insert_level, max_level = self._random_insert_level()
            new_node = Node(
                id=feed_id,
                vectors=vectors,
                nodes=self._nodes,
                friends_on_layers=[{} for _ in range(insert_level + 1)],
            )

            entry: Node | None = None
            for level in range(max_level, -1, -1):
                if entry is None:
                    entry = self._layers[level].random_entry()
                    if entry is None:
                        if level <= insert_level:
                            self._nodes[feed_id] = new_node
                            self._layers[level].node_ids.append(feed_id)
                        continue
                entry = self._insert_and_link(level, new_node, entry, insert_level)

    def _insert_and_link(self, level: int, new_node: Node, entry: Node, insert_level: int) -> Node:
        max_friends = self.config.m * 2 if level == 0 else self.config.m
        similar = self._layers[level].search(
            new_node.vectors, entry, self.config.ef_construct, max_friends, 0.0
        )
        next_entry = best(similar).node
        if level > insert_level:
            return next_entry

        self._nodes[new_node.id] = new_node
        self._layers[level].node_ids.append(new_node.id)
        new_node.friends_on_layers[level] = {}
        for item in similar:
            new_node.make_friend(item.node, level, item.score, max_friends)
            item.node.make_friend(new_node, level, item.score, max_friends)
        return next_entry

    def _max_level(self) -> int:
        count = len(self._layers[0].node_ids)
        if count == 0:
            top = 1
        else:
            levels = math.log(count) / math.log(1 / self.config.ml)
            top = int(math.floor(levels + 0.5)) + 1
        for level in range(len(self._layers), top):
            self._layers.append(Layer(level=level, nodes=self._nodes))
        return top - 1

    def _random_insert_level(self) -> tuple[int, int]:
        top = self._max_level()
        for level in range(top):
            if random.random() > self.config.ml:
                return level, top
        return top, top

    def encode_to(self, stream: BinaryIO) -> None:
        with self._lock:
            write_header(stream)
            cfg = self.config
            stream.write(_CONFIG.pack(cfg.m, cfg.ml, cfg.ef_search, cfg.ef_construct))

            stream.write(_U64.pack(len(self._nodes)))
            for node in self._nodes.values():
                stream.write(_U64.pack(node.id))
                stream.write(_U32.pack(len(node.vectors)))
                stream.write(_U32.pack(node.dimension))
                for vector in node.vectors:
                    quantized, minimum, scale = quantize(vector)
                    stream.write(_F32.pack(minimum))
                    stream.write(_F32.pack(scale))
                    stream.write(struct.pack(f"<{len(quantized)}b", *quantized))
                stream.write(_U32.pack(len(node.friends_on_layers)))
                for friends in node.friends_on_layers:
                    stream.write(_U32.pack(len(friends)))
                    for friend_id, similarity in friends.items():
                        stream.write(_FRIEND.pack(friend_id, similarity))

            stream.write(_U32.pack(len(self._layers)))
            for layer in self._layers:
                stream.write(_U32.pack(len(layer.node_ids)))
                for node_id in layer.node_ids:
                    stream.write(_U64.pack(node_id))

    def decode_from(self, stream: BinaryIO) -> None:
        read_header(stream)
        m, ml, ef_search, ef_construct = _read(stream, _CONFIG)
        config = VectorConfig(m=m, ml=ml, ef_search=ef_search, ef_construct=ef_construct)

        nodes: dict[int, Node] = {}
        (node_count,) = _read(stream, _U64)
        for _ in range(node_count):
            (node_id,) = _read(stream, _U64)
            (chunks,) = _read(stream, _U32)
            (dimension,) = _read(stream, _U32)
            values = struct.Struct(f"<{dimension}b")
            vectors = []
            for _ in range(chunks):
                (minimum,) = _read(stream, _F32)
                (scale,) = _read(stream, _F32)
                vectors.append(dequantize(_read(stream, values), minimum, scale))
            (layer_count,) = _read(stream, _U32)
            friends_on_layers = []
            for _ in range(layer_count):
                (friend_count,) = _read(stream, _U32)
                friends = {}
                for _ in range(friend_count):
                    friend_id, similarity = _read(stream, _FRIEND)
                    friends[friend_id] = similarity
                friends_on_layers.append(friends)
            nodes[node_id] = Node(
                id=node_id, vectors=vectors, nodes=nodes, friends_on_layers=friends_on_layers
            )

        layers: list[Layer] = []
        (total_layers,) = _read(stream, _U32)
        for level in range(total_layers):
            (count,) = _read(stream, _U32)
            ids = [_read(stream, _U64)[0] for _ in range(count)]
            layers.append(Layer(level=level, nodes=nodes, node_ids=ids))
        if not layers:
            layers.append(Layer(level=0, nodes=nodes))

        with self._lock:
            self.config = config
            self._nodes = nodes
            self._layers = layers