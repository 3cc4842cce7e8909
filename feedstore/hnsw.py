"""Building blocks of a hierarchical navigable small world graph.

Nodes carry one or more vectors (chunks of a feed) and a friend list per
layer. Similarity between two nodes is the best cosine similarity between
any pair of their vectors.
"""

from __future__ import annotations

import heapq
import itertools
import math
import random
import struct
from collections.abc import Sequence
from dataclasses import dataclass, field

_F32 = struct.Struct("<f")


def _f32(value: float) -> float:
    """Round ``value`` to the nearest float32."""
    return _F32.unpack(_F32.pack(value))[0]


def cosine_similarity(x: Sequence[float], y: Sequence[float]) -> float:
    """Return the cosine similarity of two equally long vectors."""
    if len(x) != len(y):
        raise ValueError("x and y must have the same length")
    dot = sum(a * b for a, b in zip(x, y))
    x_norm = sum(a * a for a in x)
    y_norm = sum(b * b for b in y)
    denominator = math.sqrt(x_norm * y_norm)
    if denominator == 0:
        return math.nan if dot == 0 else math.copysign(math.inf, dot)
    return dot / denominator


def score(x: Sequence[Sequence[float]], y: Sequence[Sequence[float]]) -> float:
    """Return the highest similarity between any vector of ``x`` and any of ``y``.

    The result is never below zero.
    """
    best_score = 0.0
    for a in x:
        for b in y:
            similarity = cosine_similarity(a, b)
            if similarity > best_score:
                best_score = similarity
    return best_score


def quantize(vector: Sequence[float]) -> tuple[list[int], float, float]:
    """Quantize ``vector`` to signed bytes.

    Returns the quantized values with the minimum and the scale needed to
    restore them with :func:`dequantize`.
    """
    if not vector:
        return [], 0.0, 0.0
    minimum = _f32(min(vector))
    scale = _f32((max(vector) - minimum) / 255)
    if scale == 0:
        return [-128] * len(vector), minimum, 0.0
    quantized = [
        max(-128, min(127, round((value - minimum) / scale) - 128)) for value in vector
    ]
    return quantized, minimum, scale


def dequantize(quantized: Sequence[int], minimum: float, scale: float) -> list[float]:
    """Restore a vector quantized by :func:`quantize`."""
    return [_f32((q + 128) * scale + minimum) for q in quantized]


@dataclass(eq=False)
class Node:
    """A graph node: a feed id, its vectors and its friends on each layer."""

    id: int
    vectors: list[list[float]]
    nodes: dict[int, Node] = field(default_factory=dict, repr=False)
    friends_on_layers: list[dict[int, float]] = field(default_factory=list)

    @property
    def dimension(self) -> int:
        return len(self.vectors[0])

    def friends(self, layer: int) -> dict[int, float]:
        """Return the friends on ``layer``, creating the layer's list if needed."""
        while len(self.friends_on_layers) <= layer:
            self.friends_on_layers.append({})
        return self.friends_on_layers[layer]

    def make_friend(self, friend: Node, layer: int, similarity: float, max_friends: int) -> None:
        """Befriend ``friend`` on ``layer``, pruning if the layer exceeds ``max_friends``."""
        self.friends(layer)[friend.id] = similarity
        self._try_remove_friend(layer, max_friends)

    def _try_remove_friend(self, layer: int, max_friends: int) -> None:
        friends = self.friends(layer)
        if len(friends) <= max_friends:
            return
        least = self._least_similar_friend(layer)
        if least is None:
            return
        least_friends = least.friends(layer)
        # Keep the friendship while the other side has few friends.
        if len(least_friends) < max_friends // 4 + 1:
            return
        friends.pop(least.id, None)
        least_friends.pop(self.id, None)
        least._try_remake_friend(layer, max_friends)

    def _try_remake_friend(self, layer: int, max_friends: int) -> None:
        friends = self.friends(layer)
        if len(friends) > max_friends // 2 + 1:
            return
        max_tries = max_friends // 4 + 1
        for friend_id in itertools.islice(list(friends), max_tries):
            friend = self.nodes.get(friend_id)
            if friend is None:
                continue
            if self._find_new_friend_from_friend_of_friend(friend, friends, layer, max_friends):
                return

    def _find_new_friend_from_friend_of_friend(
        self,
        friend: Node,
        friends: dict[int, float],
        layer: int,
        max_friends: int,
    ) -> bool:
        similar_circle_threshold = 0.8
        min_sample_count = 0.5
        shared = 0.0
        total = 0.0
        max_preference = 3 if len(friends) >= 5 else 1
        skipped_full = 0

        for candidate_id in list(friend.friends(layer)):
            candidate = self.nodes.get(candidate_id)
            if candidate is None or candidate.id == self.id:
                continue
            total += 1

            if candidate.id in friends:
                shared += 1
                # A very similar social circle probably knows everyone already.
                if total >= min_sample_count and shared / total >= similar_circle_threshold:
                    return False
                continue

            if len(candidate.friends(layer)) >= max_friends and skipped_full < max_preference:
                skipped_full += 1
                continue

            try:
                similarity = score(self.vectors, candidate.vectors)
            except ValueError:
                return False
            friends[candidate.id] = similarity
            candidate.friends(layer)[self.id] = similarity
            return True

        return False

    def _least_similar_friend(self, layer: int) -> Node | None:
        friends = self.friends(layer)
        if not friends:
            return None
        friend_id = min(friends, key=friends.__getitem__)
        return self.nodes.get(friend_id)


@dataclass(eq=False)
class SimilarNode:
    """A node together with its similarity to a query."""

    node: Node
    score: float

    @property
    def id(self) -> int:
        return self.node.id


def best(similar_nodes: Sequence[SimilarNode]) -> SimilarNode:
    """Return the most similar entry; the first one wins ties."""
    if not similar_nodes:
        raise ValueError("no similar nodes")
    result = similar_nodes[0]
    for candidate in similar_nodes:
        if candidate.score > result.score:
            result = candidate
    return result


@dataclass(eq=False)
class Layer:
    """One layer of the graph: the ids of the nodes present on it."""

    level: int
    nodes: dict[int, Node] = field(default_factory=dict, repr=False)
    node_ids: list[int] = field(default_factory=list)

    def random_entry(self) -> Node | None:
        """Return a random node of this layer, or None if it is empty."""
        if not self.node_ids:
            return None
        return self.nodes.get(random.choice(self.node_ids))

    def search(
        self,
        queries: Sequence[Sequence[float]],
        entry: Node,
        ef: int,
        top_k: int,
        threshold: float,
    ) -> list[SimilarNode]:
        """Greedily search this layer from ``entry``.

        Returns at most ``top_k`` nodes scoring at least ``threshold``, best first.
        """
        counter = itertools.count()
        candidates: list[tuple[float, int, SimilarNode]] = []  # max-heap by score
        result: list[tuple[float, int, SimilarNode]] = []  # min-heap by score
        visited = {entry.id}

        heapq.heappush(candidates, (-score(queries, entry.vectors), next(counter),
                                    SimilarNode(entry, score(queries, entry.vectors))))

        while candidates:
            _, _, current = heapq.heappop(candidates)

            if current.score >= threshold and top_k > 0:
                item = (current.score, next(counter), current)
                if len(result) < top_k:
                    heapq.heappush(result, item)
                elif current.score > result[0][0]:
                    heapq.heapreplace(result, item)

            has_better = False
            for friend_id in list(current.node.friends(self.level)):
                friend = self.nodes.get(friend_id)
                if friend is None or friend.id in visited:
                    continue
                visited.add(friend.id)
                friend_score = score(queries, friend.vectors)
                if result and friend_score > result[0][0]:
                    has_better = True
                if ef > 0 and len(candidates) >= ef:
                    candidates.pop()  # Drop a leaf to keep the heap bounded.
                heapq.heappush(
                    candidates, (-friend_score, next(counter), SimilarNode(friend, friend_score))
                )

            if not has_better and len(result) >= top_k:
                break

        return [item[2] for item in sorted(result, key=lambda item: (-item[0], item[1]))]