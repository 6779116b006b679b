"""
In-memory HNSW-style approximate nearest neighbor index.

Multi-layer proximity graph over embedding vectors. Each node is assigned a
random top layer; upper layers are sparse express lanes used to find a good
starting point, layer 0 holds every node. Distance is ``1 - cosine
similarity`` so smaller means more similar.

The level sampler is seeded, so the graph shape is reproducible for a given
insertion order within this implementation. Only the search contract
(approximate top-k by similarity) is meant to be stable.
"""

import heapq
import logging
import math
import random
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from .core.locks import ReadWriteLock
from .similarity import cosine_distance


logger = logging.getLogger(__name__)


@dataclass
class HNSWConfig:
    """
    Configuration parameters for the HNSW index.

    Attributes:
        m: Maximum neighbors per node per layer (doubled at layer 0)
        ef_construction: Candidate list size while inserting
        ef_search: Candidate list size while querying
        max_level: Highest layer a node may be assigned
        ml: Layer-decay normalization constant; kept for configurability,
            the coin-flip level sampler does not read it
        seed: Seed for the level sampler
    """
    m: int = 16
    ef_construction: int = 200
    ef_search: int = 100
    max_level: int = 16
    ml: float = 1.0 / math.log(2.0)
    seed: int = 42


@dataclass
class HNSWNode:
    """
    A node in the HNSW graph.

    Attributes:
        id: Message or chunk ID
        vector: Embedding vector
        level: Top layer this node appears on
        neighbors: Neighbor IDs per layer, indexed by layer
        is_message: True for a message, False for a document chunk
        is_context: True if the message role is ``context``
    """
    id: str
    vector: Sequence[float]
    level: int
    neighbors: List[List[str]] = field(default_factory=list)
    is_message: bool = False
    is_context: bool = False


class HNSWIndex:
    """
    Thread-safe HNSW index.

    ``add`` and ``clear`` take the lock exclusively; ``search`` and ``size``
    take it shared, so concurrent queries are fine but never overlap a
    structural change.

    Example:
        >>> index = HNSWIndex()
        >>> index.add("msg-1", [0.1, 0.9], is_message=True, is_context=True)
        >>> index.search([0.1, 0.9], k=1)
        ['msg-1']
    """

    def __init__(self, config: Optional[HNSWConfig] = None):
        self.config = config or HNSWConfig()
        self._nodes: Dict[str, HNSWNode] = {}
        self._entry_point: Optional[str] = None
        self._max_level = 0
        self._lock = ReadWriteLock()
        self._rng = random.Random(self.config.seed)

    def add(self, id: str, vector: Sequence[float], is_message: bool = False, is_context: bool = False) -> None:
        """
        Insert a vector.

        Re-adding an indexed ``id`` replaces its vector and flags in place;
        its graph links are kept.

        Args:
            id: Node identifier
            vector: Embedding vector (copied)
            is_message: Whether the node is a message (vs a document chunk)
            is_context: Whether the node is a ``context`` role message
        """
        with self._lock.write_locked():
            existing = self._nodes.get(id)
            if existing is not None:
                existing.vector = list(vector)
                existing.is_message = is_message
                existing.is_context = is_context
                return

            level = self._random_level()
            node = HNSWNode(
                id=id,
                vector=list(vector),
                level=level,
                neighbors=[[] for _ in range(level + 1)],
                is_message=is_message,
                is_context=is_context,
            )
            self._nodes[id] = node

            if self._entry_point is None:
                self._entry_point = id
                self._max_level = level
                return

            self._insert(node)

            if level > self._max_level:
                self._max_level = level
                self._entry_point = id

    def search(self, query: Sequence[float], k: int, filter_context: bool = False) -> List[str]:
        """
        Approximate k-nearest neighbor search.

        Args:
            query: Query vector
            k: Maximum number of results
            filter_context: Only return context messages. Other nodes are
                still traversed as graph edges.

        Returns:
            Up to ``k`` node IDs ordered by ascending distance
        """
        if k <= 0:
            return []

        with self._lock.read_locked():
            if self._entry_point is None:
                return []

            ep = self._greedy_descend(query, self._entry_point, self._max_level, 0)
            ef = max(self.config.ef_search, k)
            accept = self._is_context_message if filter_context else None
            results = self._search_layer(query, [ep], ef, 0, accept)

        return [node_id for node_id, _ in results[:k]]

    def clear(self) -> None:
        """Remove every node."""
        with self._lock.write_locked():
            self._nodes = {}
            self._entry_point = None
            self._max_level = 0

    def size(self) -> int:
        """Number of indexed nodes."""
        with self._lock.read_locked():
            return len(self._nodes)

    def __len__(self) -> int:
        return self.size()

    def __contains__(self, id: str) -> bool:
        with self._lock.read_locked():
            return id in self._nodes

    # =========================================================================
    # Graph construction
    # =========================================================================

    def _random_level(self) -> int:
        level = 0
        while level < self.config.max_level and self._rng.random() < 0.5:
            level += 1
        return level

    def _layer_cap(self, level: int) -> int:
        return self.config.m * 2 if level == 0 else self.config.m

    def _insert(self, node: HNSWNode) -> None:
        # Descend through layers above the new node's top layer
        ep = self._greedy_descend(node.vector, self._entry_point, self._max_level, node.level)
        entry_points = [ep]

        for level in range(min(node.level, self._max_level), -1, -1):
            candidates = self._search_layer(
                node.vector, entry_points, self.config.ef_construction, level
            )
            cap = self._layer_cap(level)
            selected = [cid for cid, _ in candidates if cid != node.id][:cap]

            for neighbor_id in selected:
                node.neighbors[level].append(neighbor_id)
                neighbor = self._nodes[neighbor_id]
                if level < len(neighbor.neighbors):
                    neighbor.neighbors[level].append(node.id)
                    if len(neighbor.neighbors[level]) > cap:
                        self._prune(neighbor, level, cap)

            if selected:
                entry_points = selected

    def _prune(self, node: HNSWNode, level: int, cap: int) -> None:
        """Keep only the ``cap`` nearest connections of ``node`` at ``level``."""
        ranked = sorted(
            node.neighbors[level],
            key=lambda nid: cosine_distance(node.vector, self._nodes[nid].vector),
        )
        node.neighbors[level] = ranked[:cap]

    # =========================================================================
    # Search primitives
    # =========================================================================

    def _greedy_descend(self, query: Sequence[float], ep: str, from_level: int, to_level: int) -> str:
        """
        Walk from ``from_level`` down to (but excluding) ``to_level``, moving
        to a closer neighbor while one exists. No backtracking.
        """
        current_dist = cosine_distance(query, self._nodes[ep].vector)

        for level in range(from_level, to_level, -1):
            changed = True
            while changed:
                changed = False
                node = self._nodes[ep]
                if level >= len(node.neighbors):
                    break
                for neighbor_id in node.neighbors[level]:
                    d = cosine_distance(query, self._nodes[neighbor_id].vector)
                    if d < current_dist:
                        current_dist = d
                        ep = neighbor_id
                        changed = True
        return ep

    def _is_context_message(self, node: HNSWNode) -> bool:
        return node.is_message and node.is_context

    def _search_layer(
        self,
        query: Sequence[float],
        entry_points: List[str],
        ef: int,
        level: int,
        accept=None,
    ) -> List[Tuple[str, float]]:
        """
        Bounded beam search on one layer.

        The frontier (min-heap) and the best-``ef`` set (max-heap, worst on
        top) cover every reachable node. When ``accept`` is given, a second
        best-``ef`` set collects only accepted nodes and is what gets
        returned.

        Returns:
            (id, distance) pairs sorted by ascending distance
        """
        visited = set()
        counter = 0
        candidates: List[Tuple[float, int, str]] = []
        best: List[Tuple[float, int, str]] = []
        accepted: List[Tuple[float, int, str]] = []

        def offer(heap: List[Tuple[float, int, str]], d: float, seq: int, node_id: str) -> None:
            heapq.heappush(heap, (-d, seq, node_id))
            if len(heap) > ef:
                heapq.heappop(heap)

        for ep in entry_points:
            if ep in visited:
                continue
            visited.add(ep)
            d = cosine_distance(query, self._nodes[ep].vector)
            heapq.heappush(candidates, (d, counter, ep))
            offer(best, d, counter, ep)
            if accept is not None and accept(self._nodes[ep]):
                offer(accepted, d, counter, ep)
            counter += 1

        while candidates:
            d, _, current_id = heapq.heappop(candidates)
            if len(best) >= ef and d > -best[0][0]:
                break

            node = self._nodes[current_id]
            if level >= len(node.neighbors):
                continue

            for neighbor_id in node.neighbors[level]:
                if neighbor_id in visited:
                    continue
                visited.add(neighbor_id)

                neighbor = self._nodes[neighbor_id]
                nd = cosine_distance(query, neighbor.vector)

                if len(best) < ef or nd < -best[0][0]:
                    heapq.heappush(candidates, (nd, counter, neighbor_id))
                    offer(best, nd, counter, neighbor_id)
                if accept is not None and accept(neighbor):
                    offer(accepted, nd, counter, neighbor_id)
                counter += 1

        result_heap = accepted if accept is not None else best
        ordered = sorted(result_heap, key=lambda item: (-item[0], item[1]))
        return [(node_id, -neg_d) for neg_d, _, node_id in ordered]
