"""Proximity clustering: union-find over DistanceIndex adjacency."""

from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Hashable, Iterable, List, Optional, Set

from models.structure import Structure
from engine.geo import DistanceIndex


def id_sort_key(structure_id):
    """Stable ordering for ids that may mix ints and strings."""
    if isinstance(structure_id, bool):
        return (1, str(structure_id))
    if isinstance(structure_id, (int, float)):
        return (0, structure_id)
    return (1, str(structure_id))


class UnionFind:
    """Disjoint-set keyed by structure id (path halving, union by size)."""

    def __init__(self, keys: Iterable[Hashable] = ()):
        self._parent: Dict[Hashable, Hashable] = {}
        self._size: Dict[Hashable, int] = {}
        for k in keys:
            self.add(k)

    def add(self, key: Hashable):
        if key not in self._parent:
            self._parent[key] = key
            self._size[key] = 1

    def find(self, key: Hashable) -> Hashable:
        parent = self._parent
        while parent[key] != key:
            parent[key] = parent[parent[key]]
            key = parent[key]
        return key

    def union(self, a: Hashable, b: Hashable) -> Hashable:
        ra, rb = self.find(a), self.find(b)
        if ra == rb:
            return ra
        if self._size[ra] < self._size[rb]:
            ra, rb = rb, ra
        self._parent[rb] = ra
        self._size[ra] += self._size[rb]
        return ra

    def groups(self) -> Dict[Hashable, List[Hashable]]:
        out: Dict[Hashable, List[Hashable]] = {}
        for key in self._parent:
            out.setdefault(self.find(key), []).append(key)
        return out


@dataclass
class Clustering:
    clusters: List[List[Structure]]
    adjacency: Dict[Hashable, Set[Hashable]] = field(default_factory=dict)

    @property
    def sizes(self) -> List[int]:
        return [len(c) for c in self.clusters]


def _bfs_order(members: List[Structure], adjacency: Dict[Hashable, Set[Hashable]]) -> List[Structure]:
    """Breadth-first from the smallest id so chained neighbours sit next to each other."""
    by_id = {s.structure_id: s for s in members}
    ordered_ids = sorted(by_id, key=id_sort_key)
    seen: Set[Hashable] = set()
    result: List[Structure] = []
    for start in ordered_ids:
        if start in seen:
            continue
        seen.add(start)
        queue = deque([start])
        while queue:
            current = queue.popleft()
            result.append(by_id[current])
            for nxt in sorted(adjacency.get(current, ()), key=id_sort_key):
                if nxt in by_id and nxt not in seen:
                    seen.add(nxt)
                    queue.append(nxt)
    return result


def build_clusters(
    structures: List[Structure],
    threshold_meters: float,
    cell_meters: Optional[float] = None,
) -> Clustering:
    """Group structures connected by a chain of pairwise distances <= threshold.

    Pure function of (structures, threshold). Clusters come largest first, ties by
    smallest member id; members within a cluster are in breadth-first adjacency order.
    """
    ordered = sorted(structures, key=lambda s: id_sort_key(s.structure_id))
    index = DistanceIndex.build(ordered, cell_meters or threshold_meters)
    adjacency = index.adjacency(ordered, threshold_meters)

    uf = UnionFind(s.structure_id for s in ordered)
    for sid, neighbours in adjacency.items():
        for other in neighbours:
            uf.union(sid, other)

    by_id = {s.structure_id: s for s in ordered}
    clusters = [
        _bfs_order([by_id[i] for i in ids], adjacency)
        for ids in uf.groups().values()
    ]
    clusters.sort(key=lambda c: (-len(c), id_sort_key(c[0].structure_id)))
    return Clustering(clusters=clusters, adjacency=adjacency)
