from __future__ import annotations

from collections.abc import Iterable


class DisjointSet:
    """Array-backed union-find over a fixed, sorted set of labels.

    The root of every set is always its lowest-sorted member, so folding
    ``"spk_3"`` into ``"spk_1"`` never depends on the order unions are made.
    """

    def __init__(self, labels: Iterable[str]):
        self.labels: list[str] = sorted(set(labels))
        self._index = {label: i for i, label in enumerate(self.labels)}
        self._parent = list(range(len(self.labels)))

    def __len__(self) -> int:
        return len(self.labels)

    def __contains__(self, label: object) -> bool:
        return label in self._index

    def _find(self, i: int) -> int:
        root = i
        while self._parent[root] != root:
            root = self._parent[root]
        while self._parent[i] != root:
            self._parent[i], i = root, self._parent[i]
        return root

    def find(self, label: str) -> str:
        return self.labels[self._find(self._index[label])]

    def union(self, a: str, b: str) -> bool:
        """Merge the sets holding ``a`` and ``b``; return True if they were separate."""

        ra = self._find(self._index[a])
        rb = self._find(self._index[b])
        if ra == rb:
            return False
        lo, hi = (ra, rb) if ra < rb else (rb, ra)
        self._parent[hi] = lo
        return True

    def groups(self) -> dict[str, list[str]]:
        out: dict[str, list[str]] = {}
        for i, label in enumerate(self.labels):
            out.setdefault(self.labels[self._find(i)], []).append(label)
        return out

    def mapping(self) -> dict[str, str]:
        return {label: self.labels[self._find(i)] for i, label in enumerate(self.labels)}


__all__ = ["DisjointSet"]
