"""Cosine similarity and near-duplicate clustering over embedding vectors.

All vector math runs on float64 numpy arrays. Rows are L2-normalized once so
that a matrix product yields cosine similarities directly; zero vectors stay
zero and therefore have similarity 0.0 with everything.

Pair search is block-wise: at most block_size x n similarities are held in
memory at a time, which keeps duplicate analysis bounded for large
voice/style/language partitions.
"""

from collections.abc import Iterator, Sequence

import numpy as np


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity between two vectors, in [-1, 1].

    Args:
        a: First vector.
        b: Second vector.

    Returns:
        dot(a, b) / (|a| * |b|), or 0.0 if either vector has zero magnitude.

    Raises:
        ValueError: If the vectors have different dimensions.
    """
    a_np = np.asarray(a, dtype=np.float64)
    b_np = np.asarray(b, dtype=np.float64)
    if a_np.shape != b_np.shape:
        raise ValueError(f"Dimension mismatch: {a_np.shape[0]} != {b_np.shape[0]}")

    norm_a = np.linalg.norm(a_np)
    norm_b = np.linalg.norm(b_np)
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return float(np.dot(a_np, b_np) / (norm_a * norm_b))


def normalize_rows(vectors: Sequence[Sequence[float]] | np.ndarray) -> np.ndarray:
    """Return a float64 matrix whose non-zero rows have unit length."""
    matrix = np.asarray(vectors, dtype=np.float64)
    if matrix.ndim == 1:
        matrix = matrix.reshape(1, -1)
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    safe = np.where(norms == 0, 1.0, norms)
    return matrix / safe


def similarities_to(
    query: Sequence[float], vectors: Sequence[Sequence[float]] | np.ndarray
) -> np.ndarray:
    """Cosine similarity of one query vector against each row of vectors.

    Raises:
        ValueError: If dimensions disagree.
    """
    if len(vectors) == 0:
        return np.empty(0, dtype=np.float64)
    matrix = normalize_rows(vectors)
    q = normalize_rows(query)[0]
    if matrix.shape[1] != q.shape[0]:
        raise ValueError(f"Dimension mismatch: {matrix.shape[1]} != {q.shape[0]}")
    return matrix @ q


def iter_similar_pairs(
    normalized: np.ndarray,
    threshold: float,
    block_size: int = 512,
) -> Iterator[tuple[int, int, float]]:
    """Yield (i, j, similarity) for every i < j with similarity >= threshold.

    Args:
        normalized: Row-normalized matrix (see normalize_rows).
        threshold: Inclusive similarity threshold.
        block_size: Rows compared per block.
    """
    n = normalized.shape[0]
    for start in range(0, n, block_size):
        stop = min(start + block_size, n)
        block = normalized[start:stop] @ normalized.T
        rows, cols = np.nonzero(block >= threshold)
        for r, c in zip(rows.tolist(), cols.tolist()):
            i = start + r
            if c > i:
                yield i, c, float(block[r, c])


class UnionFind:
    """Disjoint-set forest with path compression and union by rank."""

    def __init__(self, size: int):
        self._parent = list(range(size))
        self._rank = [0] * size

    def find(self, x: int) -> int:
        root = x
        while self._parent[root] != root:
            root = self._parent[root]
        while self._parent[x] != root:
            self._parent[x], x = root, self._parent[x]
        return root

    def union(self, a: int, b: int) -> None:
        root_a, root_b = self.find(a), self.find(b)
        if root_a == root_b:
            return
        if self._rank[root_a] < self._rank[root_b]:
            root_a, root_b = root_b, root_a
        self._parent[root_b] = root_a
        if self._rank[root_a] == self._rank[root_b]:
            self._rank[root_a] += 1

    def groups(self, min_size: int = 1) -> list[list[int]]:
        """Connected components, each sorted, ordered by smallest member."""
        components: dict[int, list[int]] = {}
        for x in range(len(self._parent)):
            components.setdefault(self.find(x), []).append(x)
        result = [sorted(members) for members in components.values() if len(members) >= min_size]
        return sorted(result, key=lambda members: members[0])


def find_clusters(
    vectors: Sequence[Sequence[float]] | np.ndarray,
    threshold: float,
    block_size: int = 512,
) -> list[list[int]]:
    """Group row indices into connected components under similarity >= threshold.

    Grouping is transitive: if a~b and b~c then a, b and c share a cluster
    even when a and c are below threshold. Singletons are omitted.
    """
    if len(vectors) < 2:
        return []
    normalized = normalize_rows(vectors)
    forest = UnionFind(normalized.shape[0])
    for i, j, _ in iter_similar_pairs(normalized, threshold, block_size):
        forest.union(i, j)
    return forest.groups(min_size=2)


def average_pairwise_similarity(normalized: np.ndarray, members: Sequence[int]) -> float:
    """Mean cosine similarity over all unordered pairs of members."""
    if len(members) < 2:
        return 1.0
    sub = normalized[list(members)]
    sims = sub @ sub.T
    upper = np.triu_indices(len(members), k=1)
    return float(sims[upper].mean())
