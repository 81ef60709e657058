"""Vector helpers shared by every consolidation stage."""

from __future__ import annotations

import base64
from collections import Counter
from collections.abc import Iterable, Sequence

import numpy as np
from sklearn.metrics.pairwise import cosine_similarity as _pairwise_cosine

_EPS = 1e-9


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Cosine similarity of two vectors; 0.0 for mismatched or zero vectors."""

    a = np.asarray(a, dtype=np.float32).reshape(-1)
    b = np.asarray(b, dtype=np.float32).reshape(-1)
    if a.size == 0 or a.shape != b.shape:
        return 0.0
    denom = float(np.linalg.norm(a) * np.linalg.norm(b))
    if denom <= _EPS:
        return 0.0
    return float(np.dot(a, b) / denom)


def cosine_distance(a: np.ndarray, b: np.ndarray) -> float:
    return 1.0 - cosine_similarity(a, b)


def pairwise_cosine_distances(vectors: Sequence[np.ndarray]) -> np.ndarray:
    """Return the symmetric ``n x n`` cosine distance matrix (zero diagonal)."""

    if len(vectors) == 0:
        return np.zeros((0, 0), dtype=np.float64)
    matrix = np.vstack([np.asarray(v, dtype=np.float64).reshape(-1) for v in vectors])
    distances = 1.0 - _pairwise_cosine(matrix)
    distances = np.clip(distances, 0.0, 2.0)
    np.fill_diagonal(distances, 0.0)
    return distances


def dominant_dimension(vectors: Iterable[np.ndarray]) -> int:
    """Most common non-empty vector length, first seen on ties; 0 if none."""

    counts = Counter(int(np.asarray(v).size) for v in vectors)
    counts.pop(0, None)
    if not counts:
        return 0
    return max(counts, key=counts.__getitem__)


def average_embeddings(vectors: Iterable[np.ndarray]) -> np.ndarray:
    """Mean of the vectors sharing the dominant dimension."""

    stacked = [np.asarray(v, dtype=np.float32).reshape(-1) for v in vectors]
    dim = dominant_dimension(stacked)
    stacked = [v for v in stacked if v.size == dim]
    if not stacked:
        return np.zeros(0, dtype=np.float32)
    return np.mean(np.vstack(stacked), axis=0).astype(np.float32)


def nearest(
    embedding: np.ndarray, candidates: dict[str, np.ndarray]
) -> tuple[str | None, float]:
    """Closest candidate by cosine distance; ties go to the lowest id."""

    best_id: str | None = None
    best_dist = float("inf")
    for cand_id in sorted(candidates):
        dist = cosine_distance(embedding, candidates[cand_id])
        if dist < best_dist:
            best_id, best_dist = cand_id, dist
    return best_id, best_dist


def encode_embedding(embedding: np.ndarray) -> str:
    """Serialise as base64 of little-endian float32 bytes (bit exact)."""

    data = np.asarray(embedding, dtype="<f4").reshape(-1).tobytes()
    return base64.b64encode(data).decode("ascii")


def decode_embedding(payload: str, dim: int | None = None) -> np.ndarray:
    raw = base64.b64decode(payload.encode("ascii"), validate=True)
    if len(raw) % 4:
        raise ValueError("embedding payload is not a whole number of float32 values")
    vec = np.frombuffer(raw, dtype="<f4").astype(np.float32)
    if dim is not None and vec.size != dim:
        raise ValueError(f"embedding has {vec.size} values, expected {dim}")
    return vec


__all__ = [
    "cosine_similarity",
    "cosine_distance",
    "pairwise_cosine_distances",
    "average_embeddings",
    "dominant_dimension",
    "nearest",
    "encode_embedding",
    "decode_embedding",
]
