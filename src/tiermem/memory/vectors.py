"""
Vector helpers shared by the agents (numpy).
"""

from __future__ import annotations

import struct
from collections.abc import Sequence

import numpy as np


def floats_to_bytes(floats: Sequence[float]) -> bytes:
    return struct.pack(f"{len(floats)}d", *floats)


def bytes_to_floats(blob: bytes | None) -> list[float]:
    if not blob:
        return []
    n = len(blob) // 8
    return list(struct.unpack(f"{n}d", blob))


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity; 0.0 for empty, zero or mismatched vectors."""
    if len(a) == 0 or len(a) != len(b):
        return 0.0
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    norm = np.linalg.norm(va) * np.linalg.norm(vb)
    if norm == 0:
        return 0.0
    return float(np.dot(va, vb) / norm)


def mean_vector(vectors: Sequence[Sequence[float]]) -> list[float]:
    """Element-wise mean. Raises ValueError on an empty input."""
    if not vectors:
        raise ValueError("mean of zero vectors")
    return np.mean(np.asarray(vectors, dtype=np.float64), axis=0).tolist()
