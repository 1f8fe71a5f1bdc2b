"""
Density clustering over cosine distance (DBSCAN)

Pure CPU work with no state mutation; safe to run in a thread.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass

import numpy as np
from scipy.spatial.distance import cdist

NOISE = -1


@dataclass
class Cluster:
    member_ids: list[str]
    centroid: list[float]


def dbscan(embeddings: np.ndarray, eps: float, min_samples: int) -> np.ndarray:
    """
    Label each row of ``embeddings``.

    Args:
        embeddings: (n, d) array
        eps: neighbourhood radius in cosine distance
        min_samples: neighbours (self included) for a core point

    Returns:
        int array of cluster labels, NOISE (-1) for points in no cluster
    """
    n = len(embeddings)
    labels = np.full(n, NOISE, dtype=int)
    if n == 0:
        return labels

    distances = cdist(embeddings, embeddings, metric="cosine")
    # zero vectors give NaN; treat them as maximally distant
    distances = np.nan_to_num(distances, nan=2.0)
    neighbors = [np.flatnonzero(distances[i] <= eps) for i in range(n)]
    is_core = np.array([len(nb) >= min_samples for nb in neighbors])

    visited = np.zeros(n, dtype=bool)
    label = 0
    for i in range(n):
        if visited[i] or not is_core[i]:
            continue
        queue = deque([i])
        visited[i] = True
        while queue:
            p = queue.popleft()
            labels[p] = label
            if not is_core[p]:
                continue
            for q in neighbors[p]:
                if not visited[q]:
                    visited[q] = True
                    queue.append(q)
                elif labels[q] == NOISE:
                    labels[q] = label
        label += 1
    return labels


def cluster_vectors(
    ids: list[str],
    vectors: list[list[float]],
    radius: float,
    min_size: int,
    max_size: int | None = None,
) -> list[Cluster]:
    """Group vectors into dense clusters; noise points are left out.

    Clusters larger than ``max_size`` keep their members closest to the
    centroid; the rest stay unclustered.
    """
    if len(ids) < max(1, min_size):
        return []
    embeddings = np.asarray(vectors, dtype=np.float64)
    labels = dbscan(embeddings, radius, min_size)

    clusters: list[Cluster] = []
    for label in np.unique(labels):
        if label < 0:
            continue
        indices = np.flatnonzero(labels == label)
        if len(indices) < min_size:
            continue
        if max_size and len(indices) > max_size:
            center = np.mean(embeddings[indices], axis=0, keepdims=True)
            order = np.argsort(cdist(embeddings[indices], center, metric="cosine")[:, 0])
            indices = indices[order[:max_size]]
        clusters.append(
            Cluster(
                member_ids=[ids[i] for i in indices],
                centroid=np.mean(embeddings[indices], axis=0).tolist(),
            )
        )
    return clusters
