"""Spatial partitioning of one group of spots into neighborhoods.

All functions take coordinates already in canonical order, so a unit's
position doubles as its tie-break rank, and return integer labels numbered
0..k-1 in order of first appearance.
"""

import math
from typing import Optional

import numpy as np
from scipy.spatial import cKDTree


def canonical_order(coords: np.ndarray) -> np.ndarray:
    """Positions sorted by (first coordinate, second coordinate, position).

    ``coords`` rows must already be in unit-id order.
    """
    coords = np.asarray(coords, dtype=np.float64)
    return np.lexsort((np.arange(len(coords)), coords[:, 1], coords[:, 0]))


def _relabel_by_appearance(labels: np.ndarray) -> np.ndarray:
    mapping = {}
    out = np.empty_like(labels)
    for i, label in enumerate(labels):
        if label not in mapping:
            mapping[label] = len(mapping)
        out[i] = mapping[label]
    return out


def _closest(coords: np.ndarray, origin: np.ndarray, candidates: np.ndarray, k: int) -> np.ndarray:
    """The ``k`` candidates closest to ``origin``; ties go to the lower position."""
    d2 = ((coords[candidates] - origin) ** 2).sum(axis=1)
    order = np.lexsort((candidates, d2))
    return candidates[order][:k]


def _nearest_unassigned(
    tree: cKDTree,
    coords: np.ndarray,
    seed: int,
    assigned: np.ndarray,
    k: int,
) -> np.ndarray:
    """Seed plus its ``k - 1`` nearest unassigned neighbors."""
    n = len(coords)
    n_query = min(n, 2 * k)
    while True:
        dist, idx = tree.query(coords[seed], k=n_query)
        dist = np.atleast_1d(dist)
        idx = np.atleast_1d(idx)
        free = ~assigned[idx]
        if free.sum() >= k or n_query >= n:
            break
        n_query = min(n, n_query * 2)

    cutoff = dist[free][k - 1]
    # widen to every unit at the cutoff distance so ties resolve by rank
    within = np.asarray(tree.query_ball_point(coords[seed], r=cutoff * (1 + 1e-9) + 1e-12), dtype=np.int64)
    within = within[~assigned[within]]
    return _closest(coords, coords[seed], within, k)


def knn_partition(coords: np.ndarray, size: int) -> np.ndarray:
    """Greedy nearest-neighbor partition into neighborhoods of ``size``.

    Units are visited in order; each unassigned unit seeds a neighborhood of
    itself and its ``size - 1`` nearest unassigned units. When fewer than
    ``size`` units remain they form their own neighborhood if they number at
    least ``size / 2``, otherwise each joins the neighborhood of its nearest
    assigned unit.

    Parameters
    ----------
    coords : np.ndarray
        (n, 2) coordinates in canonical order
    size : int
        Target neighborhood size

    Returns
    -------
    np.ndarray
        Neighborhood label per unit
    """
    coords = np.asarray(coords, dtype=np.float64)
    n = len(coords)
    labels = np.full(n, -1, dtype=np.int64)
    if n == 0:
        return labels
    if size <= 1:
        return np.arange(n, dtype=np.int64)

    tree = cKDTree(coords)
    assigned = np.zeros(n, dtype=bool)
    next_label = 0
    for seed in range(n):
        if assigned[seed]:
            continue
        if n - assigned.sum() < size:
            break
        members = _nearest_unassigned(tree, coords, seed, assigned, size)
        labels[members] = next_label
        assigned[members] = True
        next_label += 1

    leftover = np.flatnonzero(~assigned)
    if len(leftover):
        if next_label == 0 or 2 * len(leftover) >= size:
            labels[leftover] = next_label
        else:
            placed = np.flatnonzero(assigned)
            for unit in leftover:
                nearest = _closest(coords, coords[unit], placed, 1)[0]
                labels[unit] = labels[nearest]
    return _relabel_by_appearance(labels)


def knn_fixed_count(coords: np.ndarray, n_neighborhoods: int) -> np.ndarray:
    """Greedy nearest-neighbor partition into exactly ``n_neighborhoods``.

    Sizes are ``ceil(n / k)`` for the first ``n % k`` neighborhoods and
    ``floor(n / k)`` for the rest, so every unit is placed and no remainder
    is left to merge. With more neighborhoods than units each unit stands
    alone.
    """
    coords = np.asarray(coords, dtype=np.float64)
    n = len(coords)
    labels = np.full(n, -1, dtype=np.int64)
    if n == 0:
        return labels
    k = max(1, min(int(n_neighborhoods), n))
    base, extra = divmod(n, k)
    sizes = [base + 1] * extra + [base] * (k - extra)

    tree = cKDTree(coords)
    assigned = np.zeros(n, dtype=bool)
    next_label = 0
    for seed in range(n):
        if assigned[seed]:
            continue
        members = _nearest_unassigned(tree, coords, seed, assigned, sizes[next_label])
        labels[members] = next_label
        assigned[members] = True
        next_label += 1
    return _relabel_by_appearance(labels)


def kmeans_partition(coords: np.ndarray, n_clusters: int, seed: int = 42) -> np.ndarray:
    """KMeans on coordinates, renumbered by first appearance in canonical order."""
    from sklearn.cluster import KMeans

    coords = np.asarray(coords, dtype=np.float64)
    n = len(coords)
    n_clusters = max(1, min(int(n_clusters), n))
    if n_clusters == 1:
        return np.zeros(n, dtype=np.int64)
    km = KMeans(n_clusters=n_clusters, random_state=seed, n_init=10)
    labels = km.fit_predict(coords).astype(np.int64)
    return _relabel_by_appearance(labels)


def partition_group(
    coords: np.ndarray,
    method: str = "knn",
    neighborhood_size: int = 7,
    n_metaspots: Optional[int] = None,
    seed: int = 42,
) -> np.ndarray:
    """Partition one group's coordinates (canonical order) into neighborhoods.

    With ``n_metaspots`` both methods return exactly ``min(n_metaspots, n)``
    neighborhoods; otherwise knn aims for ``neighborhood_size`` members and
    kmeans for ``ceil(n / neighborhood_size)`` clusters.
    """
    n = len(coords)
    if n_metaspots:
        target = min(n_metaspots, n)
        if method == "kmeans":
            return kmeans_partition(coords, target, seed=seed)
        return knn_fixed_count(coords, target)

    if method == "kmeans":
        return kmeans_partition(coords, max(1, math.ceil(n / neighborhood_size)), seed=seed)
    return knn_partition(coords, neighborhood_size)
