"""
Bucketed nearest-neighbor search for correspondence queries.

`SpatialGridIndex` hashes points into cubic cells keyed by
``(floor(x/v), floor(y/v), floor(z/v))`` and answers nearest-neighbor queries
by scanning the cells around the query cell (3x3x3 by default). It is an
approximate structure: a true nearest point lying just outside the window is
missed, which is why correspondence gates are expressed in voxel units.

`KDTreeIndex` wraps scikit-learn's kd-tree behind the same interface for
callers that need exact answers. Use `create_neighbor_index` to pick one.

Both structures are read-only after construction and can be queried from
several threads at once.
"""

from __future__ import annotations

import itertools
import logging
from typing import Literal, Optional, Tuple

import numpy as np
from sklearn.neighbors import NearestNeighbors

logger = logging.getLogger(__name__)

NeighborBackend = Literal["grid", "kdtree"]


def _as_points(points: np.ndarray, name: str = "points") -> np.ndarray:
    arr = np.ascontiguousarray(points, dtype=np.float64)
    if arr.ndim == 1 and arr.size == 3:
        arr = arr.reshape(1, 3)
    if arr.size == 0:
        return arr.reshape(0, 3)
    if arr.ndim != 2 or arr.shape[1] != 3:
        raise ValueError(f"Expected Nx3 {name}, got shape {arr.shape}")
    return arr


class SpatialGridIndex:
    """
    Hash-grid nearest-neighbor index over a fixed point set.

    Parameters
    ----------
    points : (N, 3) array
        Points to index. Copied on construction.
    cell_size : float
        Edge length of a grid cell, normally the voxel size of the cloud.
    window : int, default=1
        Half-width of the searched cell window; 1 scans the 27 surrounding
        cells.
    chunk_size : int, default=65536
        Queries processed per vectorized batch (bounds temporary memory).

    Attributes
    ----------
    n_points_ : int
        Number of indexed points
    n_buckets_ : int
        Number of non-empty cells
    """

    def __init__(
        self,
        points: np.ndarray,
        cell_size: float,
        window: int = 1,
        chunk_size: int = 65536,
    ):
        if not cell_size > 0:
            raise ValueError(f"cell_size must be positive, got {cell_size}")
        if window < 0:
            raise ValueError(f"window must be non-negative, got {window}")

        self.points = _as_points(points).copy()
        self.points.setflags(write=False)
        self.cell_size = float(cell_size)
        self.window = int(window)
        self.chunk_size = max(1, int(chunk_size))
        self.n_points_ = len(self.points)

        rng = range(-self.window, self.window + 1)
        self._offsets = np.array(list(itertools.product(rng, rng, rng)), dtype=np.int64)

        if self.n_points_ == 0:
            self._origin = np.zeros(3, dtype=np.int64)
            self._dims = np.ones(3, dtype=np.int64)
            self._bucket_ids = np.zeros(0, dtype=np.int64)
            self._bucket_starts = np.zeros(0, dtype=np.int64)
            self._bucket_counts = np.zeros(0, dtype=np.int64)
            self._order = np.zeros(0, dtype=np.int64)
            self.n_buckets_ = 0
            return

        keys = self._keys(self.points)
        self._origin = keys.min(axis=0)
        self._dims = keys.max(axis=0) - self._origin + 1

        linear = self._linearize(keys - self._origin)
        order = np.argsort(linear, kind="stable")
        ids, starts, counts = np.unique(linear[order], return_index=True, return_counts=True)

        self._order = order.astype(np.int64)
        self._bucket_ids = ids.astype(np.int64)
        self._bucket_starts = starts.astype(np.int64)
        self._bucket_counts = counts.astype(np.int64)
        self.n_buckets_ = len(ids)

        logger.debug(
            "SpatialGridIndex built: %d points in %d buckets (cell=%.4f m, window=%d).",
            self.n_points_,
            self.n_buckets_,
            self.cell_size,
            self.window,
        )

    # ------------------------ Keys ------------------------
    def _keys(self, pts: np.ndarray) -> np.ndarray:
        return np.floor(pts / self.cell_size).astype(np.int64)

    def _linearize(self, rel: np.ndarray) -> np.ndarray:
        return (rel[..., 0] * self._dims[1] + rel[..., 1]) * self._dims[2] + rel[..., 2]

    def key_of(self, point: np.ndarray) -> Tuple[int, int, int]:
        """Cell key of a single point."""
        k = self._keys(_as_points(point, "point"))[0]
        return int(k[0]), int(k[1]), int(k[2])

    # ------------------------ Queries ------------------------
    def query(self, queries: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Nearest indexed point for every query.

        Args:
            queries: (Q, 3) query points.

        Returns:
            Tuple of (indices, squared_distances). Queries with no point in
            their cell window get index -1 and squared distance inf. Ties are
            resolved towards the smallest point index.
        """
        q = _as_points(queries, "queries")
        n_q = len(q)
        indices = np.full(n_q, -1, dtype=np.int64)
        sq_dists = np.full(n_q, np.inf, dtype=np.float64)
        if n_q == 0 or self.n_points_ == 0:
            return indices, sq_dists

        for start in range(0, n_q, self.chunk_size):
            stop = min(start + self.chunk_size, n_q)
            idx, d2 = self._query_chunk(q[start:stop])
            indices[start:stop] = idx
            sq_dists[start:stop] = d2
        return indices, sq_dists

    def _query_chunk(self, q: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        n_q = len(q)
        rel = (self._keys(q) - self._origin)[:, None, :] + self._offsets[None, :, :]
        in_grid = np.all((rel >= 0) & (rel < self._dims), axis=2)

        linear = self._linearize(rel)
        pos = np.searchsorted(self._bucket_ids, linear)
        pos = np.minimum(pos, len(self._bucket_ids) - 1)
        hit = in_grid & (self._bucket_ids[pos] == linear)

        out_idx = np.full(n_q, -1, dtype=np.int64)
        out_d2 = np.full(n_q, np.inf, dtype=np.float64)
        if not np.any(hit):
            return out_idx, out_d2

        query_of_hit = np.nonzero(hit)[0]
        bucket_pos = pos[hit]
        counts = self._bucket_counts[bucket_pos]
        starts = self._bucket_starts[bucket_pos]

        # Expand each (query, bucket) pair into one row per candidate point
        total = int(counts.sum())
        q_rep = np.repeat(query_of_hit, counts)
        run_start = np.repeat(np.cumsum(counts) - counts, counts)
        slot = np.arange(total, dtype=np.int64) - run_start
        candidates = self._order[np.repeat(starts, counts) + slot]

        diff = self.points[candidates] - q[q_rep]
        d2 = np.einsum("ij,ij->i", diff, diff)

        # Per query: smallest distance first, then smallest point index
        order = np.lexsort((candidates, d2, q_rep))
        q_sorted = q_rep[order]
        first = np.ones(total, dtype=bool)
        first[1:] = q_sorted[1:] != q_sorted[:-1]
        winners = order[first]

        out_idx[q_rep[winners]] = candidates[winners]
        out_d2[q_rep[winners]] = d2[winners]
        return out_idx, out_d2

    def nearest(self, query: np.ndarray) -> Optional[Tuple[int, float]]:
        """
        Nearest indexed point to a single query.

        Returns:
            (index, squared_distance), or None when every cell in the window
            is empty.
        """
        idx, d2 = self.query(_as_points(query, "query"))
        if idx[0] < 0:
            return None
        return int(idx[0]), float(d2[0])

    def __len__(self) -> int:
        return self.n_points_


class KDTreeIndex:
    """
    Exact nearest-neighbor index with the `SpatialGridIndex` interface.

    Backed by ``sklearn.neighbors.NearestNeighbors`` (kd-tree). When
    ``max_distance`` is set, matches farther away are reported as misses
    (-1, inf) so callers can treat both backends alike.
    """

    def __init__(self, points: np.ndarray, max_distance: Optional[float] = None, leaf_size: int = 30):
        self.points = _as_points(points).copy()
        self.points.setflags(write=False)
        self.max_distance = max_distance
        self.n_points_ = len(self.points)
        self._nbrs: Optional[NearestNeighbors] = None
        if self.n_points_ > 0:
            self._nbrs = NearestNeighbors(n_neighbors=1, algorithm="kd_tree", leaf_size=leaf_size).fit(self.points)

    def query(self, queries: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        q = _as_points(queries, "queries")
        indices = np.full(len(q), -1, dtype=np.int64)
        sq_dists = np.full(len(q), np.inf, dtype=np.float64)
        if len(q) == 0 or self._nbrs is None:
            return indices, sq_dists

        distances, idx = self._nbrs.kneighbors(q)
        distances = distances.ravel()
        idx = idx.ravel().astype(np.int64)
        if self.max_distance is not None:
            keep = distances <= self.max_distance
        else:
            keep = np.ones(len(q), dtype=bool)
        indices[keep] = idx[keep]
        sq_dists[keep] = distances[keep] ** 2
        return indices, sq_dists

    def nearest(self, query: np.ndarray) -> Optional[Tuple[int, float]]:
        idx, d2 = self.query(_as_points(query, "query"))
        if idx[0] < 0:
            return None
        return int(idx[0]), float(d2[0])

    def __len__(self) -> int:
        return self.n_points_


def create_neighbor_index(
    points: np.ndarray,
    cell_size: float,
    backend: NeighborBackend = "grid",
    max_distance: Optional[float] = None,
):
    """
    Factory for nearest-neighbor indices used by correspondence search.

    Parameters
    ----------
    points : (N, 3) array
        Points to index
    cell_size : float
        Grid cell size (ignored by the kd-tree backend)
    backend : {'grid', 'kdtree'}, default='grid'
        'grid' is the approximate bucketed index; 'kdtree' is exact
    max_distance : float, optional
        Miss threshold for the kd-tree backend

    Returns
    -------
    index : SpatialGridIndex or KDTreeIndex
    """
    if backend == "grid":
        return SpatialGridIndex(points, cell_size)
    if backend == "kdtree":
        return KDTreeIndex(points, max_distance=max_distance)
    raise ValueError(f"Unknown neighbor backend '{backend}'")
