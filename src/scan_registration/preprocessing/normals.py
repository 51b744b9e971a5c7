"""
Surface normal estimation by local PCA.

For every point, the neighbors within a fixed radius are gathered and their
covariance is decomposed; the eigenvector of the smallest eigenvalue is the
surface normal. Normals are oriented towards the up vector so that the sign
is consistent across a cloud.
"""

from __future__ import annotations

from typing import Optional

import numpy as np
from sklearn.neighbors import NearestNeighbors

from ..utils.linalg import symmetric_eigh3
from ..utils.logging import setup_logger
from ..utils.transforms import normalize_vector

logger = setup_logger(__name__)


def neighborhood_covariances(points: np.ndarray, radius: float) -> tuple[np.ndarray, np.ndarray]:
    """
    Covariance of the radius neighborhood of every point.

    Args:
        points: Nx3 array
        radius: Neighborhood radius (inclusive), the point itself included

    Returns:
        Tuple of (covariances (N, 3, 3), neighbor_counts (N,))
    """
    n = len(points)
    if n == 0:
        return np.zeros((0, 3, 3)), np.zeros(0, dtype=np.int64)

    nbrs = NearestNeighbors(radius=radius, algorithm="kd_tree").fit(points)
    ind_lists = nbrs.radius_neighbors(points, radius=radius, return_distance=False)

    counts = np.fromiter((len(inds) for inds in ind_lists), dtype=np.int64, count=n)
    owner = np.repeat(np.arange(n), counts)
    neighbor = np.concatenate(ind_lists).astype(np.int64) if counts.sum() else np.zeros(0, dtype=np.int64)

    # Offsets relative to the query point: covariance is translation invariant
    # and small offsets keep the one-pass moment formula well conditioned.
    d = points[neighbor] - points[owner]
    safe_counts = np.maximum(counts, 1).astype(float)

    mean = np.stack(
        [np.bincount(owner, weights=d[:, k], minlength=n) for k in range(3)],
        axis=1,
    ) / safe_counts[:, None]

    cov = np.empty((n, 3, 3))
    for a in range(3):
        for b in range(a, 3):
            second = np.bincount(owner, weights=d[:, a] * d[:, b], minlength=n) / safe_counts
            cov[:, a, b] = second - mean[:, a] * mean[:, b]
            cov[:, b, a] = cov[:, a, b]
    return cov, counts


def estimate_normals(
    points: np.ndarray,
    radius: float,
    gravity_up: np.ndarray,
    min_neighbors: int = 3,
) -> np.ndarray:
    """
    Estimate unit surface normals oriented towards ``gravity_up``.

    Points with fewer than ``min_neighbors`` neighbors within ``radius`` get
    ``gravity_up`` as their normal.

    Args:
        points: Nx3 array (typically voxel centroids)
        radius: Neighborhood radius (m)
        gravity_up: Up vector; normalized internally
        min_neighbors: Minimum neighborhood size for a PCA normal

    Returns:
        Nx3 array of unit normals with ``dot(n, up) >= 0``
    """
    up = normalize_vector(gravity_up, name="gravity_up")
    n = len(points)
    if n == 0:
        return np.zeros((0, 3))
    if not radius > 0:
        raise ValueError(f"radius must be positive, got {radius}")

    cov, counts = neighborhood_covariances(points, radius)
    normals = np.tile(up, (n, 1))

    enough = counts >= min_neighbors
    if np.any(enough):
        _, vecs = symmetric_eigh3(cov[enough])
        pca_normals = vecs[:, :, 0]
        pca_normals /= np.linalg.norm(pca_normals, axis=1, keepdims=True)
        normals[enough] = pca_normals

    normals = orient_normals(normals, up)

    n_fallback = int(np.count_nonzero(~enough))
    if n_fallback:
        logger.debug(
            "Normal estimation: %d of %d points had fewer than %d neighbors; used up vector.",
            n_fallback,
            n,
            min_neighbors,
        )
    return normals


def orient_normals(normals: np.ndarray, up: Optional[np.ndarray]) -> np.ndarray:
    """Flip normals so that ``dot(n, up) >= 0``; returns a new array."""
    out = np.array(normals, dtype=float, copy=True)
    if up is None or len(out) == 0:
        return out
    u = normalize_vector(up, name="up")
    out[out @ u < 0] *= -1.0
    return out
