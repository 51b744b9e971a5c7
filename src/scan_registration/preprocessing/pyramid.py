"""
Multi-resolution point cloud pyramid

Turns raw scan or model points into a list of voxel-downsampled clouds, one per
voxel size (coarse to fine), each carrying surface normals and bounds. The
pyramid is the only input the alignment stages see.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

import numpy as np

from ..utils.logging import setup_logger
from ..utils.point_cloud_filters import apply_scan_filter, get_filter_statistics
from ..utils.transforms import normalize_vector
from .normals import estimate_normals

logger = setup_logger(__name__)


def _readonly(arr: Optional[np.ndarray]) -> Optional[np.ndarray]:
    if arr is None:
        return None
    out = np.array(arr, dtype=float, copy=True)
    out.setflags(write=False)
    return out


@dataclass(frozen=True, eq=False)
class PointCloud:
    """
    Immutable point cloud at one pyramid level.

    Attributes:
        points: (N, 3) positions in meters
        normals: (N, 3) unit normals or None
        voxel_size: Voxel size the cloud was downsampled with (None for raw data)
        bounds_min: Componentwise minimum of ``points`` (None when empty)
        bounds_max: Componentwise maximum of ``points`` (None when empty)
        estimated_up: Unit up vector used to orient the normals
    """

    points: np.ndarray
    normals: Optional[np.ndarray] = None
    voxel_size: Optional[float] = None
    bounds_min: Optional[np.ndarray] = None
    bounds_max: Optional[np.ndarray] = None
    estimated_up: np.ndarray = field(default_factory=lambda: np.array([0.0, 0.0, 1.0]))

    def __post_init__(self) -> None:
        pts = np.asarray(self.points, dtype=float)
        if pts.size == 0:
            pts = pts.reshape(0, 3)
        if pts.ndim != 2 or pts.shape[1] != 3:
            raise ValueError(f"Expected Nx3 points, got shape {pts.shape}")
        if self.normals is not None and np.shape(self.normals) != pts.shape:
            raise ValueError(
                f"normals shape {np.shape(self.normals)} does not match points shape {pts.shape}"
            )
        object.__setattr__(self, "points", _readonly(pts))
        object.__setattr__(self, "normals", _readonly(self.normals))
        object.__setattr__(self, "bounds_min", _readonly(self.bounds_min))
        object.__setattr__(self, "bounds_max", _readonly(self.bounds_max))
        object.__setattr__(self, "estimated_up", _readonly(normalize_vector(self.estimated_up, name="estimated_up")))

    @classmethod
    def from_points(
        cls,
        points: np.ndarray,
        normals: Optional[np.ndarray] = None,
        voxel_size: Optional[float] = None,
        up: Sequence[float] = (0.0, 0.0, 1.0),
    ) -> "PointCloud":
        """Build a cloud and fill in its bounds."""
        pts = np.asarray(points, dtype=float).reshape(-1, 3)
        bmin, bmax = compute_bounds(pts)
        return cls(
            points=pts,
            normals=normals,
            voxel_size=voxel_size,
            bounds_min=bmin,
            bounds_max=bmax,
            estimated_up=np.asarray(up, dtype=float),
        )

    def __len__(self) -> int:
        return len(self.points)

    @property
    def is_empty(self) -> bool:
        return len(self.points) == 0

    @property
    def has_normals(self) -> bool:
        return self.normals is not None

    @property
    def center(self) -> Optional[np.ndarray]:
        """Center of the axis-aligned bounding box."""
        if self.bounds_min is None or self.bounds_max is None:
            return None
        return 0.5 * (self.bounds_min + self.bounds_max)

    @property
    def extent(self) -> Optional[np.ndarray]:
        if self.bounds_min is None or self.bounds_max is None:
            return None
        return self.bounds_max - self.bounds_min


@dataclass
class PreprocessParams:
    """Preprocessing limits for building a pyramid."""

    min_range: float = 0.25
    max_range: float = 5.0
    min_confidence: int = 128
    voxel_sizes: Tuple[float, ...] = (0.02, 0.01, 0.007)
    normal_radius_factor: float = 3.0
    min_normal_neighbors: int = 3
    apply_range_filter: bool = True

    def __post_init__(self) -> None:
        self.voxel_sizes = tuple(float(v) for v in self.voxel_sizes)
        if any(v <= 0 for v in self.voxel_sizes):
            raise ValueError(f"voxel_sizes must be positive, got {self.voxel_sizes}")
        if self.min_range > self.max_range:
            raise ValueError(f"min_range ({self.min_range}) must not exceed max_range ({self.max_range})")
        if self.normal_radius_factor <= 0:
            raise ValueError("normal_radius_factor must be positive")

    @classmethod
    def from_config(cls, cfg, voxel_sizes: Sequence[float], *, apply_range_filter: bool = True) -> "PreprocessParams":
        """Build from a ``PreprocessingConfig`` and an explicit voxel pyramid."""
        return cls(
            min_range=cfg.min_range,
            max_range=cfg.max_range,
            min_confidence=cfg.min_confidence,
            voxel_sizes=tuple(voxel_sizes),
            normal_radius_factor=cfg.normal_radius_factor,
            min_normal_neighbors=cfg.min_normal_neighbors,
            apply_range_filter=apply_range_filter,
        )


def compute_bounds(points: np.ndarray) -> Tuple[Optional[np.ndarray], Optional[np.ndarray]]:
    """Axis-aligned bounds of an Nx3 array, or (None, None) when empty."""
    if len(points) == 0:
        return None, None
    return points.min(axis=0), points.max(axis=0)


def voxelize(points: np.ndarray, voxel_size: float) -> np.ndarray:
    """
    Replace every occupied voxel by the centroid of its points.

    Voxel keys are ``floor(p / voxel_size)``; output rows follow the
    lexicographic order of the keys, so the result does not depend on the
    input order beyond floating point summation.

    Args:
        points: Nx3 array
        voxel_size: Voxel edge length (m)

    Returns:
        Mx3 array of centroids, M <= N
    """
    if not voxel_size > 0:
        raise ValueError(f"voxel_size must be positive, got {voxel_size}")
    pts = np.asarray(points, dtype=float).reshape(-1, 3)
    if len(pts) == 0:
        return np.zeros((0, 3))

    keys = np.floor(pts / voxel_size).astype(np.int64)
    _, inverse, counts = np.unique(keys, axis=0, return_inverse=True, return_counts=True)
    inverse = inverse.reshape(-1)
    m = len(counts)

    centroids = np.empty((m, 3))
    for k in range(3):
        centroids[:, k] = np.bincount(inverse, weights=pts[:, k], minlength=m) / counts
    return centroids


def _build_level(
    points: np.ndarray,
    voxel_size: float,
    up: np.ndarray,
    params: PreprocessParams,
) -> PointCloud:
    centroids = voxelize(points, voxel_size)
    normals = estimate_normals(
        centroids,
        radius=params.normal_radius_factor * voxel_size,
        gravity_up=up,
        min_neighbors=params.min_normal_neighbors,
    )
    return PointCloud.from_points(centroids, normals=normals, voxel_size=voxel_size, up=up)


def build_pyramid(
    raw_points: np.ndarray,
    gravity_up: np.ndarray,
    params: Optional[PreprocessParams] = None,
    confidences: Optional[np.ndarray] = None,
) -> List[PointCloud]:
    """
    Build one downsampled cloud per voxel size (coarse to fine).

    Steps: range/confidence filter (scan only), voxel centroid downsampling,
    PCA normals oriented towards ``gravity_up``, bounds.

    Args:
        raw_points: Nx3 raw points in the sensor frame
        gravity_up: Up vector (normalized internally; zero raises ValueError)
        params: Preprocessing limits; defaults to ``PreprocessParams()``
        confidences: Optional per-point confidence (0-255)

    Returns:
        List of PointCloud, same length as ``params.voxel_sizes``. Empty input
        gives empty clouds at every level.
    """
    if params is None:
        params = PreprocessParams()
    up = normalize_vector(gravity_up, name="gravity_up")

    pts = np.asarray(raw_points, dtype=float)
    if pts.size == 0:
        pts = pts.reshape(0, 3)
    if pts.ndim != 2 or pts.shape[1] != 3:
        raise ValueError(f"Expected Nx3 points, got shape {pts.shape}")

    if params.apply_range_filter:
        total = len(pts)
        pts, _ = apply_scan_filter(
            pts,
            confidences=confidences,
            min_range=params.min_range,
            max_range=params.max_range,
            min_confidence=params.min_confidence,
        )
        if total > 0:
            stats = get_filter_statistics(
                total,
                len(pts),
                params.min_range,
                params.max_range,
                params.min_confidence if confidences is not None else None,
            )
            logger.info(
                f"Kept {stats['filtered_points']} points ({stats['filter_description']}) "
                f"out of {stats['total_points']} total ({stats['percentage']:.1f}%)"
            )

    if len(pts) == 0:
        logger.warning("No points left after filtering; pyramid levels will be empty.")

    pyramid: List[PointCloud] = []
    for voxel_size in params.voxel_sizes:
        level = _build_level(pts, voxel_size, up, params)
        logger.debug("Pyramid level voxel=%.4f m: %d points", voxel_size, len(level))
        pyramid.append(level)
    return pyramid


def build_model_pyramid(
    model_points: np.ndarray,
    gravity_up: np.ndarray,
    voxel_sizes: Sequence[float],
    params: Optional[PreprocessParams] = None,
) -> List[PointCloud]:
    """
    Pyramid for reference geometry: same as `build_pyramid` without the range filter.

    ``params`` only contributes the normal estimation settings.
    """
    base = params if params is not None else PreprocessParams()
    model_params = PreprocessParams(
        min_range=base.min_range,
        max_range=base.max_range,
        min_confidence=base.min_confidence,
        voxel_sizes=tuple(voxel_sizes),
        normal_radius_factor=base.normal_radius_factor,
        min_normal_neighbors=base.min_normal_neighbors,
        apply_range_filter=False,
    )
    return build_pyramid(model_points, gravity_up, model_params)
