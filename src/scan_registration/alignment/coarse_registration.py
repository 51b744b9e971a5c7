"""
Coarse Registration Methods

Generates initial model-to-scan poses (seeds) for ICP.

Seeds are gravity-aligned hypotheses: the model bounding-box center is moved
onto the scan bounding-box center and the model is rotated about the up axis
by each candidate yaw. Optional extras:
- prescore: rank seeds by the mean squared nearest-scan distance of a
  deterministic model subsample
- refine_seed_yaw: one round of closed-form yaw-only alignment per seed

All seeds are 4x4 poses (`Pose`) suitable for initializing ICP.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from ..acceleration.spatial_grid import create_neighbor_index
from ..preprocessing.pyramid import PointCloud
from ..utils.logging import setup_logger
from ..utils.transforms import Pose, normalize_vector, rotation_about_axis

logger = setup_logger(__name__)

DEFAULT_SEED_YAWS = (0.0, 90.0, 180.0, 270.0)


@dataclass
class CoarseSeed:
    """Initial pose hypothesis. Lower ``score`` is better when pre-scored."""

    pose: Pose
    score: float = 1.0
    yaw_degrees: float = 0.0


def _plane_basis(up: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Two orthonormal vectors spanning the plane perpendicular to ``up``."""
    e1 = np.cross(up, [1.0, 0.0, 0.0])
    if np.linalg.norm(e1) < 1e-6:
        e1 = np.cross(up, [0.0, 1.0, 0.0])
    e1 /= np.linalg.norm(e1)
    e2 = np.cross(up, e1)
    return e1, e2


def estimate_yaw_transform(src: np.ndarray, dst: np.ndarray, up: np.ndarray) -> Optional[Pose]:
    """
    Closed-form rigid transform restricted to a rotation about ``up``.

    Centroids are matched in 3D; the rotation angle maximizes the in-plane
    cross terms of the centered correspondences:
    ``theta = atan2(sum(m1*s2 - m2*s1), sum(m1*s1 + m2*s2))``.

    Args:
        src: Nx3 source points
        dst: Nx3 corresponding destination points
        up: Rotation axis

    Returns:
        Pose mapping src onto dst, or None with fewer than 3 correspondences
    """
    if len(src) != len(dst):
        raise ValueError(f"src and dst must have the same length ({len(src)} != {len(dst)})")
    if len(src) < 3:
        return None

    u = normalize_vector(up, name="up")
    e1, e2 = _plane_basis(u)

    c_src = np.mean(src, axis=0)
    c_dst = np.mean(dst, axis=0)
    A = src - c_src
    B = dst - c_dst

    m1, m2 = A @ e1, A @ e2
    s1, s2 = B @ e1, B @ e2
    a = float(np.sum(m1 * s1 + m2 * s2))
    b = float(np.sum(m1 * s2 - m2 * s1))
    theta = np.arctan2(b, a)

    R = rotation_about_axis(u, theta)
    t = c_dst - R @ c_src
    logger.debug("Yaw-only alignment angle: %.3f deg", np.rad2deg(theta))
    return Pose.from_rotation_translation(R, t)


@dataclass
class CoarsePoseEstimator:
    prescore: bool = False
    prescore_samples: int = 500
    refine_seed_yaw: bool = False
    nn_backend: str = "grid"

    def seeds(
        self,
        model: PointCloud,
        scan: PointCloud,
        up: np.ndarray,
        yaw_degrees: Sequence[float] = DEFAULT_SEED_YAWS,
    ) -> List[CoarseSeed]:
        """
        Generate one seed per yaw angle.

        Args:
            model: Model cloud (normally the coarsest pyramid level)
            scan: Scan cloud at the same level
            up: Gravity up vector; yaw rotations are about this axis
            yaw_degrees: Candidate yaw angles in degrees

        Returns:
            List of CoarseSeed; empty when either cloud has no bounding box.
            Sorted best-first when pre-scoring is enabled, otherwise in
            ``yaw_degrees`` order.
        """
        u = normalize_vector(up, name="up")
        cm = model.center
        cs = scan.center
        if cm is None or cs is None:
            logger.warning("CoarsePoseEstimator: empty model or scan; no seeds generated.")
            return []

        out: List[CoarseSeed] = []
        for yaw in yaw_degrees:
            R = rotation_about_axis(u, np.deg2rad(yaw))
            # Translate(cs) * R_up(yaw) * Translate(-cm)
            pose = Pose.from_rotation_translation(R, cs - R @ cm)
            out.append(CoarseSeed(pose=pose, score=1.0, yaw_degrees=float(yaw)))

        if self.refine_seed_yaw:
            out = [self._refine_yaw(seed, model, scan, u) for seed in out]

        if self.prescore:
            for seed in out:
                seed.score = self.score_pose(seed.pose, model, scan)
            out.sort(key=lambda s: s.score)
            logger.info(
                "Seed pre-scores: %s",
                ", ".join(f"{s.yaw_degrees:g}deg={s.score:.3e}" for s in out),
            )

        logger.info(f"Generated {len(out)} coarse seeds")
        return out

    # ------------------------ Scoring ------------------------
    def _sample_indices(self, n: int) -> np.ndarray:
        step = max(1, n // max(1, self.prescore_samples))
        return np.arange(0, n, step)[: self.prescore_samples]

    def score_pose(self, pose: Pose, model: PointCloud, scan: PointCloud) -> float:
        """
        Mean squared nearest-scan distance of a fixed model subsample.

        Samples with no scan point in their search window count as the
        squared search radius, so poses that miss the scan score poorly.
        """
        if model.is_empty or scan.is_empty:
            return float("inf")
        cell = scan.voxel_size or self._fallback_cell(scan)
        radius = 2.0 * cell
        index = create_neighbor_index(scan.points, cell, backend=self.nn_backend, max_distance=radius)

        samples = pose.apply(model.points[self._sample_indices(len(model))])
        _, d2 = index.query(samples)
        d2 = np.minimum(d2, radius * radius)
        return float(np.mean(d2))

    @staticmethod
    def _fallback_cell(cloud: PointCloud) -> float:
        extent = cloud.extent
        size = float(np.max(extent)) if extent is not None else 0.0
        return max(size / 50.0, 1e-3)

    # ------------------------ Yaw polish ------------------------
    def _refine_yaw(self, seed: CoarseSeed, model: PointCloud, scan: PointCloud, up: np.ndarray) -> CoarseSeed:
        if model.is_empty or scan.is_empty:
            return seed
        cell = scan.voxel_size or self._fallback_cell(scan)
        index = create_neighbor_index(scan.points, cell, backend=self.nn_backend, max_distance=2.0 * cell)
        moved = seed.pose.apply(model.points)
        idx, _ = index.query(moved)
        hit = idx >= 0
        delta = estimate_yaw_transform(moved[hit], scan.points[idx[hit]], up)
        if delta is None:
            logger.debug("Yaw polish skipped for seed %.1f deg: too few matches", seed.yaw_degrees)
            return seed
        pose = delta.compose(seed.pose).orthonormalized()
        return CoarseSeed(pose=pose, score=seed.score, yaw_degrees=pose.yaw_degrees(up))
