"""
ICP Registration Implementation

Robust multi-resolution point-to-plane ICP for model-to-scan alignment.

For every seed, ICP runs on each pyramid level from coarse to fine, carrying
the pose forward. One iteration:
1. Transforms model points by the current pose
2. Finds the nearest scan point (distance and normal-compatibility gates)
3. Keeps the best ``trim_fraction`` of correspondences by |residual|
4. Weights them with a Huber kernel
5. Solves the 6x6 point-to-plane normal equations for a small motion
6. Composes and re-orthonormalizes the pose

After the finest level, the pose is scored by point-to-point RMSE over inliers
and the lowest-RMSE seed wins.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..acceleration.spatial_grid import create_neighbor_index
from ..preprocessing.pyramid import PointCloud
from ..utils.linalg import solve_gaussian
from ..utils.logging import setup_logger
from ..utils.transforms import Pose, small_angle_update
from .coarse_registration import CoarseSeed
from .errors import ICPFailedError

logger = setup_logger(__name__)

CancelCheck = Callable[[], bool]
ProgressCallback = Callable[[int, int], None]

LEVEL_STATUSES = ("converged", "max_iterations", "no_correspondences", "degenerate", "cancelled")


@dataclass
class ICPParams:
    """Per-level ICP settings."""

    max_iterations: int = 20
    max_correspondence_distance: float = 0.08
    min_normal_dot: float = 0.75
    trim_fraction: float = 0.7
    huber_delta: float = 0.04

    def __post_init__(self) -> None:
        if self.max_iterations < 0:
            raise ValueError(f"max_iterations must be non-negative, got {self.max_iterations}")
        if not self.max_correspondence_distance > 0:
            raise ValueError(
                f"max_correspondence_distance must be positive, got {self.max_correspondence_distance}"
            )
        if not 0.0 <= self.min_normal_dot <= 1.0:
            raise ValueError(f"min_normal_dot must lie in [0, 1], got {self.min_normal_dot}")
        if not 0.0 < self.trim_fraction <= 1.0:
            raise ValueError(f"trim_fraction must lie in (0, 1], got {self.trim_fraction}")
        if not self.huber_delta > 0:
            raise ValueError(f"huber_delta must be positive, got {self.huber_delta}")


@dataclass
class RegistrationMetrics:
    """Quality of a final pose, measured on the finest pyramid level."""

    inlier_fraction: float
    rmse_meters: float
    iterations: int
    finest_voxel_size: float
    timestamp: float = field(default_factory=time.time)

    def as_dict(self) -> Dict[str, float]:
        return asdict(self)


@dataclass
class LevelResult:
    """Outcome of ICP on one pyramid level."""

    pose: Pose
    rmse: float
    iterations: int
    n_correspondences: int
    status: str
    voxel_size: Optional[float] = None
    trimmed_rmse: float = float("inf")
    full_rmse: float = float("inf")


@dataclass
class SeedResult:
    """Multi-level refinement of one seed."""

    seed: CoarseSeed
    pose: Pose
    metrics: RegistrationMetrics
    levels: List[LevelResult] = field(default_factory=list)
    cancelled: bool = False

    @property
    def found_correspondences(self) -> bool:
        return any(level.n_correspondences > 0 for level in self.levels)


@dataclass
class _Matches:
    model_idx: np.ndarray
    scan_idx: np.ndarray
    residuals: np.ndarray

    def __len__(self) -> int:
        return len(self.model_idx)


def trim_indices(residuals: np.ndarray, trim_fraction: float) -> np.ndarray:
    """Indices of the ``max(1, floor(n * trim_fraction))`` smallest |residuals| (stable)."""
    n = len(residuals)
    if n == 0:
        return np.zeros(0, dtype=np.int64)
    keep = max(1, int(np.floor(n * trim_fraction)))
    return np.argsort(np.abs(residuals), kind="stable")[:keep]


def huber_weights(residuals: np.ndarray, delta: float) -> np.ndarray:
    """Huber IRLS weights: 1 inside ``delta``, ``delta/|r|`` outside."""
    abs_r = np.abs(residuals)
    weights = np.ones_like(abs_r)
    outside = abs_r > delta
    weights[outside] = delta / abs_r[outside]
    return weights


def _rms(values: np.ndarray) -> float:
    if len(values) == 0:
        return float("inf")
    return float(np.sqrt(np.mean(values * values)))


class ICPRefiner:
    """
    Multi-seed, multi-level point-to-plane ICP.

    The refiner holds configuration only; all per-call state lives in local
    variables, so one instance can serve several threads.
    """

    def __init__(
        self,
        convergence_factor: float = 1e-3,
        inlier_distance_factor: float = 3.0,
        pivot_epsilon: float = 1e-9,
        nn_backend: str = "grid",
        executor=None,
    ):
        """
        Initialize ICP settings.

        Args:
            convergence_factor: A level stops when the kept-correspondence RMSE
                of one iteration differs from the previous one by less than
                ``factor * voxel_size``.
            inlier_distance_factor: Final inlier distance as a multiple of the
                finest voxel size.
            pivot_epsilon: Relative pivot threshold of the 6x6 solve; smaller
                pivots mark the system as degenerate.
            nn_backend: 'grid' (bucketed, approximate) or 'kdtree' (exact).
            executor: Optional SeedParallelExecutor to refine seeds in
                worker processes.
        """
        self.convergence_factor = convergence_factor
        self.inlier_distance_factor = inlier_distance_factor
        self.pivot_epsilon = pivot_epsilon
        self.nn_backend = nn_backend
        self.executor = executor

    def settings(self) -> Dict[str, object]:
        """Picklable constructor arguments (without the executor)."""
        return {
            "convergence_factor": self.convergence_factor,
            "inlier_distance_factor": self.inlier_distance_factor,
            "pivot_epsilon": self.pivot_epsilon,
            "nn_backend": self.nn_backend,
        }

    # ------------------------ Correspondences ------------------------
    def _scan_index(self, scan: PointCloud, params: ICPParams):
        cell = scan.voxel_size or params.max_correspondence_distance
        return create_neighbor_index(
            scan.points,
            cell,
            backend=self.nn_backend,
            max_distance=params.max_correspondence_distance,
        )

    def find_correspondences(
        self,
        model: PointCloud,
        scan: PointCloud,
        pose: Pose,
        params: ICPParams,
        index=None,
    ) -> _Matches:
        """
        Gated nearest-neighbor correspondences and point-to-plane residuals.

        A pair is rejected when the scan point is farther than
        ``max_correspondence_distance`` or when both clouds carry normals and
        ``|dot(R n_model, n_scan)| < min_normal_dot``.
        """
        if index is None:
            index = self._scan_index(scan, params)

        moved = pose.apply(model.points)
        idx, d2 = index.query(moved)
        valid = (idx >= 0) & (d2 <= params.max_correspondence_distance ** 2)

        if model.has_normals and params.min_normal_dot > 0:
            rotated = pose.apply_to_normals(model.normals)
            cand = np.nonzero(valid)[0]
            dots = np.abs(np.einsum("ij,ij->i", rotated[cand], scan.normals[idx[cand]]))
            valid[cand[dots < params.min_normal_dot]] = False

        model_idx = np.nonzero(valid)[0]
        scan_idx = idx[model_idx]
        diff = moved[model_idx] - scan.points[scan_idx]
        residuals = np.einsum("ij,ij->i", scan.normals[scan_idx], diff)
        return _Matches(model_idx=model_idx, scan_idx=scan_idx, residuals=residuals)

    # ------------------------ Single level ------------------------
    def icp_level(
        self,
        model: PointCloud,
        scan: PointCloud,
        initial_pose: Pose,
        params: ICPParams,
        cancel_check: Optional[CancelCheck] = None,
        index=None,
    ) -> LevelResult:
        """
        Run point-to-plane ICP on one pyramid level.

        Args:
            model: Model cloud (normals optional, used for the normal gate)
            scan: Scan cloud with normals
            initial_pose: Starting model-to-scan pose
            params: Level settings
            cancel_check: Polled before every iteration
            index: Optional prebuilt neighbor index over ``scan.points``

        Returns:
            LevelResult with the last valid pose
        """
        voxel = scan.voxel_size or model.voxel_size
        if model.is_empty or scan.is_empty:
            logger.warning(
                "ICP level called with empty model or scan (model=%d, scan=%d); keeping pose.",
                len(model),
                len(scan),
            )
            return LevelResult(initial_pose, float("inf"), 0, 0, "no_correspondences", voxel)
        if not scan.has_normals:
            raise ValueError("Point-to-plane ICP needs scan normals")

        if index is None:
            index = self._scan_index(scan, params)
        tolerance = self.convergence_factor * (voxel or params.max_correspondence_distance)

        pose = initial_pose
        status = "max_iterations"
        iterations = 0
        previous_rmse: Optional[float] = None

        for iteration in range(params.max_iterations):
            if cancel_check is not None and cancel_check():
                status = "cancelled"
                break

            matches = self.find_correspondences(model, scan, pose, params, index=index)
            if len(matches) == 0:
                logger.debug("Iteration %d: no correspondences; stopping level.", iteration + 1)
                status = "no_correspondences"
                break

            kept = trim_indices(matches.residuals, params.trim_fraction)
            m_idx = matches.model_idx[kept]
            s_idx = matches.scan_idx[kept]
            r = matches.residuals[kept]
            current_rmse = _rms(r)
            logger.debug(
                "Iteration %d: kept=%d/%d, RMSE=%.6f",
                iteration + 1,
                len(r),
                len(matches),
                current_rmse,
            )
            # Compared across iterations, each with its own correspondences
            if previous_rmse is not None and abs(previous_rmse - current_rmse) < tolerance:
                status = "converged"
                break
            previous_rmse = current_rmse

            w = huber_weights(r, params.huber_delta)
            p = pose.apply(model.points[m_idx])
            n = scan.normals[s_idx]
            J = np.hstack([np.cross(p, n), n])

            A = (J * w[:, None]).T @ J
            b = -(J.T @ (w * r))
            xi = solve_gaussian(A, b, pivot_epsilon=self.pivot_epsilon)
            if xi is None:
                logger.warning(
                    "Degenerate point-to-plane system at iteration %d (%d correspondences); "
                    "stopping level with last valid pose.",
                    iteration + 1,
                    len(r),
                )
                status = "degenerate"
                break

            pose = Pose(small_angle_update(xi) @ pose.matrix).orthonormalized()
            iterations += 1

        final = self.find_correspondences(model, scan, pose, params, index=index)
        trimmed = final.residuals[trim_indices(final.residuals, params.trim_fraction)]
        trimmed_rmse = _rms(trimmed)
        full_rmse = _rms(final.residuals)

        return LevelResult(
            pose=pose,
            rmse=trimmed_rmse,
            iterations=iterations,
            n_correspondences=len(final),
            status=status,
            voxel_size=voxel,
            trimmed_rmse=trimmed_rmse,
            full_rmse=full_rmse,
        )

    # ------------------------ Evaluation ------------------------
    def evaluate(self, model: PointCloud, scan: PointCloud, pose: Pose, iterations: int = 0) -> RegistrationMetrics:
        """
        Inlier fraction and point-to-point RMSE of ``pose`` on one level.

        An inlier is a model point whose nearest scan point lies within
        ``inlier_distance_factor * voxel_size``.
        """
        voxel = float(scan.voxel_size or model.voxel_size or 0.0)
        if model.is_empty or scan.is_empty or voxel <= 0:
            return RegistrationMetrics(0.0, float("inf"), iterations, voxel)

        inlier_distance = self.inlier_distance_factor * voxel
        # Cells as large as the inlier distance make the window search exact for the threshold
        index = create_neighbor_index(
            scan.points, inlier_distance, backend=self.nn_backend, max_distance=inlier_distance
        )
        _, d2 = index.query(pose.apply(model.points))
        inlier = d2 <= inlier_distance ** 2
        n_inliers = int(np.count_nonzero(inlier))
        rmse = float(np.sqrt(np.mean(d2[inlier]))) if n_inliers else float("inf")
        return RegistrationMetrics(
            inlier_fraction=n_inliers / len(model),
            rmse_meters=rmse,
            iterations=iterations,
            finest_voxel_size=voxel,
        )

    # ------------------------ Seeds ------------------------
    def refine_one(
        self,
        seed: CoarseSeed,
        model_pyramid: Sequence[PointCloud],
        scan_pyramid: Sequence[PointCloud],
        params_per_level: Sequence[ICPParams],
        cancel_check: Optional[CancelCheck] = None,
        indices: Optional[Sequence] = None,
    ) -> SeedResult:
        """Refine one seed across all levels and evaluate on the finest level."""
        _check_pyramids(model_pyramid, scan_pyramid, params_per_level)
        pose = seed.pose
        levels: List[LevelResult] = []
        cancelled = False

        for i, (model, scan, params) in enumerate(zip(model_pyramid, scan_pyramid, params_per_level)):
            if cancel_check is not None and cancel_check():
                cancelled = True
                break
            level = self.icp_level(
                model,
                scan,
                pose,
                params,
                cancel_check=cancel_check,
                index=indices[i] if indices is not None else None,
            )
            levels.append(level)
            pose = level.pose
            logger.debug(
                "Seed %.1f deg, level %d (voxel=%s): %s after %d iterations, rmse=%.6f, corr=%d",
                seed.yaw_degrees,
                i,
                level.voxel_size,
                level.status,
                level.iterations,
                level.rmse,
                level.n_correspondences,
            )
            if level.status == "cancelled":
                cancelled = True
                break

        total_iterations = sum(level.iterations for level in levels)
        metrics = self.evaluate(model_pyramid[-1], scan_pyramid[-1], pose, iterations=total_iterations)
        return SeedResult(seed=seed, pose=pose, metrics=metrics, levels=levels, cancelled=cancelled)

    def refine_all(
        self,
        model_pyramid: Sequence[PointCloud],
        scan_pyramid: Sequence[PointCloud],
        seeds: Sequence[CoarseSeed],
        params_per_level: Sequence[ICPParams],
        cancel_check: Optional[CancelCheck] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> List[SeedResult]:
        """
        Refine every seed; stops early (leaving later seeds out) on cancellation.

        With an executor, seeds run in worker processes and ``cancel_check``
        is only polled before dispatch.
        """
        _check_pyramids(model_pyramid, scan_pyramid, params_per_level)
        seeds = list(seeds)
        if not seeds:
            return []

        if self.executor is not None and len(seeds) > 1:
            if cancel_check is not None and cancel_check():
                return []
            return self.executor.map_seeds(
                items=seeds,
                worker_fn=refine_seed,
                worker_kwargs={
                    "model_pyramid": list(model_pyramid),
                    "scan_pyramid": list(scan_pyramid),
                    "params_per_level": list(params_per_level),
                    "settings": self.settings(),
                },
                progress_callback=progress_callback,
            )

        # Scan indices only depend on the level, so share them across seeds
        indices = [self._scan_index(scan, params) for scan, params in zip(scan_pyramid, params_per_level)]
        results: List[SeedResult] = []
        for k, seed in enumerate(seeds):
            if cancel_check is not None and cancel_check():
                logger.info("Refinement cancelled after %d of %d seeds.", k, len(seeds))
                break
            result = self.refine_one(
                seed, model_pyramid, scan_pyramid, params_per_level, cancel_check=cancel_check, indices=indices
            )
            results.append(result)
            logger.info(
                "Seed %d/%d (yaw %.1f deg): rmse=%.6f m, inliers=%.3f, iterations=%d",
                k + 1,
                len(seeds),
                seed.yaw_degrees,
                result.metrics.rmse_meters,
                result.metrics.inlier_fraction,
                result.metrics.iterations,
            )
            if progress_callback:
                progress_callback(k + 1, len(seeds))
            if result.cancelled:
                logger.info("Refinement cancelled during seed %d of %d.", k + 1, len(seeds))
                break
        return results

    @staticmethod
    def select_best(results: Sequence[SeedResult]) -> SeedResult:
        """
        Lowest-RMSE completed seed (first one wins ties).

        A seed that found correspondences on some level is usable even when
        its final pose has no inliers; such a best-effort result only wins
        when no other usable seed scores a finite RMSE.

        Raises:
            ICPFailedError: No seed completed, or every completed seed found
                zero correspondences on every level.
        """
        completed = [r for r in results if not r.cancelled]
        if not completed:
            raise ICPFailedError("Refinement was cancelled before any seed completed")
        usable = [r for r in completed if r.found_correspondences]
        if not usable:
            raise ICPFailedError("No seed produced correspondences with the scan")
        return min(usable, key=lambda r: r.metrics.rmse_meters)

    def refine(
        self,
        model_pyramid: Sequence[PointCloud],
        scan_pyramid: Sequence[PointCloud],
        seeds: Sequence[CoarseSeed],
        params_per_level: Sequence[ICPParams],
        cancel_check: Optional[CancelCheck] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> Tuple[Pose, RegistrationMetrics]:
        """
        Refine all seeds and return the best pose with its metrics.

        Args:
            model_pyramid: Model clouds, coarse to fine
            scan_pyramid: Scan clouds, coarse to fine (same length)
            seeds: Initial poses
            params_per_level: ICPParams per level (same length)
            cancel_check: Cooperative cancellation, polled between seeds,
                levels and iterations
            progress_callback: callback(completed_seeds, total_seeds)

        Returns:
            Tuple of (best_pose, metrics)
        """
        results = self.refine_all(
            model_pyramid,
            scan_pyramid,
            seeds,
            params_per_level,
            cancel_check=cancel_check,
            progress_callback=progress_callback,
        )
        best = self.select_best(results)
        return best.pose, best.metrics


def _check_pyramids(
    model_pyramid: Sequence[PointCloud],
    scan_pyramid: Sequence[PointCloud],
    params_per_level: Sequence[ICPParams],
) -> None:
    if not (len(model_pyramid) == len(scan_pyramid) == len(params_per_level)):
        raise ValueError(
            "Pyramid lengths differ: "
            f"model={len(model_pyramid)}, scan={len(scan_pyramid)}, params={len(params_per_level)}"
        )
    if len(model_pyramid) == 0:
        raise ValueError("At least one pyramid level is required")


def refine_seed(
    seed: CoarseSeed,
    *,
    model_pyramid: Sequence[PointCloud],
    scan_pyramid: Sequence[PointCloud],
    params_per_level: Sequence[ICPParams],
    settings: Optional[Dict[str, object]] = None,
) -> SeedResult:
    """
    Worker entry point: refine one seed in a fresh ICPRefiner.

    Module level so it can be pickled by the parallel executor.
    """
    refiner = ICPRefiner(**(settings or {}))
    return refiner.refine_one(seed, model_pyramid, scan_pyramid, params_per_level)
