"""
Model-to-scan registration pipeline.

Runs the stages in order: preprocessing (scan and model pyramids), coarse
seeding on the coarsest level, multi-level ICP refinement per seed and
selection of the best pose.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np

from ..acceleration.parallel_executor import SeedParallelExecutor
from ..preprocessing.pyramid import PreprocessParams, build_model_pyramid, build_pyramid
from ..utils.config import AppConfig, ICPScheduleConfig, load_config
from ..utils.logging import setup_logger
from ..utils.transforms import Pose, normalize_vector
from .coarse_registration import CoarsePoseEstimator
from .errors import ICPFailedError, InsufficientPointsError
from .fine_registration import (
    CancelCheck,
    ICPParams,
    ICPRefiner,
    ProgressCallback,
    RegistrationMetrics,
    SeedResult,
)

logger = setup_logger(__name__)


@dataclass
class RegistrationRequest:
    """
    Inputs of one registration call.

    Attributes:
        scan_points: Nx3 raw scan points in the sensor frame
        model_points: Mx3 raw model points
        gravity_up: Up vector of the scan frame
        voxel_pyramid: Voxel sizes, coarse to fine
        seed_yaw_degrees: Candidate yaw angles for coarse seeding
        trim_fraction: Fraction of correspondences kept per ICP iteration
        scan_confidences: Optional per-point scan confidence (0-255)
    """

    scan_points: np.ndarray
    model_points: np.ndarray
    gravity_up: np.ndarray = field(default_factory=lambda: np.array([0.0, 0.0, 1.0]))
    voxel_pyramid: Sequence[float] = (0.02, 0.01, 0.007)
    seed_yaw_degrees: Sequence[float] = (0.0, 90.0, 180.0, 270.0)
    trim_fraction: float = 0.7
    scan_confidences: Optional[np.ndarray] = None


@dataclass
class RegistrationOutput:
    pose: Pose
    metrics: RegistrationMetrics
    seed_results: List[SeedResult] = field(default_factory=list)


def _schedule_value(values: Sequence, level: int):
    return values[min(level, len(values) - 1)]


def derive_level_params(
    voxel_pyramid: Sequence[float],
    trim_fraction: float,
    schedule: Optional[ICPScheduleConfig] = None,
) -> List[ICPParams]:
    """
    ICP settings for each pyramid level.

    Distances scale with the level voxel size (correspondence gate
    ``max_correspondence_factor * voxel``, Huber delta ``huber_factor * voxel``);
    the normal gate and the iteration budget follow the configured per-level
    lists, repeating the last entry for deeper pyramids.
    """
    if schedule is None:
        schedule = ICPScheduleConfig()
    params = []
    for level, voxel in enumerate(voxel_pyramid):
        params.append(
            ICPParams(
                max_iterations=int(_schedule_value(schedule.max_iterations, level)),
                max_correspondence_distance=schedule.max_correspondence_factor * voxel,
                min_normal_dot=float(_schedule_value(schedule.min_normal_dot, level)),
                trim_fraction=trim_fraction,
                huber_delta=schedule.huber_factor * voxel,
            )
        )
    return params


class RegistrationPipeline:
    """Coordinates preprocessing, coarse seeding and ICP refinement."""

    def __init__(self, config: Optional[AppConfig] = None):
        self.config = config if config is not None else AppConfig()
        cfg = self.config

        self.coarse = CoarsePoseEstimator(
            prescore=cfg.coarse.prescore,
            prescore_samples=cfg.coarse.prescore_samples,
            refine_seed_yaw=cfg.coarse.refine_seed_yaw,
            nn_backend=cfg.icp.nn_backend,
        )
        executor = None
        if cfg.parallel.enabled:
            executor = SeedParallelExecutor(n_workers=cfg.parallel.n_workers)
        self.refiner = ICPRefiner(
            convergence_factor=cfg.icp.convergence_factor,
            inlier_distance_factor=cfg.icp.inlier_distance_factor,
            pivot_epsilon=cfg.icp.pivot_epsilon,
            nn_backend=cfg.icp.nn_backend,
            executor=executor,
        )

    @classmethod
    def default(cls) -> "RegistrationPipeline":
        """Pipeline configured from ``config/default.yaml`` (or built-in defaults)."""
        return cls(load_config())

    def register(
        self,
        request: RegistrationRequest,
        cancel_check: Optional[CancelCheck] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> RegistrationOutput:
        """
        Align the request's model onto its scan.

        Raises:
            InsufficientPointsError: Scan or model is empty at the coarsest level
            ICPFailedError: No seeds, or every seed found zero correspondences
                on every level
            ValueError: Invalid up vector or malformed inputs
        """
        start = time.time()
        voxel_sizes = [float(v) for v in request.voxel_pyramid]
        if not voxel_sizes:
            raise InsufficientPointsError("Voxel pyramid is empty")
        up = normalize_vector(request.gravity_up, name="gravity_up")

        logger.info("=== STEP 1: Preprocessing ===")
        pre_params = PreprocessParams.from_config(self.config.preprocessing, voxel_sizes)
        scan_pyramid = build_pyramid(request.scan_points, up, pre_params, confidences=request.scan_confidences)
        model_pyramid = build_model_pyramid(request.model_points, up, voxel_sizes, params=pre_params)
        logger.info(
            "Scan pyramid: %s points; model pyramid: %s points",
            [len(c) for c in scan_pyramid],
            [len(c) for c in model_pyramid],
        )
        if scan_pyramid[0].is_empty or model_pyramid[0].is_empty:
            raise InsufficientPointsError(
                f"Not enough points at the coarsest level (scan={len(scan_pyramid[0])}, "
                f"model={len(model_pyramid[0])})"
            )

        logger.info("=== STEP 2: Coarse alignment ===")
        seeds = self.coarse.seeds(model_pyramid[0], scan_pyramid[0], up, request.seed_yaw_degrees)
        if not seeds:
            raise ICPFailedError("No coarse seeds generated")

        logger.info("=== STEP 3: ICP refinement ===")
        params_per_level = derive_level_params(voxel_sizes, request.trim_fraction, self.config.icp)
        for level, (voxel, params) in enumerate(zip(voxel_sizes, params_per_level)):
            logger.info(
                "Level %d: voxel=%.4f m, max_corr=%.4f m, huber=%.4f m, normal_dot=%.2f, iterations=%d",
                level,
                voxel,
                params.max_correspondence_distance,
                params.huber_delta,
                params.min_normal_dot,
                params.max_iterations,
            )
        seed_results = self.refiner.refine_all(
            model_pyramid,
            scan_pyramid,
            seeds,
            params_per_level,
            cancel_check=cancel_check,
            progress_callback=progress_callback,
        )
        best = self.refiner.select_best(seed_results)

        logger.info("=== Registration complete ===")
        logger.info(
            "Best seed yaw %.1f deg: rmse=%.6f m, inliers=%.1f%%, iterations=%d, %s (%.2fs)",
            best.seed.yaw_degrees,
            best.metrics.rmse_meters,
            100.0 * best.metrics.inlier_fraction,
            best.metrics.iterations,
            best.pose,
            time.time() - start,
        )
        return RegistrationOutput(pose=best.pose, metrics=best.metrics, seed_results=seed_results)

    def register_points(
        self,
        model_points: np.ndarray,
        scan_points: np.ndarray,
        gravity_up: Sequence[float] = (0.0, 0.0, 1.0),
        *,
        voxel_pyramid: Optional[Sequence[float]] = None,
        seed_yaw_degrees: Optional[Sequence[float]] = None,
        trim_fraction: Optional[float] = None,
        scan_confidences: Optional[np.ndarray] = None,
        cancel_check: Optional[CancelCheck] = None,
    ) -> RegistrationOutput:
        """Build a RegistrationRequest from configuration defaults and register it."""
        cfg = self.config
        request = RegistrationRequest(
            scan_points=np.asarray(scan_points, dtype=float),
            model_points=np.asarray(model_points, dtype=float),
            gravity_up=np.asarray(gravity_up, dtype=float),
            voxel_pyramid=tuple(voxel_pyramid if voxel_pyramid is not None else cfg.pyramid.voxel_sizes),
            seed_yaw_degrees=tuple(
                seed_yaw_degrees if seed_yaw_degrees is not None else cfg.coarse.seed_yaw_degrees
            ),
            trim_fraction=trim_fraction if trim_fraction is not None else cfg.icp.trim_fraction,
            scan_confidences=scan_confidences,
        )
        return self.register(request, cancel_check=cancel_check)
