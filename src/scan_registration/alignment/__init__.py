"""
Spatial Alignment Module

This module provides tools for aligning a model point cloud onto a scan:
gravity-aligned coarse seeding, multi-resolution point-to-plane ICP and the
pipeline that ties them together.
"""

from .errors import RegistrationError, InsufficientPointsError, ICPFailedError
from .coarse_registration import CoarseSeed, CoarsePoseEstimator, estimate_yaw_transform
from .fine_registration import (
    ICPParams,
    ICPRefiner,
    LevelResult,
    RegistrationMetrics,
    SeedResult,
    refine_seed,
)
from .pipeline import (
    RegistrationOutput,
    RegistrationPipeline,
    RegistrationRequest,
    derive_level_params,
)

__all__ = [
    "RegistrationError",
    "InsufficientPointsError",
    "ICPFailedError",
    "CoarseSeed",
    "CoarsePoseEstimator",
    "estimate_yaw_transform",
    "ICPParams",
    "ICPRefiner",
    "LevelResult",
    "RegistrationMetrics",
    "SeedResult",
    "refine_seed",
    "RegistrationOutput",
    "RegistrationPipeline",
    "RegistrationRequest",
    "derive_level_params",
]
