"""
Point Cloud Preprocessing Module

This module turns raw points into registration-ready clouds.
It includes methods for:
- Data loading and validation (LAS/LAZ, numpy, text)
- Range and confidence filtering of raw scans
- Voxel centroid downsampling into a coarse-to-fine pyramid
- Surface normal estimation oriented by gravity
"""

from .loader import PointCloudLoader
from .normals import estimate_normals
from .pyramid import (
    PointCloud,
    PreprocessParams,
    build_model_pyramid,
    build_pyramid,
    compute_bounds,
    voxelize,
)

__all__ = [
    "PointCloudLoader",
    "PointCloud",
    "PreprocessParams",
    "build_pyramid",
    "build_model_pyramid",
    "compute_bounds",
    "voxelize",
    "estimate_normals",
]
