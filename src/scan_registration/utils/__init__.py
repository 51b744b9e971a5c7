"""
Utility Functions Module

This module provides common utility functions used across the scan registration project.
- Logging
- Configuration loading
- Point cloud filtering utilities
- Rigid transforms and small linear algebra
- Export utilities for LAS/LAZ and numpy
"""

from .logging import setup_logger, configure_logging
from .point_cloud_filters import (
    create_range_mask,
    create_confidence_mask,
    apply_scan_filter,
    get_filter_statistics,
)
from .transforms import Pose
from .export import export_points_to_las, export_points_to_npy

__all__ = [
    "setup_logger",
    "configure_logging",
    "create_range_mask",
    "create_confidence_mask",
    "apply_scan_filter",
    "get_filter_statistics",
    "Pose",
    "export_points_to_las",
    "export_points_to_npy",
]
