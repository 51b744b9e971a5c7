"""
Export utilities for registration inputs and results.

Provides functions to write point clouds to LAS/LAZ (with optional per-point
confidence) and to .npy arrays, e.g. for synthetic test data or for aligned
models re-expressed in the scan frame.
"""

from pathlib import Path
from typing import Optional

import laspy
import numpy as np

from .logging import setup_logger

logger = setup_logger(__name__)


def export_points_to_las(
    points: np.ndarray,
    output_path: str,
    *,
    confidences: Optional[np.ndarray] = None,
    scale: float = 1e-4,
) -> str:
    """
    Export points to a LAS/LAZ file.

    Confidences (0-255) are stored in the standard ``user_data`` dimension so
    `PointCloudLoader` picks them up again.

    Args:
        points: (N, 3) array of point coordinates
        output_path: Path for output file (extension determines format)
        confidences: Optional (N,) confidence values
        scale: Coordinate scale (m per integer step)

    Returns:
        Path to created file
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    points = np.asarray(points, dtype=np.float64)
    if points.ndim != 2 or points.shape[1] != 3:
        raise ValueError(f"points must be (N, 3), got {points.shape}")

    header = laspy.LasHeader(point_format=6, version="1.4")
    header.scales = np.array([scale, scale, scale])
    header.offsets = points.min(axis=0) if len(points) else np.zeros(3)

    las = laspy.LasData(header)
    las.x = points[:, 0]
    las.y = points[:, 1]
    las.z = points[:, 2]

    if confidences is not None:
        conf = np.asarray(confidences).reshape(-1)
        if len(conf) != len(points):
            raise ValueError(f"confidences must be (N,), got {conf.shape}")
        las.user_data = np.clip(conf, 0, 255).astype(np.uint8)

    las.write(str(output_path))
    logger.info(f"Exported {len(points):,} points to {output_path}")

    return str(output_path)


def export_points_to_npy(points: np.ndarray, output_path: str, *, confidences: Optional[np.ndarray] = None) -> str:
    """Write Nx3 points (or Nx4 with a confidence column) to a .npy file."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    data = np.asarray(points, dtype=np.float64)
    if confidences is not None:
        data = np.column_stack([data, np.asarray(confidences, dtype=np.float64)])
    np.save(output_path, data)
    logger.info(f"Exported {len(data):,} points to {output_path}")
    return str(output_path)
