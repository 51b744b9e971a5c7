"""
Point Cloud Filtering Utilities

Shared utilities for filtering raw scan points before voxelization. Scans are
captured in the sensor frame, so the distance from the origin is the sensor
range of each sample; an optional per-point confidence (0-255) comes from the
depth sensor alongside the positions.
"""

from typing import Optional

import numpy as np


def create_range_mask(
    points: np.ndarray,
    min_range: float = 0.25,
    max_range: float = 5.0,
) -> np.ndarray:
    """Create a boolean mask keeping points whose sensor distance lies in [min_range, max_range].

    Args:
        points: Nx3 array of point coordinates in the sensor frame
        min_range: Minimum distance from the origin (inclusive)
        max_range: Maximum distance from the origin (inclusive)

    Returns:
        Boolean array indicating which points pass the filter (True = accept)

    Examples:
        >>> pts = np.array([[0.1, 0, 0], [1.0, 0, 0], [6.0, 0, 0]])
        >>> create_range_mask(pts, 0.25, 5.0)
        array([False,  True, False])
    """
    if min_range > max_range:
        raise ValueError(f"min_range ({min_range}) must not exceed max_range ({max_range})")
    if len(points) == 0:
        return np.zeros(0, dtype=bool)
    dist = np.linalg.norm(points, axis=1)
    return (dist >= min_range) & (dist <= max_range)


def create_confidence_mask(
    confidences: Optional[np.ndarray],
    n_points: int,
    min_confidence: int = 128,
) -> np.ndarray:
    """Create a boolean mask keeping points with confidence >= min_confidence.

    When no confidences are supplied every point is accepted.

    Args:
        confidences: Per-point confidence values (0-255) or None
        n_points: Number of points (used when confidences is None)
        min_confidence: Minimum accepted confidence (inclusive)

    Returns:
        Boolean array of length n_points
    """
    if confidences is None:
        return np.ones(n_points, dtype=bool)
    conf = np.asarray(confidences).reshape(-1)
    if len(conf) != n_points:
        raise ValueError(f"Expected {n_points} confidences, got {len(conf)}")
    return conf >= min_confidence


def apply_scan_filter(
    points: np.ndarray,
    confidences: Optional[np.ndarray] = None,
    min_range: float = 0.25,
    max_range: float = 5.0,
    min_confidence: int = 128,
) -> tuple[np.ndarray, np.ndarray]:
    """Filter raw scan points by sensor range and (optionally) confidence.

    Args:
        points: Nx3 array of point coordinates [X, Y, Z]
        confidences: Optional array of N confidence values
        min_range: Minimum sensor distance kept
        max_range: Maximum sensor distance kept
        min_confidence: Minimum confidence kept (ignored when confidences is None)

    Returns:
        Tuple of (filtered_points, mask). filtered_points has M rows where M <= N.
    """
    mask = create_range_mask(points, min_range, max_range)
    mask &= create_confidence_mask(confidences, len(points), min_confidence)
    return points[mask], mask


def get_filter_statistics(
    total_points: int,
    filtered_points: int,
    min_range: float,
    max_range: float,
    min_confidence: Optional[int] = None,
) -> dict:
    """Generate statistics about point filtering results.

    Useful for logging and validation of filtering operations.

    Args:
        total_points: Total number of points before filtering
        filtered_points: Number of points after filtering
        min_range: Minimum range that was applied
        max_range: Maximum range that was applied
        min_confidence: Confidence threshold that was applied, if any

    Returns:
        Dictionary with statistics including counts, percentage, and filter description
    """
    percentage = (filtered_points / total_points * 100.0) if total_points > 0 else 0.0

    filter_desc = f"range [{min_range:g}, {max_range:g}] m"
    if min_confidence is not None:
        filter_desc += f", confidence >= {min_confidence}"

    return {
        "total_points": total_points,
        "filtered_points": filtered_points,
        "percentage": percentage,
        "filter_description": filter_desc,
        "min_range": min_range,
        "max_range": max_range,
        "min_confidence": min_confidence,
    }
