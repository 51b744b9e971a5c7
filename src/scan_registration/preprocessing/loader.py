"""
Point Cloud Data Loader

This module handles loading and initial validation of raw scan and model
point clouds.
"""

import laspy
import numpy as np
from pathlib import Path
from typing import Optional
from ..utils.logging import setup_logger

logger = setup_logger(__name__)

LAS_SUFFIXES = ['.las', '.laz']
TEXT_SUFFIXES = ['.xyz', '.txt', '.csv']
NUMPY_SUFFIXES = ['.npy']


class PointCloudLoader:
    """
    A class for loading raw point clouds from disk.

    Features:
    - LAS/LAZ via laspy (confidence read from ``user_data`` or an extra dimension)
    - ``.npy`` arrays and ``.xyz/.txt/.csv`` text with 3 columns (X Y Z) or
      4 columns (X Y Z confidence)
    - Validation of coordinates
    """

    def __init__(self, *, confidence_field: Optional[str] = "user_data", drop_non_finite: bool = True):
        """
        Initialize the point cloud loader.

        Args:
            confidence_field: LAS dimension holding per-point confidence (0-255);
                None to ignore confidences in LAS files
            drop_non_finite: If True, rows with NaN/inf coordinates are removed
        """
        self.confidence_field = confidence_field
        self.drop_non_finite = drop_non_finite

    def load(self, file_path: str) -> dict:
        """
        Load a point cloud file and return its data and metadata.

        Args:
            file_path: Path to the point cloud

        Returns:
            dict with 'points' (Nx3 float64), 'confidences' (N, or None) and 'metadata'

        Raises:
            FileNotFoundError: If the file does not exist
            ValueError: If the file format is unsupported or invalid
        """
        file_path = Path(file_path)

        if not file_path.exists():
            raise FileNotFoundError(f"File not found: {file_path}")

        suffix = file_path.suffix.lower()
        if suffix not in LAS_SUFFIXES + TEXT_SUFFIXES + NUMPY_SUFFIXES:
            raise ValueError(f"Unsupported file format: {file_path.suffix}")

        logger.info(f"Loading point cloud data from {file_path}")

        try:
            if suffix in LAS_SUFFIXES:
                points, confidences = self._load_las(file_path)
            else:
                points, confidences = self._load_array(file_path, suffix)
        except Exception as e:
            logger.error(f"Error loading point cloud data from {file_path}: {e}")
            raise

        total_points = len(points)
        if self.drop_non_finite and total_points:
            finite = np.all(np.isfinite(points), axis=1)
            if not np.all(finite):
                logger.warning(f"Dropping {int(np.sum(~finite))} points with non-finite coordinates")
                points = points[finite]
                if confidences is not None:
                    confidences = confidences[finite]

        if len(points) == 0:
            logger.warning(f"No points found in file: {file_path}")

        metadata = {
            'filename': file_path.name,
            'file_path': str(file_path),
            'file_size_mb': file_path.stat().st_size / (1024 * 1024),
            'num_points': len(points),
            'has_confidence': confidences is not None,
            'bounds': _bounds_dict(points),
        }
        logger.info(f"Loaded {len(points)} points from {file_path.name}")

        return {
            'points': points,
            'confidences': confidences,
            'metadata': metadata,
        }

    def _load_las(self, file_path: Path) -> tuple:
        las = laspy.read(file_path)
        points = np.column_stack([
            np.array(las.x, dtype=np.float64),
            np.array(las.y, dtype=np.float64),
            np.array(las.z, dtype=np.float64),
        ])

        confidences = None
        if self.confidence_field:
            dims = set(las.point_format.dimension_names)
            if self.confidence_field in dims:
                confidences = np.array(las[self.confidence_field])
            else:
                logger.debug(f"Confidence field '{self.confidence_field}' not in {file_path.name}")
        return points, confidences

    def _load_array(self, file_path: Path, suffix: str) -> tuple:
        if suffix in NUMPY_SUFFIXES:
            data = np.load(file_path)
        else:
            delimiter = ',' if suffix == '.csv' else None
            data = np.loadtxt(file_path, delimiter=delimiter, ndmin=2)

        data = np.asarray(data, dtype=np.float64)
        if data.size == 0:
            return np.zeros((0, 3)), None
        if data.ndim != 2 or data.shape[1] not in (3, 4):
            raise ValueError(f"Expected 3 or 4 columns (X Y Z [confidence]), got shape {data.shape}")

        points = np.ascontiguousarray(data[:, :3])
        confidences = data[:, 3] if data.shape[1] == 4 else None
        return points, confidences

    def validate_file(self, file_path: str) -> bool:
        """
        Validate a point cloud file.

        Args:
            file_path: Path to the point cloud

        Returns:
            True if the file loads and has at least one finite point, False otherwise
        """
        try:
            data = PointCloudLoader(confidence_field=self.confidence_field, drop_non_finite=False).load(file_path)
        except (OSError, ValueError) as e:
            logger.warning(f"File validation failed for {file_path}: {e}")
            return False

        points = data['points']
        if len(points) == 0:
            logger.warning(f"No points found in file: {file_path}")
            return False
        if not np.all(np.isfinite(points)):
            logger.warning(f"Invalid coordinates in file: {file_path}")
            return False

        logger.info(f"File validated successfully: {file_path}")
        return True


def _bounds_dict(points: np.ndarray) -> Optional[dict]:
    if len(points) == 0:
        return None
    mins = points.min(axis=0)
    maxs = points.max(axis=0)
    return {
        'min_x': float(mins[0]),
        'max_x': float(maxs[0]),
        'min_y': float(mins[1]),
        'max_y': float(maxs[1]),
        'min_z': float(mins[2]),
        'max_z': float(maxs[2]),
    }
