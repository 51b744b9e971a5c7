"""
Acceleration Module

This module provides performance infrastructure including:
- Bucketed spatial grid for nearest-neighbor correspondence search
- Exact kd-tree backend with the same interface
- Parallel processing for seed-level parallelization
"""

from .parallel_executor import SeedParallelExecutor
from .spatial_grid import KDTreeIndex, SpatialGridIndex, create_neighbor_index

__all__ = [
    "SpatialGridIndex",
    "KDTreeIndex",
    "create_neighbor_index",
    "SeedParallelExecutor",
]
