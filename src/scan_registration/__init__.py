"""
Scan Registration Package

A Python package for aligning a reference model point cloud onto a live scan.
This package provides tools for preprocessing raw scans into multi-resolution
pyramids, generating gravity-aligned coarse pose seeds and refining them with
robust point-to-plane ICP (trimming and Huber weighting). The ICP solver is
implemented from scratch on the 6x6 normal equations.
"""

__version__ = "0.1.0"

from .preprocessing import *
from .alignment import *
from .utils import *

__all__ = [
    "preprocessing",
    "alignment",
    "acceleration",
    "utils",
]
