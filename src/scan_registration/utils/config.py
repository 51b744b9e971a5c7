"""
Configuration management for scan-registration.

Provides a typed pydantic model and YAML loader with sensible defaults.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Literal, List, Any, Dict

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator
import yaml


# -----------------------
# Typed config structures
# -----------------------


class PreprocessingConfig(BaseModel):
    min_range: float = Field(default=0.25, ge=0.0, description="Minimum sensor distance (m) kept by the range filter")
    max_range: float = Field(default=5.0, gt=0.0, description="Maximum sensor distance (m) kept by the range filter")
    min_confidence: int = Field(
        default=128,
        ge=0,
        le=255,
        description="Minimum per-point confidence (0-255) when confidences are supplied",
    )
    normal_radius_factor: float = Field(
        default=3.0,
        gt=0.0,
        description="Normal estimation neighborhood radius as a multiple of the voxel size",
    )
    min_normal_neighbors: int = Field(
        default=3,
        ge=3,
        description="Minimum neighbors for a PCA normal; fewer falls back to the up vector",
    )

    @model_validator(mode="after")
    def _check_range(self) -> "PreprocessingConfig":
        if self.min_range > self.max_range:
            raise ValueError(f"min_range ({self.min_range}) must not exceed max_range ({self.max_range})")
        return self


class PyramidConfig(BaseModel):
    voxel_sizes: List[float] = Field(
        default_factory=lambda: [0.02, 0.01, 0.007],
        description="Voxel sizes (m) ordered coarse to fine",
    )

    @field_validator("voxel_sizes")
    @classmethod
    def _check_voxel_sizes(cls, value: List[float]) -> List[float]:
        if not value:
            raise ValueError("voxel_sizes must contain at least one level")
        if any(v <= 0 for v in value):
            raise ValueError("voxel_sizes must be positive")
        if any(b > a for a, b in zip(value, value[1:])):
            raise ValueError("voxel_sizes must be ordered coarse to fine (non-increasing)")
        return value


class CoarseConfig(BaseModel):
    seed_yaw_degrees: List[float] = Field(default_factory=lambda: [0.0, 90.0, 180.0, 270.0])
    prescore: bool = Field(
        default=False,
        description="Rank seeds by a sampled nearest-neighbor score before ICP",
    )
    prescore_samples: int = Field(default=500, gt=0, description="Model points sampled for seed pre-scoring")
    refine_seed_yaw: bool = Field(
        default=False,
        description="Polish each seed with one round of yaw-only closed-form alignment",
    )


class ICPScheduleConfig(BaseModel):
    trim_fraction: float = Field(default=0.7, gt=0.0, le=1.0)
    max_correspondence_factor: float = Field(
        default=4.0,
        gt=0.0,
        description="Max correspondence distance as a multiple of the level voxel size",
    )
    huber_factor: float = Field(default=2.0, gt=0.0, description="Huber delta as a multiple of the level voxel size")
    min_normal_dot: List[float] = Field(
        default_factory=lambda: [0.75, 0.80, 0.85],
        description="Normal compatibility gate per level (coarse to fine; last value repeats)",
    )
    max_iterations: List[int] = Field(
        default_factory=lambda: [20, 15, 12],
        description="Iteration budget per level (coarse to fine; last value repeats)",
    )
    convergence_factor: float = Field(
        default=1e-3,
        gt=0.0,
        description="Stop a level when |delta RMSE| < factor * voxel size",
    )
    inlier_distance_factor: float = Field(
        default=3.0,
        gt=0.0,
        description="Inlier distance for final metrics as a multiple of the finest voxel size",
    )
    pivot_epsilon: float = Field(default=1e-9, gt=0.0, description="Relative pivot threshold of the 6x6 solve")
    nn_backend: Literal["grid", "kdtree"] = Field(default="grid")

    @field_validator("min_normal_dot")
    @classmethod
    def _check_normal_dot(cls, value: List[float]) -> List[float]:
        if not value or any(not (0.0 <= v <= 1.0) for v in value):
            raise ValueError("min_normal_dot values must lie in [0, 1]")
        return value

    @field_validator("max_iterations")
    @classmethod
    def _check_iterations(cls, value: List[int]) -> List[int]:
        if not value or any(v < 0 for v in value):
            raise ValueError("max_iterations values must be non-negative")
        return value


class ParallelConfig(BaseModel):
    enabled: bool = Field(default=False, description="Refine independent seeds in worker processes")
    n_workers: Optional[int] = Field(default=None, description="Number of worker processes (None = auto-detect: cpu_count - 1)")


class LoggingConfig(BaseModel):
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(default="INFO")
    file: Optional[str] = Field(default=None)


class AppConfig(BaseModel):
    preprocessing: PreprocessingConfig = Field(default_factory=PreprocessingConfig)
    pyramid: PyramidConfig = Field(default_factory=PyramidConfig)
    coarse: CoarseConfig = Field(default_factory=CoarseConfig)
    icp: ICPScheduleConfig = Field(default_factory=ICPScheduleConfig)
    parallel: ParallelConfig = Field(default_factory=ParallelConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


# -----------------------
# Loader
# -----------------------


def _project_root() -> Path:
    """
    Resolve the repository root directory.

    File is at: repo_root/src/scan_registration/utils/config.py
    parents sequence:
      0 -> .../src/scan_registration/utils
      1 -> .../src/scan_registration
      2 -> .../src
      3 -> repo_root
    """
    return Path(__file__).resolve().parents[3]


def load_config(path: Optional[str | Path] = None, *, allow_missing: bool = True) -> AppConfig:
    """
    Load configuration from YAML into a typed AppConfig.

    Search order when path is None:
    1) repo_root/config/default.yaml
    2) if missing and allow_missing=True: return default AppConfig()

    Args:
        path: Explicit YAML file path.
        allow_missing: If True, returns defaults when file missing; otherwise raises.

    Returns:
        AppConfig instance
    """
    cfg_path: Path
    if path is None:
        cfg_path = _project_root() / "config" / "default.yaml"
    else:
        cfg_path = Path(path)

    if not cfg_path.exists():
        if allow_missing:
            return AppConfig()
        raise FileNotFoundError(f"Config file not found: {cfg_path}")

    with cfg_path.open("r", encoding="utf-8") as f:
        raw: Dict[str, Any] = yaml.safe_load(f) or {}

    try:
        return AppConfig.model_validate(raw)
    except ValidationError as e:
        # Re-raise with context to help users fix the YAML
        raise ValueError(f"Invalid configuration in {cfg_path}: {e}")
