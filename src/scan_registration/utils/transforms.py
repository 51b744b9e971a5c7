"""
Rigid transforms for scan-to-model registration.

A `Pose` maps model-local coordinates into the scan (world) frame:

    p_world = R @ p_model + t

It is stored as a 4x4 homogeneous matrix. Composition follows matrix
multiplication, so ``a.compose(b)`` applies ``b`` first and ``a`` second.
Incremental ICP updates are only approximately orthonormal; callers
re-project them with `Pose.orthonormalized` after composing.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Union, TYPE_CHECKING

import numpy as np

from .linalg import polar_orthonormalize, skew

if TYPE_CHECKING:
    from numpy.typing import NDArray


def normalize_vector(v: "NDArray[np.floating]", *, name: str = "vector") -> np.ndarray:
    """Return ``v`` scaled to unit length; raise ValueError for a (near) zero vector."""
    arr = np.asarray(v, dtype=float).reshape(-1)
    if arr.shape != (3,):
        raise ValueError(f"{name} must have 3 components, got shape {arr.shape}")
    norm = float(np.linalg.norm(arr))
    if not np.isfinite(norm) or norm < 1e-12:
        raise ValueError(f"{name} must be a non-zero finite vector")
    return arr / norm


def rotation_about_axis(axis: "NDArray[np.floating]", angle_rad: float) -> np.ndarray:
    """Rodrigues rotation matrix for a right-handed rotation about ``axis``."""
    a = normalize_vector(axis, name="axis")
    K = skew(a)
    c = np.cos(angle_rad)
    s = np.sin(angle_rad)
    return np.eye(3) + s * K + (1.0 - c) * (K @ K)


def small_angle_update(xi: "NDArray[np.floating]") -> np.ndarray:
    """
    First-order SE(3) exponential of a twist ``xi = [w, v]``.

    Returns the 4x4 matrix ``[[I + skew(w), v], [0, 1]]``. The rotation block
    is only orthonormal to first order in ``|w|``.
    """
    xi = np.asarray(xi, dtype=float).reshape(6)
    T = np.eye(4)
    T[:3, :3] += skew(xi[:3])
    T[:3, 3] = xi[3:]
    return T


@dataclass(frozen=True, eq=False)
class Pose:
    """Rigid transform (rotation + translation) from the model frame to the scan frame.

    Attributes:
        matrix: 4x4 homogeneous transform. Stored as a read-only copy.

    Example:
        >>> pose = Pose.from_rotation_translation(np.eye(3), [0.5, 0.0, 0.0])
        >>> pose.apply(np.array([[0.0, 0.0, 0.0]]))
        array([[0.5, 0. , 0. ]])
    """

    matrix: np.ndarray = field(default_factory=lambda: np.eye(4))

    def __post_init__(self) -> None:
        m = np.array(self.matrix, dtype=float, copy=True)
        if m.shape != (4, 4):
            raise ValueError(f"Pose matrix must be 4x4, got {m.shape}")
        if not np.all(np.isfinite(m)):
            raise ValueError("Pose matrix must be finite")
        m.setflags(write=False)
        object.__setattr__(self, "matrix", m)

    # ------------------------ Constructors ------------------------
    @classmethod
    def identity(cls) -> "Pose":
        return cls(np.eye(4))

    @classmethod
    def from_rotation_translation(
        cls,
        rotation: "NDArray[np.floating]",
        translation: "NDArray[np.floating]",
    ) -> "Pose":
        R = np.asarray(rotation, dtype=float)
        t = np.asarray(translation, dtype=float).reshape(3)
        if R.shape != (3, 3):
            raise ValueError(f"Rotation must be 3x3, got {R.shape}")
        T = np.eye(4)
        T[:3, :3] = R
        T[:3, 3] = t
        return cls(T)

    @classmethod
    def from_translation(cls, translation: "NDArray[np.floating]") -> "Pose":
        return cls.from_rotation_translation(np.eye(3), translation)

    @classmethod
    def from_axis_angle(
        cls,
        axis: "NDArray[np.floating]",
        angle_deg: float,
        translation: "NDArray[np.floating]" = (0.0, 0.0, 0.0),
    ) -> "Pose":
        R = rotation_about_axis(axis, np.deg2rad(angle_deg))
        return cls.from_rotation_translation(R, translation)

    # ------------------------ Accessors ------------------------
    @property
    def rotation(self) -> np.ndarray:
        return self.matrix[:3, :3].copy()

    @property
    def translation(self) -> np.ndarray:
        return self.matrix[:3, 3].copy()

    # ------------------------ Algebra ------------------------
    def compose(self, other: "Pose") -> "Pose":
        """Return ``self ∘ other`` (apply ``other`` first)."""
        return Pose(self.matrix @ other.matrix)

    def __matmul__(self, other: "Pose") -> "Pose":
        return self.compose(other)

    def inverse(self) -> "Pose":
        R = self.matrix[:3, :3]
        t = self.matrix[:3, 3]
        return Pose.from_rotation_translation(R.T, -R.T @ t)

    def orthonormalized(self) -> "Pose":
        """Same translation, rotation block projected onto SO(3)."""
        return Pose.from_rotation_translation(polar_orthonormalize(self.matrix[:3, :3]), self.matrix[:3, 3])

    def is_orthonormal(self, tol: float = 1e-6) -> bool:
        R = self.matrix[:3, :3]
        return bool(np.allclose(R.T @ R, np.eye(3), atol=tol) and abs(np.linalg.det(R) - 1.0) < tol)

    # ------------------------ Application ------------------------
    def apply(self, points: "NDArray[np.floating]") -> np.ndarray:
        """
        Transform points from the model frame into the scan frame.

        Args:
            points: (N, 3) array or a single (3,) point.

        Returns:
            Transformed array with the same shape as the input.
        """
        pts = np.asarray(points, dtype=float)
        if pts.size == 0:
            return pts.reshape(-1, 3) if pts.ndim != 1 else pts
        R = self.matrix[:3, :3]
        t = self.matrix[:3, 3]
        return pts @ R.T + t

    def apply_to_normals(self, normals: "NDArray[np.floating]") -> np.ndarray:
        """Rotate direction vectors (no translation)."""
        n = np.asarray(normals, dtype=float)
        if n.size == 0:
            return n.reshape(-1, 3)
        return n @ self.matrix[:3, :3].T

    def yaw_degrees(self, up: "NDArray[np.floating]") -> float:
        """
        Rotation angle about ``up`` (degrees, in (-180, 180]).

        Measured by rotating a reference direction perpendicular to ``up`` and
        reading its angle in the plane orthogonal to ``up``.
        """
        u = normalize_vector(up, name="up")
        ref = np.cross(u, [1.0, 0.0, 0.0])
        if np.linalg.norm(ref) < 1e-6:
            ref = np.cross(u, [0.0, 1.0, 0.0])
        ref /= np.linalg.norm(ref)
        rotated = self.matrix[:3, :3] @ ref
        rotated -= u * float(rotated @ u)
        ortho = np.cross(u, ref)
        return float(np.rad2deg(np.arctan2(rotated @ ortho, rotated @ ref)))

    def rotation_angle_degrees(self) -> float:
        """Total rotation angle of the rotation block (degrees)."""
        cos_theta = (float(np.trace(self.matrix[:3, :3])) - 1.0) * 0.5
        return float(np.rad2deg(np.arccos(max(min(cos_theta, 1.0), -1.0))))

    # ------------------------ Serialization ------------------------
    def to_list(self) -> list:
        return self.matrix.tolist()

    def save(self, output_file: Union[str, Path]) -> None:
        """Save the 4x4 matrix to a text file."""
        np.savetxt(output_file, self.matrix, fmt='%.18e', header='4x4 model-to-scan transformation matrix')

    @classmethod
    def load(cls, input_file: Union[str, Path]) -> "Pose":
        """Load a 4x4 matrix written by `save` (or any whitespace-separated 4x4 text)."""
        transform = np.loadtxt(input_file)
        if transform.shape != (4, 4):
            raise ValueError(f"Expected 4x4 matrix, got shape {transform.shape}")
        return cls(transform)

    def __repr__(self) -> str:
        t = self.matrix[:3, 3]
        return (
            f"Pose(translation=[{t[0]:.4f}, {t[1]:.4f}, {t[2]:.4f}], "
            f"rotation_deg={self.rotation_angle_degrees():.3f})"
        )
