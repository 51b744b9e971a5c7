"""
Small dense linear algebra helpers used by registration.

- `symmetric_eigh3`: batched eigen-decomposition of symmetric 3x3 matrices
  (local covariance -> surface normal).
- `solve_gaussian`: Gaussian elimination with partial pivoting for the 6x6
  normal equations of point-to-plane ICP, reporting degeneracy instead of
  silently returning a least-squares answer.
- `polar_orthonormalize`: nearest proper rotation to a 3x3 matrix.
"""

from __future__ import annotations

from typing import Optional, Tuple

import numpy as np


def skew(v: np.ndarray) -> np.ndarray:
    """Cross-product matrix [v]x such that skew(v) @ u == cross(v, u)."""
    x, y, z = (float(c) for c in np.asarray(v, dtype=float).reshape(3))
    return np.array(
        [
            [0.0, -z, y],
            [z, 0.0, -x],
            [-y, x, 0.0],
        ]
    )


def symmetric_eigh3(matrices: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Eigen-decomposition of one or many symmetric 3x3 matrices.

    Args:
        matrices: (3, 3) or (N, 3, 3) symmetric matrices.

    Returns:
        Tuple of (eigenvalues, eigenvectors). Eigenvalues are ascending with
        shape (..., 3); eigenvectors are the columns of the (..., 3, 3) array,
        so ``vecs[..., :, 0]`` belongs to the smallest eigenvalue.
    """
    m = np.asarray(matrices, dtype=float)
    if m.shape[-2:] != (3, 3):
        raise ValueError(f"Expected (..., 3, 3) matrices, got shape {m.shape}")
    # Symmetrize to absorb accumulation round-off before the solver sees it
    m = 0.5 * (m + np.swapaxes(m, -1, -2))
    return np.linalg.eigh(m)


def solve_gaussian(
    A: np.ndarray,
    b: np.ndarray,
    *,
    pivot_epsilon: float = 1e-9,
    relative: bool = True,
) -> Optional[np.ndarray]:
    """
    Solve ``A x = b`` by Gaussian elimination with partial pivoting.

    Args:
        A: Square (n, n) matrix.
        b: Right-hand side (n,).
        pivot_epsilon: Pivot magnitude below which the system is degenerate.
        relative: If True the threshold is scaled by ``max(1, max|diag(A)|)``
            so that it does not depend on the units of the accumulated sums.

    Returns:
        Solution vector, or None when a pivot falls below the threshold.
    """
    M = np.array(A, dtype=float, copy=True)
    v = np.array(b, dtype=float, copy=True).reshape(-1)
    n = M.shape[0]
    if M.shape != (n, n) or v.shape[0] != n:
        raise ValueError(f"Incompatible system shapes: A{M.shape}, b{v.shape}")

    threshold = pivot_epsilon
    if relative:
        threshold *= max(1.0, float(np.max(np.abs(np.diag(M)))) if n else 1.0)

    for i in range(n):
        pivot_row = i + int(np.argmax(np.abs(M[i:, i])))
        if abs(M[pivot_row, i]) < threshold:
            return None
        if pivot_row != i:
            M[[i, pivot_row]] = M[[pivot_row, i]]
            v[[i, pivot_row]] = v[[pivot_row, i]]

        pivot = M[i, i]
        M[i, i:] /= pivot
        v[i] /= pivot

        # Eliminate the column from every other row (Gauss-Jordan)
        factors = M[:, i].copy()
        factors[i] = 0.0
        M[:, i:] -= np.outer(factors, M[i, i:])
        v -= factors * v[i]

    return v


def polar_orthonormalize(R: np.ndarray) -> np.ndarray:
    """
    Project a 3x3 matrix onto the nearest rotation (polar decomposition).

    Uses the SVD ``R = U S Vt`` and returns ``U Vt``, flipping the last
    singular direction when needed so the determinant is +1.
    """
    U, _, Vt = np.linalg.svd(np.asarray(R, dtype=float))
    Q = U @ Vt
    if np.linalg.det(Q) < 0:
        U[:, -1] *= -1
        Q = U @ Vt
    return Q
