"""
Geometry of radio source layouts.

The range Jacobian row of a source is the unit vector from the source to the
receiver, undefined when both coincide. A lateration covariance is only
meaningful when the sources span the space: not all on one line in 2D, not
all on one plane in 3D. Both are decided here.
"""

import warnings
from typing import Tuple

import numpy as np

# Ranges (m) below which a source has no defined direction
MIN_RANGE = 1e-10

# Relative singular value below which a layout loses a dimension
DEGENERACY_TOL = 1e-6


def range_jacobian(
    position: np.ndarray, sources: np.ndarray, min_range: float = MIN_RANGE
) -> np.ndarray:
    """
    Jacobian of the ranges ‖p − s_i‖ with respect to p.

    Row i is (p − s_i) / ‖p − s_i‖. Rows of sources closer than min_range to
    p are zeroed and a RuntimeWarning is issued.

    Args:
        position: Receiver position p, shape (d,).
        sources: Source positions, shape (N, d).
        min_range: Smallest range with a defined direction.

    Returns:
        Jacobian, shape (N, d).

    Example:
        >>> range_jacobian(np.array([3.0, 4.0]), np.zeros((1, 2)))
        array([[0.6, 0.8]])
    """
    diff = np.asarray(position, dtype=float) - np.asarray(sources, dtype=float)
    ranges = np.linalg.norm(diff, axis=1)

    singular = ranges < min_range
    J = diff / np.where(singular, 1.0, ranges)[:, np.newaxis]
    if np.any(singular):
        J[singular] = 0.0
        warnings.warn(
            f"{np.count_nonzero(singular)} source(s) closer than {min_range} m to the "
            "position; their Jacobian rows are set to zero.",
            RuntimeWarning,
        )
    return J


def affine_rank(points: np.ndarray, tol: float = DEGENERACY_TOL) -> int:
    """
    Dimension of the affine hull of a set of points.

    0 for coincident points, 1 for colinear points, 2 for coplanar points.
    Singular values of the centered points below tol times the largest one
    are treated as zero.
    """
    points = np.asarray(points, dtype=float)
    if len(points) < 2:
        return 0

    singular_values = np.linalg.svd(points - points.mean(axis=0), compute_uv=False)
    if singular_values[0] <= 0.0:
        return 0
    return int(np.count_nonzero(singular_values > tol * singular_values[0]))


def check_source_geometry(sources: np.ndarray) -> Tuple[bool, int, str]:
    """
    Check whether sources determine a position and its covariance.

    Args:
        sources: Source positions, shape (N, 2) or (N, 3).

    Returns:
        (is_valid, rank, message): rank is the affine rank of the sources,
        message describes the problem and is empty for a valid layout.

    Raises:
        ValueError: If sources does not have shape (N, 2) or (N, 3).

    Example:
        >>> check_source_geometry(np.array([[0, 0], [5, 0], [10, 0]]))
        (False, 1, 'Sources are colinear (rank 1 < 2); the position is ambiguous.')
    """
    sources = np.asarray(sources, dtype=float)
    if sources.ndim != 2 or sources.shape[1] not in (2, 3):
        raise ValueError(f"sources must have shape (N, 2) or (N, 3), got {sources.shape}")

    n_sources, dim = sources.shape
    rank = affine_rank(sources)

    if n_sources < dim + 1:
        return False, rank, (
            f"Insufficient sources: {dim}D lateration needs {dim + 1}, got {n_sources}."
        )
    if rank < dim:
        layout = "colinear" if dim == 2 else "coplanar"
        return False, rank, (
            f"Sources are {layout} (rank {rank} < {dim}); the position is ambiguous."
        )
    return True, rank, ""
