"""
Evaluation metrics for position estimates.

Error statistics of estimated positions against ground truth, and
consistency checks of the reported position covariances (NEES and
chi-square confidence regions).
"""

from typing import Dict, Tuple

import numpy as np
from scipy import stats


def compute_position_errors(truth: np.ndarray, estimated: np.ndarray) -> np.ndarray:
    """
    Error vectors estimated − truth.

    Args:
        truth: True positions, shape (d,) or (N, d).
        estimated: Estimated positions, same shape as truth.

    Returns:
        Error vectors, same shape as the inputs.

    Raises:
        ValueError: If the shapes differ.
    """
    truth = np.asarray(truth, dtype=float)
    estimated = np.asarray(estimated, dtype=float)
    if truth.shape != estimated.shape:
        raise ValueError(
            f"Shape mismatch: truth {truth.shape} vs estimated {estimated.shape}"
        )
    return estimated - truth


def compute_rmse(errors: np.ndarray) -> float:
    """
    Root mean square of the error magnitudes.

    Args:
        errors: Error vectors (N, d), or scalar errors (N,).

    Returns:
        RMSE in the unit of the errors.
    """
    errors = np.asarray(errors, dtype=float)
    if errors.ndim > 1:
        squared = np.sum(errors**2, axis=1)
    else:
        squared = errors**2
    return float(np.sqrt(np.mean(squared)))


def compute_error_stats(errors: np.ndarray) -> Dict[str, float]:
    """
    Summary statistics of the error magnitudes.

    Args:
        errors: Error vectors (N, d), or scalar errors (N,).

    Returns:
        Dictionary with 'mean', 'median', 'std', 'rmse', 'p90', 'p95', 'max'.
    """
    errors = np.asarray(errors, dtype=float)
    magnitudes = np.linalg.norm(errors, axis=1) if errors.ndim > 1 else np.abs(errors)

    return {
        "mean": float(np.mean(magnitudes)),
        "median": float(np.median(magnitudes)),
        "std": float(np.std(magnitudes)),
        "rmse": float(np.sqrt(np.mean(magnitudes**2))),
        "p90": float(np.percentile(magnitudes, 90)),
        "p95": float(np.percentile(magnitudes, 95)),
        "max": float(np.max(magnitudes)),
    }


def compute_nees(
    truth: np.ndarray, estimated: np.ndarray, covariance: np.ndarray
) -> np.ndarray:
    """
    Normalized Estimation Error Squared.

        NEES = (x̂ − x)ᵀ P⁻¹ (x̂ − x)

    For a consistent estimator NEES is chi-square distributed with d degrees
    of freedom.

    Args:
        truth: True positions, shape (d,) or (N, d).
        estimated: Estimated positions, same shape as truth.
        covariance: Covariances, shape (d, d) or (N, d, d).

    Returns:
        NEES values, shape (N,). NaN where a covariance is singular.
    """
    errors = np.atleast_2d(compute_position_errors(truth, estimated))
    covariance = np.asarray(covariance, dtype=float)
    n_samples, dim = errors.shape
    if covariance.ndim == 2:
        covariance = covariance[np.newaxis]
    if covariance.shape != (n_samples, dim, dim):
        raise ValueError(
            f"covariance must have shape ({n_samples}, {dim}, {dim}), "
            f"got {covariance.shape}"
        )

    nees = np.empty(n_samples)
    for i, (error, P) in enumerate(zip(errors, covariance)):
        try:
            nees[i] = error @ np.linalg.solve(P, error)
        except np.linalg.LinAlgError:
            nees[i] = np.nan
    return nees


def nees_bounds(dof: int, confidence: float = 0.95) -> Tuple[float, float]:
    """
    Two-sided chi-square interval a consistent NEES falls in.

    Args:
        dof: Degrees of freedom (position dimension).
        confidence: Probability mass of the interval.

    Returns:
        (lower, upper).

    Example:
        >>> lower, upper = nees_bounds(2)
        >>> 5.5 < upper < 8.0
        True
    """
    if dof < 1:
        raise ValueError(f"Degrees of freedom must be positive, got {dof}")
    if not 0 < confidence < 1:
        raise ValueError(f"Confidence level must be in (0, 1), got {confidence}")
    lower = float(stats.chi2.ppf((1.0 - confidence) / 2.0, dof))
    upper = float(stats.chi2.ppf((1.0 + confidence) / 2.0, dof))
    return lower, upper


def confidence_ellipse(
    covariance: np.ndarray, confidence: float = 0.95
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Confidence region of a position covariance.

    The region {x : xᵀ P⁻¹ x ≤ χ²_d(confidence)} is an ellipse (2D) or
    ellipsoid (3D) whose semi-axes are sqrt(χ² λ_k) along the eigenvectors
    of P.

    Args:
        covariance: Symmetric PSD covariance, shape (d, d).
        confidence: Probability mass enclosed by the region.

    Returns:
        semi_axes: Semi-axis lengths, shape (d,), in decreasing order.
        axes: Unit axis directions as columns, shape (d, d).

    Example:
        >>> semi_axes, axes = confidence_ellipse(np.diag([4.0, 1.0]))
        >>> semi_axes / semi_axes[1]
        array([2., 1.])
    """
    covariance = np.asarray(covariance, dtype=float)
    if covariance.ndim != 2 or covariance.shape[0] != covariance.shape[1]:
        raise ValueError(f"covariance must be square, got shape {covariance.shape}")
    if not 0 < confidence < 1:
        raise ValueError(f"Confidence level must be in (0, 1), got {confidence}")

    eigvals, eigvecs = np.linalg.eigh(0.5 * (covariance + covariance.T))
    order = np.argsort(eigvals)[::-1]
    eigvals = np.clip(eigvals[order], 0.0, None)
    eigvecs = eigvecs[:, order]

    scale = stats.chi2.ppf(confidence, covariance.shape[0])
    return np.sqrt(scale * eigvals), eigvecs
