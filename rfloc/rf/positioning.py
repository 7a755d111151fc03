"""
Lateration from distances to radio sources of known position.

This module implements the nonlinear weighted least squares position solver
fed by the distance deriver:

- LaterationSolver: iterative (Gauss-Newton / Levenberg-Marquardt) fit of
  the receiver position minimizing

      Σ_i [ (‖p − s_i‖ − d_i) / σ_i ]²

- linear_initial_guess: linearized multilateration used to seed the
  iteration when no initial position is supplied.
"""

import logging
import warnings
from typing import Dict, Optional, Tuple

import numpy as np

from rfloc.estimators.nonlinear_least_squares import ROBUST_LOSSES, solve_nonlinear_ls
from rfloc.utils.geometry import check_source_geometry, range_jacobian

logger = logging.getLogger(__name__)


def linear_initial_guess(positions: np.ndarray, distances: np.ndarray) -> np.ndarray:
    """
    Coarse position from linearized multilateration.

    Subtracting the range equation of the first source from the others
    removes the quadratic term ‖p‖²:

        2 (s_i − s_0)ᵀ p = ‖s_i‖² − ‖s_0‖² − d_i² + d_0²

    which is solved by linear least squares. When this linear system is rank
    deficient (e.g. colinear sources in 2D), the centroid of the sources is
    returned instead.

    Args:
        positions: Source positions, shape (N, d).
        distances: Distances to the sources, shape (N,).

    Returns:
        Initial position, shape (d,).

    Example:
        >>> sources = np.array([[0, 0], [10, 0], [10, 10], [0, 10]], dtype=float)
        >>> d = np.linalg.norm(sources - np.array([3.0, 4.0]), axis=1)
        >>> linear_initial_guess(sources, d)
        array([3., 4.])
    """
    positions = np.asarray(positions, dtype=float)
    distances = np.asarray(distances, dtype=float)
    centroid = positions.mean(axis=0)

    n_sources, dim = positions.shape
    if n_sources <= dim:
        return centroid

    s0 = positions[0]
    d0 = distances[0]
    A = 2.0 * (positions[1:] - s0)
    b = (
        np.sum(positions[1:] ** 2, axis=1)
        - np.sum(s0**2)
        - distances[1:] ** 2
        + d0**2
    )

    if np.linalg.matrix_rank(A) < dim:
        return centroid

    solution = np.linalg.lstsq(A, b, rcond=None)[0]
    if not np.all(np.isfinite(solution)):
        return centroid
    return solution


class LaterationSolver:
    """
    Nonlinear weighted least squares lateration.

    Residuals are ranges predicted from the current position minus measured
    distances, each scaled by 1/σ_i. The Jacobian row of source i is the unit
    vector from s_i to p.

    **Methods:**

    - `"lm"` (default): Levenberg-Marquardt, robust to poor initial guesses.
    - `"gn"`: plain Gauss-Newton.

    With a robust_loss ("huber", "cauchy", "gm", "tukey") the chosen method
    runs inside IRLS, so that a few corrupted distances (NLOS ranges, RSSI
    fades) are downweighted instead of dragging the fix.

    Attributes:
        positions: Array of source positions, shape (N, d) where d=2 or 3.
        method: Optimization method.
        robust_loss: Robust loss, or None for plain least squares.

    Example:
        >>> sources = np.array([[0, 0], [10, 0], [10, 10], [0, 10]], dtype=float)
        >>> distances = np.linalg.norm(sources - np.array([5.0, 5.0]), axis=1)
        >>> solver = LaterationSolver(sources)
        >>> position, info = solver.solve(distances)
        >>> info["converged"]
        True
    """

    _VALID_METHODS = {"gn", "lm"}

    def __init__(
        self,
        positions: np.ndarray,
        method: str = "lm",
        robust_loss: Optional[str] = None,
        loss_param: float = 1.5,
    ):
        """
        Initialize lateration solver.

        Args:
            positions: Source positions, shape (N, 2) or (N, 3), N >= d + 1.
            method: "lm" (default) or "gn".
            robust_loss: Optional robust loss, None for plain least squares.
            loss_param: Robust loss threshold in residual scale units.
        """
        self.positions = np.asarray(positions, dtype=float)
        if self.positions.ndim != 2 or self.positions.shape[1] not in (2, 3):
            raise ValueError(
                f"positions must have shape (N, 2) or (N, 3), got {self.positions.shape}"
            )
        if not np.all(np.isfinite(self.positions)):
            raise ValueError("positions must be finite")

        self.n_sources = self.positions.shape[0]
        self.dim = self.positions.shape[1]
        if self.n_sources < self.min_required_sources:
            raise ValueError(
                f"At least {self.min_required_sources} sources are required for "
                f"{self.dim}D lateration, got {self.n_sources}"
            )

        method_lower = method.lower()
        if method_lower not in self._VALID_METHODS:
            raise ValueError(f"method must be one of {sorted(self._VALID_METHODS)}, got {method}")
        self.method = method_lower

        if robust_loss is not None and robust_loss not in ROBUST_LOSSES:
            raise ValueError(
                f"robust_loss must be None or one of {ROBUST_LOSSES}, got {robust_loss!r}"
            )
        if not loss_param > 0:
            raise ValueError(f"loss_param must be positive, got {loss_param}")
        self.robust_loss = robust_loss
        self.loss_param = loss_param

    @property
    def min_required_sources(self) -> int:
        return self.dim + 1

    def predicted_ranges(self, position: np.ndarray) -> np.ndarray:
        """Ranges from a position to every source, shape (N,)."""
        return np.linalg.norm(self.positions - position, axis=1)

    def jacobian(self, position: np.ndarray) -> np.ndarray:
        """Jacobian of the predicted ranges w.r.t. the position, shape (N, d)."""
        return range_jacobian(position, self.positions)

    def solve(
        self,
        distances: np.ndarray,
        standard_deviations: Optional[np.ndarray] = None,
        initial_guess: Optional[np.ndarray] = None,
        max_iters: int = 100,
        tol: float = 1e-10,
        divergence_factor: float = 1e6,
        return_covariance: bool = True,
    ) -> Tuple[np.ndarray, Dict]:
        """
        Solve for the receiver position.

        Args:
            distances: Measured distances to the sources, shape (N,).
            standard_deviations: Distance standard deviations, shape (N,).
                Defaults to 1 for every source (unweighted fit).
            initial_guess: Initial position, shape (d,). Defaults to
                linear_initial_guess().
            max_iters: Maximum number of iterations. Defaults to 100.
            tol: Relative step size tolerance. Defaults to 1e-10.
            divergence_factor: Cost growth factor declaring divergence.
            return_covariance: If True, estimate the position covariance.

        Returns:
            position: Estimated position, shape (d,).
            info: Dictionary with convergence information:
                - 'iterations': number of iterations
                - 'converged': True if converged
                - 'diverged': True if the iteration blew up
                - 'residuals': weighted residuals (‖p − s_i‖ − d_i) / σ_i
                - 'residual': norm of the weighted residuals
                - 'cost': final cost ½ Σ residuals²
                - 'covariance': position covariance (d × d) or None
                - 'initial_guess': position the iteration started from
                - 'method': method used
                - 'robust_weights': robust weight of each row (all 1 without
                  a robust loss)
        """
        distances = np.asarray(distances, dtype=float)
        if distances.shape != (self.n_sources,):
            raise ValueError(
                f"Expected {self.n_sources} distances, got shape {distances.shape}"
            )
        if not np.all(np.isfinite(distances)) or np.any(distances <= 0):
            raise ValueError("distances must be finite and positive")

        if standard_deviations is None:
            stds = np.ones(self.n_sources)
        else:
            stds = np.asarray(standard_deviations, dtype=float)
            if stds.shape != (self.n_sources,):
                raise ValueError(
                    f"Expected {self.n_sources} standard deviations, got shape {stds.shape}"
                )
            if not np.all(np.isfinite(stds)) or np.any(stds <= 0):
                raise ValueError("standard deviations must be finite and positive")

        if initial_guess is None:
            x0 = linear_initial_guess(self.positions, distances)
        else:
            x0 = np.asarray(initial_guess, dtype=float)
            if x0.shape != (self.dim,):
                raise ValueError(
                    f"initial_guess must have shape ({self.dim},), got {x0.shape}"
                )

        prior_weights = 1.0 / stds**2
        result = solve_nonlinear_ls(
            self.predicted_ranges,
            self.jacobian,
            distances,
            x0,
            weights=prior_weights,
            method=self.method,
            robust_loss=self.robust_loss,
            loss_param=self.loss_param,
            max_iter=max_iters,
            tol=tol,
            divergence_factor=divergence_factor,
            return_covariance=return_covariance,
        )

        covariance = result.covariance
        if return_covariance and not result.diverged:
            is_valid, rank, msg = check_source_geometry(self.positions)
            if not is_valid:
                logger.debug("Source layout has affine rank %d in %dD", rank, self.dim)
                warnings.warn(f"{msg} Covariance is not reported.", RuntimeWarning)
                covariance = None
            elif covariance is None:
                warnings.warn(
                    "Normal equations are singular at the solution. "
                    "Covariance is not reported.",
                    RuntimeWarning,
                )

        weighted_residuals = -result.residuals / stds
        logger.debug(
            "Lateration (%s) finished after %d iteration(s): converged=%s, diverged=%s, "
            "residual=%.3e",
            self.method,
            result.iterations,
            result.converged,
            result.diverged,
            float(np.linalg.norm(weighted_residuals)),
        )

        info = {
            "iterations": result.iterations,
            "converged": result.converged,
            "diverged": result.diverged,
            "residuals": weighted_residuals,
            "residual": float(np.linalg.norm(weighted_residuals)),
            "cost": result.cost,
            "covariance": covariance,
            "initial_guess": x0,
            "method": self.method,
            "robust_weights": result.weights / prior_weights,
        }

        return result.x, info
