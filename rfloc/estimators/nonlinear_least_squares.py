"""
Nonlinear Least Squares solver using Gauss-Newton and Levenberg-Marquardt,
with optional robust (IRLS) reweighting.

This module implements the iterative optimization engine used to fuse
distance measurements into a position estimate.

Mathematical Formulation:
    Given observations y and measurement model h(x), we seek:
        x̂ = argmin ½‖r(x)‖²_W
    where r(x) = y - h(x) is the residual vector and W = diag(1/σ²).

    Gauss-Newton update:
        (J'WJ) Δx = J'W r  →  x ← x + Δx

    Levenberg-Marquardt update:
        (J'WJ + μI) Δx = J'W r
    where μ is an adaptive damping parameter.

    Covariance at the solution:
        P = σ̂² (J'WJ)⁻¹,   σ̂² = r'Wr / (m - n)

    Robust fit: W is the product of the prior weights and M-estimator
    weights recomputed from the residuals until they settle (IRLS).

Unlike a bare iteration loop, the solver reports whether it converged or
diverged so that callers never mistake the last iterate for a valid
estimate.
"""

from dataclasses import dataclass
from typing import Callable, Literal, Optional

import numpy as np

# Largest damping before a Levenberg-Marquardt step is declared stalled,
# relative to the largest diagonal entry of J'WJ.
_MAX_RELATIVE_DAMPING = 1e10

ROBUST_LOSSES = ("huber", "cauchy", "gm", "tukey")

# Floor of the MAD scale of normalized residuals, keeps exact fits finite
_MIN_ROBUST_SCALE = 1e-9


@dataclass
class NonlinearLSResult:
    """Result container for nonlinear least squares optimization.

    Attributes:
        x: Estimated state vector.
        covariance: Covariance matrix (n × n), or None when it was not
            requested or the normal equations are (near) singular.
        iterations: Number of iterations performed.
        residuals: Final residuals r = y - h(x̂).
        cost: Final cost value ½‖r‖²_W.
        converged: Whether the solver converged within tolerance.
        diverged: Whether the iteration blew up (non-finite values or cost
            growing beyond the divergence bound).
        weights: Measurement weights used in the fit.
    """

    x: np.ndarray
    covariance: Optional[np.ndarray]
    iterations: int
    residuals: np.ndarray
    cost: float
    converged: bool
    diverged: bool = False
    weights: Optional[np.ndarray] = None


def gauss_newton(
    h: Callable[[np.ndarray], np.ndarray],
    jacobian: Callable[[np.ndarray], np.ndarray],
    y: np.ndarray,
    x0: np.ndarray,
    weights: Optional[np.ndarray] = None,
    max_iter: int = 20,
    tol: float = 1e-10,
    gtol: float = 1e-12,
    divergence_factor: float = 1e6,
    singular_tol: float = 1e-12,
    return_covariance: bool = True,
) -> NonlinearLSResult:
    """
    Gauss-Newton solver for nonlinear least squares.

    Solves: x̂ = argmin ½‖y - h(x)‖²_W

    Args:
        h: Measurement model function h: R^n → R^m.
        jacobian: Function returning Jacobian matrix J = ∂h/∂x (m × n).
        y: Observation vector (m,).
        x0: Initial state estimate (n,).
        weights: Optional measurement weights (m,) for weighted LS.
            If None, uses uniform weights (standard LS).
        max_iter: Maximum number of iterations.
        tol: Relative convergence tolerance on ‖Δx‖.
        gtol: Convergence tolerance on the gradient ‖J'Wr‖∞.
        divergence_factor: The run is declared diverged when the cost grows
            beyond this factor times the initial cost.
        singular_tol: Inverse condition number below which J'WJ is treated
            as singular and no covariance is reported.
        return_covariance: If True, compute covariance at final estimate.

    Returns:
        NonlinearLSResult containing estimate, covariance, and diagnostics.

    Example:
        >>> import numpy as np
        >>> sources = np.array([[0, 0], [10, 0], [0, 10], [10, 10]])
        >>> def h(x):
        ...     return np.linalg.norm(sources - x, axis=1)
        >>> def jac(x):
        ...     diff = x - sources
        ...     ranges = np.linalg.norm(diff, axis=1, keepdims=True)
        ...     return diff / np.maximum(ranges, 1e-10)
        >>> y = h(np.array([3.0, 4.0]))
        >>> result = gauss_newton(h, jac, y, x0=np.array([5.0, 5.0]))
        >>> result.converged
        True
    """
    return _solve_nonlinear_ls(
        h=h,
        jacobian=jacobian,
        y=y,
        x0=x0,
        weights=weights,
        method="gn",
        max_iter=max_iter,
        tol=tol,
        gtol=gtol,
        divergence_factor=divergence_factor,
        singular_tol=singular_tol,
        return_covariance=return_covariance,
    )


def levenberg_marquardt(
    h: Callable[[np.ndarray], np.ndarray],
    jacobian: Callable[[np.ndarray], np.ndarray],
    y: np.ndarray,
    x0: np.ndarray,
    weights: Optional[np.ndarray] = None,
    max_iter: int = 50,
    tol: float = 1e-10,
    gtol: float = 1e-12,
    mu0: float = 1e-3,
    divergence_factor: float = 1e6,
    singular_tol: float = 1e-12,
    return_covariance: bool = True,
) -> NonlinearLSResult:
    """
    Levenberg-Marquardt solver for nonlinear least squares.

    Solves: x̂ = argmin ½‖y - h(x)‖²_W

    LM combines Gauss-Newton (fast near solution) with gradient descent
    (robust far from solution) by adaptively adjusting μ with the gain
    ratio between actual and predicted cost decrease:
        - Small μ: Gauss-Newton behavior (quadratic convergence)
        - Large μ: Gradient descent behavior (global convergence)

    A step is only accepted when it decreases the cost. When no decrease can
    be obtained even with maximal damping, the run stops. It is reported as
    converged only when the estimate is a minimum to machine precision: the
    undamped Gauss-Newton step is below tol, or the gradient J'Wr is below
    sqrt(gtol) relative to its Cauchy-Schwarz bound.

    Args:
        h: Measurement model function h: R^n → R^m.
        jacobian: Function returning Jacobian matrix J = ∂h/∂x (m × n).
        y: Observation vector (m,).
        x0: Initial state estimate (n,).
        weights: Optional measurement weights (m,) for weighted LS.
        max_iter: Maximum number of iterations.
        tol: Relative convergence tolerance on ‖Δx‖.
        gtol: Convergence tolerance on the gradient ‖J'Wr‖∞.
        mu0: Initial damping parameter (default 1e-3).
        divergence_factor: Cost growth factor declaring divergence.
        singular_tol: Inverse condition number threshold for the covariance.
        return_covariance: If True, compute covariance at final estimate.

    Returns:
        NonlinearLSResult containing estimate, covariance, and diagnostics.

    Example:
        >>> # Same 2D positioning problem, but with poor initial guess
        >>> y = np.array([5.0, 7.07, 7.07, 5.0])
        >>> result = levenberg_marquardt(h, jac, y, x0=np.array([0.0, 0.0]))
        >>> print(f"Estimate: {result.x}, Converged: {result.converged}")
    """
    return _solve_nonlinear_ls(
        h=h,
        jacobian=jacobian,
        y=y,
        x0=x0,
        weights=weights,
        method="lm",
        max_iter=max_iter,
        tol=tol,
        gtol=gtol,
        mu0=mu0,
        divergence_factor=divergence_factor,
        singular_tol=singular_tol,
        return_covariance=return_covariance,
    )


def robust_nonlinear_ls(
    h: Callable[[np.ndarray], np.ndarray],
    jacobian: Callable[[np.ndarray], np.ndarray],
    y: np.ndarray,
    x0: np.ndarray,
    weights: Optional[np.ndarray] = None,
    loss: Literal["huber", "cauchy", "gm", "tukey"] = "huber",
    loss_param: float = 1.5,
    method: Literal["gn", "lm"] = "lm",
    max_iter: int = 100,
    max_irls_iter: int = 20,
    tol: float = 1e-10,
    irls_tol: float = 1e-3,
    return_covariance: bool = True,
    **kwargs,
) -> NonlinearLSResult:
    """
    Robust nonlinear least squares by IRLS (Iteratively Reweighted LS).

    Each outer iteration solves the weighted problem, normalizes the
    residuals by the prior weights, u = r * sqrt(w), estimates their scale
    with the MAD (σ = 1.4826 median|u|) and recomputes the M-estimator weight
    of every observation from u / (σ * loss_param):

        - Huber: w = min(1, 1/|u|), bounded influence
        - Cauchy: w = 1 / (1 + u²), redescending
        - G-M (Geman-McClure): w = 1 / (1 + u²)²
        - Tukey: w = (1 - u²)² for |u| ≤ 1, else (almost) 0

    The loop stops once no weight moves by more than irls_tol. The final fit
    uses the prior weights multiplied by the robust ones, and its covariance
    is computed with those effective weights.

    Args:
        h: Measurement model function h: R^n → R^m.
        jacobian: Function returning Jacobian matrix J = ∂h/∂x (m × n).
        y: Observation vector (m,).
        x0: Initial state estimate (n,).
        weights: Optional prior weights (m,), typically 1/σ².
        loss: Robust loss function.
        loss_param: Threshold of the loss in units of the residual scale.
        method: Inner solver, "lm" (default) or "gn".
        max_iter: Maximum iterations of each inner solve.
        max_irls_iter: Maximum reweighting iterations.
        tol: Relative step size tolerance of the inner solver.
        irls_tol: Largest weight change at which the reweighting stops.
        return_covariance: If True, compute covariance at final estimate.
        **kwargs: Passed to the inner solver (gtol, mu0, divergence_factor,
            singular_tol).

    Returns:
        NonlinearLSResult whose weights are the effective (prior × robust)
        weights and whose iterations add up every inner solve.

    Example:
        >>> y = np.array([5.0, 8.06, 6.71, 11.22])  # last range is NLOS (+2 m)
        >>> result = robust_nonlinear_ls(h, jac, y, x0=np.array([5.0, 5.0]),
        ...                              loss="cauchy")
        >>> result.weights[-1] < result.weights[0]
        True
    """
    if loss not in ROBUST_LOSSES:
        raise ValueError(f"Unknown loss function: {loss}. Use one of {ROBUST_LOSSES}.")
    if not loss_param > 0:
        raise ValueError(f"loss_param must be positive, got {loss_param}")
    if max_irls_iter < 1:
        raise ValueError(f"max_irls_iter must be at least 1, got {max_irls_iter}")

    y = np.asarray(y, dtype=float)
    if y.ndim != 1:
        raise ValueError(f"y must be 1D array, got shape {y.shape}")
    m = len(y)

    if weights is None:
        prior = np.ones(m)
    else:
        prior = np.asarray(weights, dtype=float)
        if prior.ndim != 1 or len(prior) != m:
            raise ValueError(f"weights must be 1D array of length {m}")
        if np.any(prior < 0) or not np.all(np.isfinite(prior)):
            raise ValueError("weights must be finite and non-negative")

    x = np.asarray(x0, dtype=float)
    robust = np.ones(m)
    total_iterations = 0

    for _ in range(max_irls_iter):
        result = _solve_nonlinear_ls(
            h, jacobian, y, x, prior * robust, method, max_iter, tol,
            return_covariance=False, **kwargs,
        )
        total_iterations += result.iterations
        if result.diverged:
            result.iterations = total_iterations
            return result
        x = result.x

        u = result.residuals * np.sqrt(prior)
        scale = max(1.4826 * float(np.median(np.abs(u))), _MIN_ROBUST_SCALE)
        new_robust = _compute_robust_weights(u / (scale * loss_param), loss)

        weight_change = float(np.max(np.abs(new_robust - robust)))
        robust = new_robust
        if weight_change < irls_tol:
            break

    result = _solve_nonlinear_ls(
        h, jacobian, y, x, prior * robust, method, max_iter, tol,
        return_covariance=return_covariance, **kwargs,
    )
    result.iterations += total_iterations
    return result


def estimate_covariance(
    J: np.ndarray,
    residuals: np.ndarray,
    weights: np.ndarray,
    singular_tol: float = 1e-12,
) -> Optional[np.ndarray]:
    """
    Covariance of a least squares estimate, P = σ̂² (J'WJ)⁻¹.

    σ̂² = r'Wr / (m - n) is the residual variance estimate; it defaults to 1
    when there are no redundant measurements (m ≤ n).

    Args:
        J: Jacobian at the solution (m × n).
        residuals: Residuals at the solution (m,).
        weights: Measurement weights (m,).
        singular_tol: Inverse condition number below which J'WJ is treated
            as singular.

    Returns:
        Symmetric covariance matrix (n × n), or None when J'WJ is singular
        or ill-conditioned (degenerate geometry).
    """
    m, n = J.shape
    JtWJ = (J.T * weights) @ J

    cond = np.linalg.cond(JtWJ)
    if not np.isfinite(cond) or cond * singular_tol > 1.0:
        return None

    if m > n:
        sigma2 = float(residuals @ (weights * residuals)) / (m - n)
    else:
        sigma2 = 1.0

    try:
        P = sigma2 * np.linalg.inv(JtWJ)
    except np.linalg.LinAlgError:
        return None

    # Enforce exact symmetry lost to round-off
    return 0.5 * (P + P.T)


def _solve_nonlinear_ls(
    h: Callable[[np.ndarray], np.ndarray],
    jacobian: Callable[[np.ndarray], np.ndarray],
    y: np.ndarray,
    x0: np.ndarray,
    weights: Optional[np.ndarray],
    method: str,
    max_iter: int,
    tol: float,
    gtol: float = 1e-12,
    mu0: float = 1e-3,
    divergence_factor: float = 1e6,
    singular_tol: float = 1e-12,
    return_covariance: bool = True,
) -> NonlinearLSResult:
    """Internal solver implementing both Gauss-Newton and Levenberg-Marquardt."""
    # Input validation
    y = np.asarray(y, dtype=float)
    x0 = np.asarray(x0, dtype=float)

    if y.ndim != 1:
        raise ValueError(f"y must be 1D array, got shape {y.shape}")
    if x0.ndim != 1:
        raise ValueError(f"x0 must be 1D array, got shape {x0.shape}")
    if not np.all(np.isfinite(x0)):
        raise ValueError(f"x0 must be finite, got {x0}")
    if max_iter < 1:
        raise ValueError(f"max_iter must be at least 1, got {max_iter}")
    if divergence_factor <= 1.0:
        raise ValueError(f"divergence_factor must be > 1, got {divergence_factor}")

    m = len(y)
    n = len(x0)
    x = x0.copy()

    if weights is None:
        w = np.ones(m)
    else:
        w = np.asarray(weights, dtype=float)
        if w.ndim != 1 or len(w) != m:
            raise ValueError(f"weights must be 1D array of length {m}")
        if np.any(w < 0) or not np.all(np.isfinite(w)):
            raise ValueError("weights must be finite and non-negative")

    def evaluate(state: np.ndarray):
        hx = np.asarray(h(state), dtype=float)
        if len(hx) != m:
            raise ValueError(f"h(x) returned {len(hx)} elements, expected {m}")
        res = y - hx
        return res, 0.5 * float(res @ (w * res))

    r, cost = evaluate(x)
    if not np.isfinite(cost):
        raise ValueError("Cost is not finite at the initial estimate")
    cost_limit = divergence_factor * max(cost, np.finfo(float).tiny)

    # LM-specific initialization
    mu = mu0
    nu = 2.0

    converged = False
    diverged = False
    iteration = 0

    for iteration in range(max_iter):
        J = np.asarray(jacobian(x), dtype=float)
        if J.shape != (m, n):
            raise ValueError(f"Jacobian shape {J.shape}, expected ({m}, {n})")

        # Weighted normal equations: (J'WJ) Δx = J'Wr
        JtW = J.T * w
        JtWJ = JtW @ J
        JtWr = JtW @ r

        # Gradient of the cost vanishes at a stationary point
        if np.max(np.abs(JtWr)) <= gtol:
            converged = True
            break

        if method == "gn":
            try:
                delta_x = np.linalg.solve(JtWJ, JtWr)
            except np.linalg.LinAlgError:
                # Singular - use least squares solution
                delta_x = np.linalg.lstsq(JtWJ, JtWr, rcond=None)[0]

            x = x + delta_x
            r, cost = evaluate(x)

        elif method == "lm":
            mu_max = _MAX_RELATIVE_DAMPING * max(1.0, float(np.max(np.diag(JtWJ))))
            stalled = False
            while True:
                JtWJ_damped = JtWJ + mu * np.eye(n)

                try:
                    delta_x = np.linalg.solve(JtWJ_damped, JtWr)
                except np.linalg.LinAlgError:
                    delta_x = np.linalg.lstsq(JtWJ_damped, JtWr, rcond=None)[0]

                x_new = x + delta_x
                r_new, cost_new = evaluate(x_new)

                # Gain ratio between actual and predicted decrease
                predicted_decrease = 0.5 * float(delta_x @ (mu * delta_x + JtWr))
                actual_decrease = cost - cost_new

                if predicted_decrease > 0 and np.isfinite(cost_new):
                    gain_ratio = actual_decrease / predicted_decrease
                else:
                    gain_ratio = 0.0

                if gain_ratio > 0:
                    # Accept step, decrease damping (more GN-like)
                    x, r, cost = x_new, r_new, cost_new
                    mu = mu * max(1.0 / 3.0, 1.0 - (2.0 * gain_ratio - 1.0) ** 3)
                    nu = 2.0
                    break

                # Reject step, increase damping (more GD-like)
                mu = mu * nu
                nu = 2.0 * nu
                if mu > mu_max:
                    stalled = True
                    break

            if stalled:
                # No decrease left: a minimum only if the undamped step is
                # below tol or the gradient vanishes relative to its bound
                # sqrt(diag(J'WJ) * 2 * cost)
                delta_gn = np.linalg.lstsq(JtWJ, JtWr, rcond=None)[0]
                bound = np.sqrt(np.diag(JtWJ) * 2.0 * cost)
                converged = bool(
                    np.linalg.norm(delta_gn) <= tol * (tol + np.linalg.norm(x))
                    or np.all(np.abs(JtWr) <= np.sqrt(gtol) * bound)
                )
                break

        else:
            raise ValueError(f"Unknown method: {method}. Use 'gn' or 'lm'.")

        if not np.all(np.isfinite(x)) or not np.isfinite(cost) or cost > cost_limit:
            diverged = True
            break

        # Check convergence on the step size
        if np.linalg.norm(delta_x) <= tol * (tol + np.linalg.norm(x)):
            converged = True
            break

    # Covariance estimation
    P = None
    if return_covariance and not diverged:
        J = np.asarray(jacobian(x), dtype=float)
        P = estimate_covariance(J, r, w, singular_tol=singular_tol)

    return NonlinearLSResult(
        x=x,
        covariance=P,
        iterations=iteration + 1,
        residuals=r,
        cost=cost,
        converged=converged,
        diverged=diverged,
        weights=w,
    )


def _compute_robust_weights(u: np.ndarray, loss: str) -> np.ndarray:
    """IRLS weights of scaled residuals u = r / (σ c)."""
    abs_u = np.abs(u)

    if loss == "huber":
        return np.where(abs_u <= 1.0, 1.0, 1.0 / np.maximum(abs_u, 1.0))
    if loss == "cauchy":
        return 1.0 / (1.0 + u**2)
    if loss == "gm":
        return 1.0 / (1.0 + u**2) ** 2
    if loss == "tukey":
        # Hard rejection, kept positive so J'WJ stays invertible
        return np.maximum(np.where(abs_u <= 1.0, (1.0 - u**2) ** 2, 0.0), 1e-10)
    raise ValueError(f"Unknown loss function: {loss}")


# Convenience function dispatching on the method name
def solve_nonlinear_ls(
    h: Callable[[np.ndarray], np.ndarray],
    jacobian: Callable[[np.ndarray], np.ndarray],
    y: np.ndarray,
    x0: np.ndarray,
    weights: Optional[np.ndarray] = None,
    method: Literal["gn", "lm"] = "lm",
    robust_loss: Optional[Literal["huber", "cauchy", "gm", "tukey"]] = None,
    loss_param: float = 1.5,
    max_iter: int = 100,
    tol: float = 1e-10,
    return_covariance: bool = True,
    **kwargs,
) -> NonlinearLSResult:
    """
    General nonlinear least squares solver.

    Dispatches to gauss_newton() or levenberg_marquardt(), wrapped in
    robust_nonlinear_ls() when a robust loss is given.

    Args:
        h: Measurement model h(x) returning predicted observations.
        jacobian: Jacobian function J = ∂h/∂x.
        y: Observations (m,).
        x0: Initial state estimate (n,).
        weights: Optional measurement weights for WLS (m,).
        method: Optimization method - "gn" (Gauss-Newton) or "lm" (Levenberg-Marquardt).
        robust_loss: Optional robust loss ("huber", "cauchy", "gm", "tukey").
            If None, plain weighted least squares is used.
        loss_param: Threshold of the robust loss in residual scale units.
        max_iter: Maximum iterations.
        tol: Relative convergence tolerance on the step size.
        return_covariance: If True, compute covariance at solution.
        **kwargs: Additional arguments passed to the solver (gtol,
            divergence_factor, singular_tol, and mu0 for LM).

    Returns:
        NonlinearLSResult with solution, covariance, and diagnostics.
    """
    if method not in ("gn", "lm"):
        raise ValueError(f"Unknown method: {method}. Use 'gn' or 'lm'.")
    if method == "gn":
        kwargs.pop("mu0", None)

    if robust_loss is not None:
        return robust_nonlinear_ls(
            h=h,
            jacobian=jacobian,
            y=y,
            x0=x0,
            weights=weights,
            loss=robust_loss,
            loss_param=loss_param,
            method=method,
            max_iter=max_iter,
            tol=tol,
            return_covariance=return_covariance,
            **kwargs,
        )
    if method == "gn":
        return gauss_newton(
            h=h,
            jacobian=jacobian,
            y=y,
            x0=x0,
            weights=weights,
            max_iter=max_iter,
            tol=tol,
            return_covariance=return_covariance,
            **kwargs,
        )
    return levenberg_marquardt(
        h=h,
        jacobian=jacobian,
        y=y,
        x0=x0,
        weights=weights,
        max_iter=max_iter,
        tol=tol,
        return_covariance=return_covariance,
        **kwargs,
    )
