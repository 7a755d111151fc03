"""
State estimation algorithms for lateration.

Available estimators:
    - Nonlinear Least Squares (Gauss-Newton, Levenberg-Marquardt)
    - Robust nonlinear least squares (IRLS with Huber, Cauchy, G-M, Tukey)
"""

from rfloc.estimators.nonlinear_least_squares import (
    NonlinearLSResult,
    estimate_covariance,
    gauss_newton,
    levenberg_marquardt,
    robust_nonlinear_ls,
    solve_nonlinear_ls,
)

__all__ = [
    "gauss_newton",
    "levenberg_marquardt",
    "robust_nonlinear_ls",
    "solve_nonlinear_ls",
    "estimate_covariance",
    "NonlinearLSResult",
]
