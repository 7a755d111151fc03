"""
Evaluation and Visualization Module.

Modules:
    metrics: Error metrics, NEES and confidence regions
    plots: Source geometry and estimate plots
"""

from .metrics import (
    compute_error_stats,
    compute_nees,
    compute_position_errors,
    compute_rmse,
    confidence_ellipse,
    nees_bounds,
)
from .plots import plot_rf_geometry, save_figure

__all__ = [
    # Metrics
    "compute_position_errors",
    "compute_rmse",
    "compute_error_stats",
    "compute_nees",
    "nees_bounds",
    "confidence_ellipse",
    # Plots
    "plot_rf_geometry",
    "save_figure",
]
