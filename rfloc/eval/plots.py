"""
Visualization utilities for position estimates.

All functions return matplotlib Figure objects for flexible display/saving.
"""

from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import matplotlib.pyplot as plt
import numpy as np
from matplotlib.patches import Ellipse

from rfloc.eval.metrics import confidence_ellipse


def plot_rf_geometry(
    sources_xy: np.ndarray,
    truth_xy: Optional[np.ndarray] = None,
    estimate_xy: Optional[np.ndarray] = None,
    covariance: Optional[np.ndarray] = None,
    distances: Optional[Sequence[float]] = None,
    labels: Optional[Sequence[str]] = None,
    confidence: float = 0.95,
    title: str = "RF Geometry",
) -> plt.Figure:
    """
    Plot radio sources, the true and estimated receiver position, the
    derived distance circles and the confidence ellipse of the estimate.

    Only the first two coordinates are drawn, so 3D inputs are shown as
    their horizontal projection.

    Args:
        sources_xy: Source positions, shape (N, 2) or (N, 3).
        truth_xy: True receiver position (optional).
        estimate_xy: Estimated receiver position (optional).
        covariance: Covariance of the estimate, (2, 2) or larger (optional).
        distances: Derived distances to draw as circles (optional).
        labels: Source labels (optional, defaults to S0, S1, ...).
        confidence: Probability mass of the confidence ellipse.
        title: Plot title.

    Returns:
        fig: Matplotlib figure
    """
    sources_xy = np.asarray(sources_xy, dtype=float)[:, :2]
    if labels is None:
        labels = [f"S{i}" for i in range(len(sources_xy))]

    fig, ax = plt.subplots(figsize=(9, 8))

    ax.plot(sources_xy[:, 0], sources_xy[:, 1], "s", color="blue", markersize=10,
            label="Sources")
    for label, source in zip(labels, sources_xy):
        ax.annotate(str(label), source, textcoords="offset points", xytext=(0, 8),
                    ha="center", color="blue", fontsize=9)

    if distances is not None:
        for source, distance in zip(sources_xy, distances):
            ax.add_patch(plt.Circle(source, distance, fill=False, color="gray",
                                    linestyle="--", alpha=0.5))

    if truth_xy is not None:
        truth_xy = np.asarray(truth_xy, dtype=float)
        ax.plot(truth_xy[0], truth_xy[1], "g*", markersize=14, label="Truth")

    if estimate_xy is not None:
        estimate_xy = np.asarray(estimate_xy, dtype=float)
        ax.plot(estimate_xy[0], estimate_xy[1], "rx", markersize=12, mew=2,
                label="Estimate")

        if covariance is not None:
            semi_axes, axes = confidence_ellipse(
                np.asarray(covariance, dtype=float)[:2, :2], confidence
            )
            angle = np.degrees(np.arctan2(axes[1, 0], axes[0, 0]))
            ax.add_patch(Ellipse(estimate_xy[:2], 2 * semi_axes[0], 2 * semi_axes[1],
                                 angle=angle, fill=False, color="red",
                                 label=f"{confidence:.0%} confidence"))

    ax.set_xlabel("X (m)", fontsize=12)
    ax.set_ylabel("Y (m)", fontsize=12)
    ax.set_title(title, fontsize=14, fontweight="bold")
    ax.legend(fontsize=10)
    ax.grid(True, alpha=0.3)
    ax.axis("equal")

    plt.tight_layout()
    return fig


def save_figure(
    fig: plt.Figure,
    out_dir: Union[str, Path],
    name: str,
    formats: Tuple[str, ...] = ("png",),
) -> List[Path]:
    """Save a figure as out_dir/name.<fmt> for each format, creating out_dir."""
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)

    paths = []
    for fmt in formats:
        path = out_dir / f"{name}.{fmt}"
        fig.savefig(path, dpi=150, bbox_inches="tight")
        paths.append(path)
    return paths
