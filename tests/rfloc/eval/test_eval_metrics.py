"""
Unit tests for evaluation metrics and plots.
"""

import matplotlib

matplotlib.use("Agg")

import matplotlib.pyplot as plt  # noqa: E402
import numpy as np  # noqa: E402
import pytest  # noqa: E402

from rfloc.eval.metrics import (  # noqa: E402
    compute_error_stats,
    compute_nees,
    compute_position_errors,
    compute_rmse,
    confidence_ellipse,
    nees_bounds,
)
from rfloc.eval.plots import plot_rf_geometry, save_figure  # noqa: E402


class TestErrorMetrics:
    def test_position_errors(self):
        truth = np.array([[0.0, 0.0], [1.0, 1.0]])
        estimated = np.array([[3.0, 4.0], [1.0, 1.0]])
        np.testing.assert_array_equal(
            compute_position_errors(truth, estimated), [[3.0, 4.0], [0.0, 0.0]]
        )

    def test_shape_mismatch(self):
        with pytest.raises(ValueError, match="Shape mismatch"):
            compute_position_errors(np.zeros((2, 2)), np.zeros((2, 3)))

    def test_rmse_of_vectors(self):
        errors = np.array([[3.0, 4.0], [0.0, 0.0]])
        assert compute_rmse(errors) == pytest.approx(np.sqrt(25.0 / 2.0))

    def test_rmse_of_scalars(self):
        assert compute_rmse(np.array([1.0, -1.0])) == pytest.approx(1.0)

    def test_error_stats(self):
        errors = np.array([[3.0, 4.0], [0.0, 1.0], [0.0, 0.0]])
        stats = compute_error_stats(errors)
        assert stats["mean"] == pytest.approx(2.0)
        assert stats["median"] == pytest.approx(1.0)
        assert stats["max"] == pytest.approx(5.0)
        assert set(stats) == {"mean", "median", "std", "rmse", "p90", "p95", "max"}


class TestConsistency:
    def test_nees_single(self):
        nees = compute_nees(np.zeros(2), np.array([2.0, 1.0]), np.diag([4.0, 1.0]))
        np.testing.assert_allclose(nees, [2.0])

    def test_nees_batch_and_singular(self):
        truth = np.zeros((2, 2))
        estimated = np.array([[1.0, 0.0], [1.0, 0.0]])
        covariance = np.array([np.eye(2), np.zeros((2, 2))])
        nees = compute_nees(truth, estimated, covariance)
        assert nees[0] == pytest.approx(1.0)
        assert np.isnan(nees[1])

    def test_nees_bad_covariance_shape(self):
        with pytest.raises(ValueError, match="covariance must have shape"):
            compute_nees(np.zeros((3, 2)), np.zeros((3, 2)), np.eye(2))

    def test_nees_bounds_2d(self):
        lower, upper = nees_bounds(2, confidence=0.95)
        assert lower == pytest.approx(0.0506, abs=1e-3)
        assert upper == pytest.approx(7.378, abs=1e-2)

    def test_nees_bounds_invalid(self):
        with pytest.raises(ValueError):
            nees_bounds(0)
        with pytest.raises(ValueError):
            nees_bounds(2, confidence=1.5)

    def test_confidence_ellipse_axes(self):
        semi_axes, axes = confidence_ellipse(np.diag([1.0, 9.0]), confidence=0.95)
        scale = np.sqrt(5.991)
        np.testing.assert_allclose(semi_axes, [3.0 * scale, scale], rtol=1e-3)
        np.testing.assert_allclose(np.abs(axes[:, 0]), [0.0, 1.0], atol=1e-12)

    def test_confidence_ellipsoid_3d(self):
        semi_axes, axes = confidence_ellipse(np.eye(3) * 0.25, confidence=0.5)
        assert semi_axes.shape == (3,)
        assert axes.shape == (3, 3)
        np.testing.assert_allclose(semi_axes, semi_axes[0])


class TestPlots:
    def test_plot_rf_geometry(self, tmp_path):
        sources = np.array([[0, 0], [10, 0], [10, 10], [0, 10]], dtype=float)
        fig = plot_rf_geometry(
            sources,
            truth_xy=np.array([3.0, 4.0]),
            estimate_xy=np.array([3.1, 3.9]),
            covariance=np.array([[0.2, 0.05], [0.05, 0.1]]),
            distances=np.linalg.norm(sources - np.array([3.0, 4.0]), axis=1),
        )

        paths = save_figure(fig, tmp_path / "figs", "geometry")
        plt.close(fig)

        assert len(paths) == 1
        assert paths[0].exists()

    def test_plot_3d_projection(self):
        sources = np.array([[0, 0, 0], [10, 0, 1], [10, 10, 2], [0, 10, 3]], dtype=float)
        fig = plot_rf_geometry(
            sources, estimate_xy=np.array([5.0, 5.0, 1.0]), covariance=np.eye(3)
        )
        assert len(fig.axes) == 1
        plt.close(fig)
