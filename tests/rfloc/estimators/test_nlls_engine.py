"""
Unit tests for the nonlinear least squares engine.

Tests cover:
    - Gauss-Newton and Levenberg-Marquardt on range positioning
    - Weighted fits and covariance estimation
    - Convergence and divergence reporting
    - Robust (IRLS) rejection of outlying ranges
"""

import unittest

import numpy as np
from numpy.testing import assert_allclose

from rfloc.estimators.nonlinear_least_squares import (
    NonlinearLSResult,
    estimate_covariance,
    gauss_newton,
    levenberg_marquardt,
    robust_nonlinear_ls,
    solve_nonlinear_ls,
)


class RangeProblem:
    """hᵢ(x) = ‖x − aᵢ‖ for a set of anchors."""

    def __init__(self, anchors):
        self.anchors = np.asarray(anchors, dtype=float)

    def h(self, x):
        return np.linalg.norm(self.anchors - x, axis=1)

    def jacobian(self, x):
        diff = x - self.anchors
        ranges = np.linalg.norm(diff, axis=1, keepdims=True)
        return diff / np.maximum(ranges, 1e-10)


class TestGaussNewton(unittest.TestCase):
    """Gauss-Newton on a 2D range problem."""

    def setUp(self):
        self.problem = RangeProblem([[0, 0], [10, 0], [0, 10], [10, 10]])
        self.true_pos = np.array([3.0, 4.0])
        self.y = self.problem.h(self.true_pos)

    def test_exact_measurements_convergence(self):
        result = gauss_newton(self.problem.h, self.problem.jacobian, self.y, np.array([5.0, 5.0]))

        assert_allclose(result.x, self.true_pos, atol=1e-8)
        self.assertTrue(result.converged)
        self.assertFalse(result.diverged)
        self.assertLess(result.iterations, 10)

    def test_result_fields(self):
        result = gauss_newton(self.problem.h, self.problem.jacobian, self.y, np.array([5.0, 5.0]))

        self.assertIsInstance(result, NonlinearLSResult)
        self.assertEqual(result.covariance.shape, (2, 2))
        self.assertEqual(len(result.residuals), 4)
        assert_allclose(result.weights, np.ones(4))
        self.assertGreaterEqual(result.cost, 0.0)

    def test_start_at_solution_stops_immediately(self):
        result = gauss_newton(self.problem.h, self.problem.jacobian, self.y, self.true_pos)
        self.assertTrue(result.converged)
        self.assertEqual(result.iterations, 1)

    def test_non_finite_iterate_reported_as_divergence(self):
        def h(x):
            with np.errstate(invalid="ignore"):
                return np.log(x)

        def jacobian(x):
            return np.array([[1.0 / x[0]]])

        # The first Gauss-Newton step jumps to x = -9 where log is undefined
        result = gauss_newton(h, jacobian, np.array([-10.0]), np.array([1.0]))

        self.assertTrue(result.diverged)
        self.assertFalse(result.converged)
        self.assertIsNone(result.covariance)

    def test_cost_growth_reported_as_divergence(self):
        # From x = 1.5 the Gauss-Newton step overshoots to x ≈ -1.69,
        # where the cost is about 11% above the initial one
        result = gauss_newton(
            np.arctan,
            lambda x: np.array([[1.0 / (1.0 + x[0] ** 2)]]),
            np.array([0.0]),
            np.array([1.5]),
            divergence_factor=1.05,
        )

        self.assertTrue(result.diverged)
        self.assertFalse(result.converged)
        self.assertIsNone(result.covariance)
        self.assertEqual(result.iterations, 1)
        self.assertLess(result.x[0], -1.5)

    def test_iteration_budget_exhausted(self):
        result = gauss_newton(
            self.problem.h, self.problem.jacobian, self.y, np.array([9.0, 1.0]), max_iter=1
        )
        self.assertFalse(result.converged)
        self.assertEqual(result.iterations, 1)


class TestLevenbergMarquardt(unittest.TestCase):
    """Levenberg-Marquardt on 2D and 3D range problems."""

    def test_poor_initial_guess(self):
        problem = RangeProblem([[0, 0], [10, 0], [0, 10], [10, 10]])
        true_pos = np.array([7.0, 2.0])
        result = levenberg_marquardt(
            problem.h, problem.jacobian, problem.h(true_pos), np.array([14.0, 12.0]), max_iter=200
        )

        self.assertTrue(result.converged)
        assert_allclose(result.x, true_pos, atol=1e-6)

    def test_3d_positioning(self):
        problem = RangeProblem([[0, 0, 0], [10, 0, 0], [0, 10, 0], [0, 0, 10], [10, 10, 10]])
        true_pos = np.array([2.0, 3.0, 4.0])
        result = levenberg_marquardt(
            problem.h, problem.jacobian, problem.h(true_pos), np.array([5.0, 5.0, 5.0])
        )

        self.assertTrue(result.converged)
        assert_allclose(result.x, true_pos, atol=1e-6)
        self.assertEqual(result.covariance.shape, (3, 3))

    def test_stall_away_from_minimum_not_converged(self):
        """A Jacobian of the wrong sign makes every step increase the cost."""
        result = levenberg_marquardt(
            lambda x: x.copy(),
            lambda x: np.array([[-1.0]]),
            np.array([1.0]),
            np.array([0.0]),
        )

        self.assertFalse(result.converged)
        self.assertFalse(result.diverged)
        assert_allclose(result.x, [0.0])
        self.assertEqual(result.iterations, 1)

    def test_cost_never_increases(self):
        """LM only accepts steps that decrease the cost."""
        problem = RangeProblem([[0, 0], [10, 0], [0, 10], [10, 10]])
        rng = np.random.default_rng(0)
        y = problem.h(np.array([4.0, 6.0])) + 0.2 * rng.standard_normal(4)
        x0 = np.array([15.0, -5.0])

        initial_cost = 0.5 * np.sum((y - problem.h(x0)) ** 2)
        result = levenberg_marquardt(problem.h, problem.jacobian, y, x0)
        self.assertLessEqual(result.cost, initial_cost)
        self.assertFalse(result.diverged)


class TestWeightedFit(unittest.TestCase):
    """Weights and covariance."""

    def setUp(self):
        self.problem = RangeProblem([[0, 0], [10, 0], [0, 10], [10, 10], [5, -5]])
        self.true_pos = np.array([4.0, 5.0])

    def test_outlier_downweighted(self):
        y = self.problem.h(self.true_pos)
        y[0] += 3.0
        weights = np.array([1e-6, 1.0, 1.0, 1.0, 1.0])

        unweighted = solve_nonlinear_ls(self.problem.h, self.problem.jacobian, y, np.array([5.0, 5.0]))
        weighted = solve_nonlinear_ls(
            self.problem.h, self.problem.jacobian, y, np.array([5.0, 5.0]), weights=weights
        )

        err_unweighted = np.linalg.norm(unweighted.x - self.true_pos)
        err_weighted = np.linalg.norm(weighted.x - self.true_pos)
        self.assertLess(err_weighted, err_unweighted)
        self.assertLess(err_weighted, 1e-3)

    def test_covariance_is_symmetric_psd(self):
        rng = np.random.default_rng(7)
        y = self.problem.h(self.true_pos) + 0.1 * rng.standard_normal(5)
        result = solve_nonlinear_ls(
            self.problem.h, self.problem.jacobian, y, np.array([5.0, 5.0]), weights=np.full(5, 100.0)
        )

        P = result.covariance
        self.assertIsNotNone(P)
        assert_allclose(P, P.T)
        self.assertTrue(np.all(np.linalg.eigvalsh(P) > 0))

    def test_singular_normal_equations_give_no_covariance(self):
        J = np.array([[1.0, 0.0], [2.0, 0.0], [3.0, 0.0]])
        self.assertIsNone(estimate_covariance(J, np.ones(3), np.ones(3)))

    def test_covariance_without_redundancy_uses_unit_variance(self):
        J = np.eye(2)
        P = estimate_covariance(J, np.array([0.3, -0.2]), np.array([4.0, 1.0]))
        assert_allclose(P, np.diag([0.25, 1.0]))

    def test_residual_variance_scaling(self):
        J = np.array([[1.0], [1.0], [1.0]])
        residuals = np.array([1.0, -1.0, 0.0])
        P = estimate_covariance(J, residuals, np.ones(3))
        # σ̂² = 2 / (3 - 1) = 1, (J'J)⁻¹ = 1/3
        assert_allclose(P, [[1.0 / 3.0]])


class TestRobustFit(unittest.TestCase):
    """IRLS against a single corrupted range."""

    def setUp(self):
        self.true_pos = np.array([4.0, 5.0])
        angles = np.deg2rad(np.arange(0, 360, 45))
        anchors = self.true_pos + 10.0 * np.column_stack([np.cos(angles), np.sin(angles)])
        self.problem = RangeProblem(anchors)
        self.y = self.problem.h(self.true_pos)
        self.y[3] += 8.0
        self.x0 = self.true_pos + np.array([2.0, -1.0])

    def test_plain_fit_is_pulled_by_outlier(self):
        result = solve_nonlinear_ls(self.problem.h, self.problem.jacobian, self.y, self.x0)
        self.assertTrue(result.converged)
        self.assertGreater(np.linalg.norm(result.x - self.true_pos), 1.0)

    def test_cauchy_rejects_outlier(self):
        result = robust_nonlinear_ls(
            self.problem.h, self.problem.jacobian, self.y, self.x0, loss="cauchy"
        )

        self.assertTrue(result.converged)
        self.assertLess(np.linalg.norm(result.x - self.true_pos), 0.05)
        self.assertLess(result.weights[3], 0.05)
        self.assertEqual(result.covariance.shape, (2, 2))

    def test_huber_beats_plain_fit(self):
        plain = solve_nonlinear_ls(self.problem.h, self.problem.jacobian, self.y, self.x0)
        huber = solve_nonlinear_ls(
            self.problem.h, self.problem.jacobian, self.y, self.x0, robust_loss="huber"
        )

        self.assertLess(
            np.linalg.norm(huber.x - self.true_pos), np.linalg.norm(plain.x - self.true_pos)
        )
        self.assertEqual(np.argmin(huber.weights), 3)

    def test_prior_weights_are_kept(self):
        weights = np.full(8, 4.0)
        result = robust_nonlinear_ls(
            self.problem.h, self.problem.jacobian, self.y, self.x0, weights=weights, loss="gm"
        )
        self.assertTrue(np.all(result.weights <= 4.0))
        self.assertLess(np.linalg.norm(result.x - self.true_pos), 0.05)

    def test_exact_data_is_reproduced(self):
        y = self.problem.h(self.true_pos)
        result = robust_nonlinear_ls(self.problem.h, self.problem.jacobian, y, self.x0, loss="tukey")
        assert_allclose(result.x, self.true_pos, atol=1e-6)

    def test_invalid_loss(self):
        with self.assertRaises(ValueError):
            solve_nonlinear_ls(
                self.problem.h, self.problem.jacobian, self.y, self.x0, robust_loss="l1"
            )
        with self.assertRaises(ValueError):
            robust_nonlinear_ls(
                self.problem.h, self.problem.jacobian, self.y, self.x0, loss_param=0.0
            )


class TestSolverDispatch(unittest.TestCase):
    """solve_nonlinear_ls argument handling."""

    def setUp(self):
        self.problem = RangeProblem([[0, 0], [10, 0], [0, 10]])
        self.y = self.problem.h(np.array([2.0, 2.0]))

    def test_gn_ignores_damping_argument(self):
        result = solve_nonlinear_ls(
            self.problem.h, self.problem.jacobian, self.y, np.array([5.0, 5.0]), method="gn", mu0=1.0
        )
        self.assertTrue(result.converged)

    def test_unknown_method(self):
        with self.assertRaises(ValueError):
            solve_nonlinear_ls(
                self.problem.h, self.problem.jacobian, self.y, np.zeros(2), method="bfgs"
            )

    def test_bad_inputs(self):
        with self.assertRaises(ValueError):
            solve_nonlinear_ls(self.problem.h, self.problem.jacobian, self.y, np.array([np.nan, 0.0]))
        with self.assertRaises(ValueError):
            solve_nonlinear_ls(
                self.problem.h, self.problem.jacobian, self.y, np.zeros(2), weights=-np.ones(3)
            )
        with self.assertRaises(ValueError):
            solve_nonlinear_ls(self.problem.h, self.problem.jacobian, self.y, np.zeros(2), max_iter=0)


if __name__ == "__main__":
    unittest.main()
