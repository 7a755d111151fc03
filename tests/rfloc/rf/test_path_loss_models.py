"""
Unit tests for the free-space path-loss model and variance propagation.
"""

import numpy as np
import pytest

from rfloc.rf.measurement_models import (
    SPEED_OF_LIGHT,
    dbm_to_power,
    free_space_gain_db,
    power_to_dbm,
    propagate_variances_to_distance_variance,
    received_power,
    rssi_distance_gradient,
    rssi_from_distance,
    rssi_to_distance,
)

FREQUENCY = 2.4e9


class TestPowerConversion:
    """Test dBm <-> mW conversion."""

    def test_known_values(self):
        assert dbm_to_power(0.0) == pytest.approx(1.0)
        assert dbm_to_power(20.0) == pytest.approx(100.0)
        assert dbm_to_power(-30.0) == pytest.approx(1e-3)
        assert power_to_dbm(10.0) == pytest.approx(10.0)

    def test_non_positive_power_rejected(self):
        with pytest.raises(ValueError, match="Power must be positive"):
            power_to_dbm(0.0)
        with pytest.raises(ValueError, match="Power must be positive"):
            power_to_dbm(-1.0)


class TestPathLoss:
    """Test the path-loss model and its inversion."""

    def test_free_space_gain_at_2_4_ghz(self):
        """k_dB = 10 log10(c / (4 pi f)) is about -20.03 dB at 2.4 GHz."""
        assert free_space_gain_db(FREQUENCY) == pytest.approx(-20.026, abs=1e-2)

    def test_free_space_gain_rejects_bad_frequency(self):
        with pytest.raises(ValueError, match="Frequency must be positive"):
            free_space_gain_db(0.0)

    def test_received_power_at_one_meter(self):
        """At 1 m the received power is Pte * k^n."""
        k = SPEED_OF_LIGHT / (4.0 * np.pi * FREQUENCY)
        pr = received_power(2.0, 1.0, FREQUENCY, path_loss_exp=2.0)
        assert pr == pytest.approx(2.0 * k**2)

    def test_received_power_rejects_zero_distance(self):
        with pytest.raises(ValueError, match="Distance must be positive"):
            received_power(1.0, 0.0, FREQUENCY)

    def test_doubling_distance_costs_6_db_in_free_space(self):
        r1 = rssi_from_distance(0.0, 1.0, FREQUENCY)
        r2 = rssi_from_distance(0.0, 2.0, FREQUENCY)
        assert r1 - r2 == pytest.approx(20.0 * np.log10(2.0))

    def test_exponent_scales_attenuation(self):
        r_n2 = rssi_from_distance(0.0, 10.0, FREQUENCY, path_loss_exp=2.0)
        r_n3 = rssi_from_distance(0.0, 10.0, FREQUENCY, path_loss_exp=3.0)
        assert r_n3 < r_n2

    def test_inversion_recovers_distance(self):
        for n in (1.6, 2.0, 3.5):
            rssi = rssi_from_distance(-4.0, 7.3, FREQUENCY, path_loss_exp=n)
            d = rssi_to_distance(rssi, -4.0, FREQUENCY, path_loss_exp=n)
            assert d == pytest.approx(7.3, rel=1e-10)

    def test_inversion_closed_form(self):
        """d = 10^((n k_dB + Pte - Pr) / (10 n))."""
        n = 2.0
        k_db = free_space_gain_db(FREQUENCY)
        expected = 10.0 ** ((n * k_db + 10.0 - (-60.0)) / (10.0 * n))
        assert rssi_to_distance(-60.0, 10.0, FREQUENCY, n) == pytest.approx(expected)

    def test_inversion_rejects_bad_exponent(self):
        with pytest.raises(ValueError, match="Path-loss exponent must be positive"):
            rssi_to_distance(-60.0, 0.0, FREQUENCY, path_loss_exp=0.0)


class TestVariancePropagation:
    """Test linearized propagation of RSSI / power / exponent variances."""

    def test_gradient_matches_numerical_derivatives(self):
        rssi, tx, n = -55.0, -4.0, 2.2
        gradient = rssi_distance_gradient(rssi, tx, FREQUENCY, n)

        eps = 1e-6

        def d(tx_, rssi_, n_):
            return rssi_to_distance(rssi_, tx_, FREQUENCY, n_)

        numerical = np.array(
            [
                (d(tx + eps, rssi, n) - d(tx - eps, rssi, n)) / (2 * eps),
                (d(tx, rssi + eps, n) - d(tx, rssi - eps, n)) / (2 * eps),
                (d(tx, rssi, n + eps) - d(tx, rssi, n - eps)) / (2 * eps),
            ]
        )
        np.testing.assert_allclose(gradient, numerical, rtol=1e-5)

    def test_rssi_variance_only(self):
        rssi, tx, n = -60.0, 0.0, 2.0
        gradient = rssi_distance_gradient(rssi, tx, FREQUENCY, n)

        var = propagate_variances_to_distance_variance(
            rssi, tx, FREQUENCY, n, rssi_variance=4.0
        )
        assert var == pytest.approx(gradient[1] ** 2 * 4.0)

    def test_independent_variances_add(self):
        rssi, tx, n = -60.0, 0.0, 2.0
        g = rssi_distance_gradient(rssi, tx, FREQUENCY, n)

        var = propagate_variances_to_distance_variance(
            rssi,
            tx,
            FREQUENCY,
            n,
            transmitted_power_variance=0.25,
            rssi_variance=1.0,
            path_loss_exp_variance=0.01,
        )
        expected = g[0] ** 2 * 0.25 + g[1] ** 2 * 1.0 + g[2] ** 2 * 0.01
        assert var == pytest.approx(expected)

    def test_no_known_variance_returns_none(self):
        assert propagate_variances_to_distance_variance(-60.0, 0.0, FREQUENCY, 2.0) is None

    def test_negative_variance_rejected(self):
        with pytest.raises(ValueError, match="non-negative"):
            propagate_variances_to_distance_variance(
                -60.0, 0.0, FREQUENCY, 2.0, rssi_variance=-1.0
            )

    def test_distance_std_grows_with_distance(self):
        """The same RSSI noise maps to a larger distance error further away."""
        near = propagate_variances_to_distance_variance(-40.0, 0.0, FREQUENCY, 2.0, rssi_variance=1.0)
        far = propagate_variances_to_distance_variance(-70.0, 0.0, FREQUENCY, 2.0, rssi_variance=1.0)
        assert far > near
