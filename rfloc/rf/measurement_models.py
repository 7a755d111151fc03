"""
RF measurement models for range and RSSI based positioning.

This module implements the free-space path-loss model linking the received
signal strength of a radio source to its distance:

    Pr = Pte * (c / (4*pi*f))^n / d^n

where Pte is the equivalent transmitted power, f the carrier frequency, n the
path-loss exponent and d the distance. Powers are handled in dBm by callers
and converted to mW internally.

It also provides first-order (linearized) propagation of RSSI, transmitted
power and path-loss exponent uncertainties into a distance uncertainty.
"""

from typing import Optional

import numpy as np

# Physical constants
SPEED_OF_LIGHT = 299792458.0  # m/s


# =============================================================================
# Power unit conversion
# =============================================================================
def dbm_to_power(value_dbm: float) -> float:
    """
    Convert a power expressed in dBm to mW.

    Args:
        value_dbm: Power in dBm.

    Returns:
        Power in mW (10^(dBm/10)).

    Example:
        >>> dbm_to_power(20.0)
        100.0
    """
    return float(10.0 ** (value_dbm / 10.0))


def power_to_dbm(value_mw: float) -> float:
    """
    Convert a power expressed in mW to dBm.

    Args:
        value_mw: Power in mW, must be positive.

    Returns:
        Power in dBm (10*log10(mW)).

    Raises:
        ValueError: If value_mw is not positive.
    """
    if value_mw <= 0:
        raise ValueError(f"Power must be positive, got {value_mw}")
    return float(10.0 * np.log10(value_mw))


def free_space_gain_db(frequency: float, c: float = SPEED_OF_LIGHT) -> float:
    """
    Free-space gain term k_dB = 10*log10(c / (4*pi*f)) in dB.

    Args:
        frequency: Carrier frequency in Hz.
        c: Speed of light in m/s. Defaults to SPEED_OF_LIGHT.

    Returns:
        k_dB, the gain of the path-loss model at 1 m per unit exponent.

    Raises:
        ValueError: If frequency is not positive.
    """
    if frequency <= 0:
        raise ValueError(f"Frequency must be positive, got {frequency}")
    return float(10.0 * np.log10(c / (4.0 * np.pi * frequency)))


# =============================================================================
# Path-loss model
# =============================================================================
def received_power(
    transmitted_power_mw: float,
    distance: float,
    frequency: float,
    path_loss_exp: float = 2.0,
) -> float:
    """
    Received power predicted by the free-space path-loss model.

        Pr = Pte * (c / (4*pi*f))^n / d^n

    Args:
        transmitted_power_mw: Equivalent transmitted power in mW.
        distance: Distance between source and receiver in meters.
        frequency: Carrier frequency in Hz.
        path_loss_exp: Path-loss exponent n. Defaults to 2.0 (free space).

    Returns:
        Received power in mW.

    Raises:
        ValueError: If distance or frequency are not positive.

    Example:
        >>> # 10 dBm source at 2.4 GHz, 5 m away
        >>> pr = received_power(dbm_to_power(10.0), 5.0, 2.4e9)
        >>> power_to_dbm(pr)  # ~ -44 dBm
    """
    if distance <= 0:
        raise ValueError("Distance must be positive")
    if frequency <= 0:
        raise ValueError(f"Frequency must be positive, got {frequency}")

    k = SPEED_OF_LIGHT / (4.0 * np.pi * frequency)
    return float(transmitted_power_mw * k**path_loss_exp / distance**path_loss_exp)


def rssi_from_distance(
    transmitted_power_dbm: float,
    distance: float,
    frequency: float,
    path_loss_exp: float = 2.0,
) -> float:
    """
    RSSI in dBm that a source of known power produces at a given distance.

    Args:
        transmitted_power_dbm: Equivalent transmitted power in dBm.
        distance: Distance in meters.
        frequency: Carrier frequency in Hz.
        path_loss_exp: Path-loss exponent. Defaults to 2.0.

    Returns:
        Received signal strength in dBm.
    """
    pr = received_power(
        dbm_to_power(transmitted_power_dbm), distance, frequency, path_loss_exp
    )
    return power_to_dbm(pr)


def rssi_to_distance(
    rssi_dbm: float,
    transmitted_power_dbm: float,
    frequency: float,
    path_loss_exp: float = 2.0,
) -> float:
    """
    Estimate distance by inverting the free-space path-loss model.

    Solving Pr = Pte * k^n / d^n for d, with k = c / (4*pi*f), gives in
    logarithmic units:

        d = 10^((n*k_dB + Pte_dBm - Pr_dBm) / (10*n))

    Args:
        rssi_dbm: Received signal strength in dBm.
        transmitted_power_dbm: Equivalent transmitted power in dBm.
        frequency: Carrier frequency in Hz.
        path_loss_exp: Path-loss exponent n. Defaults to 2.0.

    Returns:
        Estimated distance in meters.

    Raises:
        ValueError: If path_loss_exp or frequency are not positive.

    Example:
        >>> d = rssi_to_distance(rssi_from_distance(10.0, 5.0, 2.4e9), 10.0, 2.4e9)
        >>> round(d, 6)
        5.0
    """
    if path_loss_exp <= 0:
        raise ValueError(f"Path-loss exponent must be positive, got {path_loss_exp}")

    k_db = free_space_gain_db(frequency)
    exponent = (path_loss_exp * k_db + transmitted_power_dbm - rssi_dbm) / (
        10.0 * path_loss_exp
    )
    return float(10.0**exponent)


# =============================================================================
# Uncertainty propagation
# =============================================================================
def rssi_distance_gradient(
    rssi_dbm: float,
    transmitted_power_dbm: float,
    frequency: float,
    path_loss_exp: float = 2.0,
) -> np.ndarray:
    """
    Gradient of the inverted path-loss model.

    With g = (n*k_dB + Pte - Pr) / (10*n) and d = 10^g:

        dd/dPte =  ln(10) / (10*n) * d
        dd/dPr  = -ln(10) / (10*n) * d
        dd/dn   = -ln(10) * (Pte - Pr) / (10*n^2) * d

    Args:
        rssi_dbm: Received signal strength Pr in dBm.
        transmitted_power_dbm: Equivalent transmitted power Pte in dBm.
        frequency: Carrier frequency in Hz.
        path_loss_exp: Path-loss exponent n.

    Returns:
        Gradient [dd/dPte, dd/dPr, dd/dn], shape (3,).
    """
    distance = rssi_to_distance(rssi_dbm, transmitted_power_dbm, frequency, path_loss_exp)
    ln10 = np.log(10.0)
    ten_n = 10.0 * path_loss_exp

    d_tx = ln10 / ten_n * distance
    d_rx = -ln10 / ten_n * distance
    d_n = -ln10 * (transmitted_power_dbm - rssi_dbm) / (ten_n * path_loss_exp) * distance

    return np.array([d_tx, d_rx, d_n])


def propagate_variances_to_distance_variance(
    rssi_dbm: float,
    transmitted_power_dbm: float,
    frequency: float,
    path_loss_exp: float,
    transmitted_power_variance: Optional[float] = None,
    rssi_variance: Optional[float] = None,
    path_loss_exp_variance: Optional[float] = None,
) -> Optional[float]:
    """
    Propagate transmitted power, RSSI and path-loss exponent variances.

    The three inputs are treated as independent, so

        var(d) = g_tx^2 var(Pte) + g_rx^2 var(Pr) + g_n^2 var(n)

    where g is the gradient returned by rssi_distance_gradient(). Unknown
    variances contribute nothing.

    Args:
        rssi_dbm: Received signal strength in dBm.
        transmitted_power_dbm: Equivalent transmitted power in dBm.
        frequency: Carrier frequency in Hz.
        path_loss_exp: Path-loss exponent.
        transmitted_power_variance: Variance of Pte in dBm^2, or None.
        rssi_variance: Variance of Pr in dBm^2, or None.
        path_loss_exp_variance: Variance of n, or None.

    Returns:
        Distance variance in m^2, or None when no variance is known.

    Example:
        >>> var = propagate_variances_to_distance_variance(
        ...     -50.0, 10.0, 2.4e9, 2.0, rssi_variance=1.0)
        >>> var > 0
        True
    """
    variances = np.array(
        [
            transmitted_power_variance if transmitted_power_variance is not None else np.nan,
            rssi_variance if rssi_variance is not None else np.nan,
            path_loss_exp_variance if path_loss_exp_variance is not None else np.nan,
        ],
        dtype=float,
    )
    known = ~np.isnan(variances)
    if not np.any(known):
        return None
    if np.any(variances[known] < 0):
        raise ValueError(f"Variances must be non-negative, got {variances[known]}")

    gradient = rssi_distance_gradient(
        rssi_dbm, transmitted_power_dbm, frequency, path_loss_exp
    )
    return float(np.sum(gradient[known] ** 2 * variances[known]))
