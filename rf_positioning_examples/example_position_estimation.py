"""
Nonlinear Position Estimation Example.

This script demonstrates position estimation from ranging and RSSI
fingerprints with NonLinearPositionEstimator:

    - Ranging-only 2D estimation with noiseless distances
    - RSSI-only 3D estimation through the free-space path-loss model
    - Monte Carlo evaluation of noisy mixed ranging / RSSI fingerprints,
      with RMSE and NEES consistency of the reported covariance
    - Robust (Huber, Cauchy) rejection of a non-line-of-sight range

Usage:
    python -m rf_positioning_examples.example_position_estimation
    python -m rf_positioning_examples.example_position_estimation --trials 500 --no-plot
"""

import argparse
import logging
from pathlib import Path

import matplotlib.pyplot as plt
import numpy as np
from tqdm import tqdm

from rfloc.eval import (
    compute_error_stats,
    compute_nees,
    compute_position_errors,
    nees_bounds,
    plot_rf_geometry,
    save_figure,
)
from rfloc.exceptions import EstimationError
from rfloc.rf import (
    EstimatorConfig,
    Fingerprint,
    LocatedRadioSource,
    NonLinearPositionEstimator,
    RadioSourceType,
    Reading,
    rssi_from_distance,
)

FREQUENCY = 2.4e9  # Hz
TX_POWER_DBM = -4.0


def make_sources(positions, tx_power_dbm=None, source_type=RadioSourceType.WIFI_ACCESS_POINT):
    """Build located sources named S0, S1, ... at the given positions."""
    return [
        LocatedRadioSource(
            f"S{i}",
            FREQUENCY,
            source_type,
            position=position,
            transmitted_power_dbm=tx_power_dbm,
        )
        for i, position in enumerate(positions)
    ]


def example_ranging_2d():
    """Example 1: ranging-only 2D estimation."""
    print("=" * 70)
    print("Example 1: Ranging-only 2D Position Estimation")
    print("=" * 70)

    positions = np.array([[0, 0], [10, 0], [10, 10], [0, 10]], dtype=float)
    true_pos = np.array([3.0, 7.0])
    sources = make_sources(positions)

    distances = np.linalg.norm(positions - true_pos, axis=1)
    fingerprint = Fingerprint(
        [Reading.ranging(s, d, distance_std=0.1) for s, d in zip(sources, distances)]
    )

    estimator = NonLinearPositionEstimator(dim=2, sources=sources, fingerprint=fingerprint)
    result = estimator.estimate()

    print(f"\nTrue position:      {true_pos}")
    print(f"Estimated position: {result.position}")
    print(f"Position error:     {np.linalg.norm(result.position - true_pos):.2e} m")
    print(f"Iterations:         {result.iterations}")

    return estimator, true_pos


def example_rssi_3d():
    """Example 2: RSSI-only 3D estimation with six beacons."""
    print("\n" + "=" * 70)
    print("Example 2: RSSI-only 3D Position Estimation")
    print("=" * 70)

    true_pos = np.array([2.0, 3.0, 1.5])
    positions = true_pos + np.array(
        [
            [5.0, 0.0, 0.0],
            [-5.0, 0.5, 0.0],
            [0.0, 5.0, 0.5],
            [0.5, -5.0, 0.0],
            [0.0, 0.5, 5.0],
            [0.5, 0.0, -5.0],
        ]
    )
    sources = make_sources(positions, TX_POWER_DBM, RadioSourceType.BEACON)

    distances = np.linalg.norm(positions - true_pos, axis=1)
    fingerprint = Fingerprint(
        [
            Reading.rssi_only(s, rssi_from_distance(TX_POWER_DBM, d, FREQUENCY))
            for s, d in zip(sources, distances)
        ]
    )
    for reading in fingerprint:
        print(f"  {reading.source_id}: RSSI = {reading.rssi:6.2f} dBm")

    estimator = NonLinearPositionEstimator(dim=3, sources=sources, fingerprint=fingerprint)
    result = estimator.estimate()

    print(f"\nTrue position:      {true_pos}")
    print(f"Estimated position: {result.position}")
    print(f"Position error:     {np.linalg.norm(result.position - true_pos):.2e} m")


def example_monte_carlo(n_trials=200, seed=42):
    """Example 3: noisy mixed ranging / RSSI fingerprints."""
    print("\n" + "=" * 70)
    print("Example 3: Monte Carlo with Mixed Ranging and RSSI Readings")
    print("=" * 70)

    rng = np.random.default_rng(seed)
    positions = np.array(
        [[0, 0], [20, 0], [20, 15], [0, 15], [10, -3], [10, 18]], dtype=float
    )
    sources = make_sources(positions, TX_POWER_DBM)
    true_pos = np.array([8.0, 6.0])
    range_std = 0.3
    rssi_std = 1.0

    distances = np.linalg.norm(positions - true_pos, axis=1)
    estimator = NonLinearPositionEstimator(dim=2, sources=sources)

    truths, estimates, covariances = [], [], []
    failures = 0
    for _ in tqdm(range(n_trials), desc="Monte Carlo", unit="trial"):
        readings = []
        for i, (source, distance) in enumerate(zip(sources, distances)):
            if i % 2 == 0:
                measured = max(distance + rng.normal(0.0, range_std), 0.01)
                readings.append(Reading.ranging(source, measured, distance_std=range_std))
            else:
                rssi = rssi_from_distance(TX_POWER_DBM, distance, FREQUENCY)
                rssi += rng.normal(0.0, rssi_std)
                readings.append(Reading.rssi_only(source, rssi, rssi_std=rssi_std))
        estimator.fingerprint = Fingerprint(readings)

        try:
            result = estimator.estimate()
        except EstimationError:
            failures += 1
            continue
        if result.covariance is None:
            continue

        truths.append(true_pos)
        estimates.append(result.position)
        covariances.append(result.covariance)

    errors = compute_position_errors(np.array(truths), np.array(estimates))
    stats = compute_error_stats(errors)
    nees = compute_nees(np.array(truths), np.array(estimates), np.array(covariances))
    lower, upper = nees_bounds(dof=2, confidence=0.95)
    inside = np.mean((nees >= lower) & (nees <= upper))

    print(f"\nTrials: {n_trials}, failures: {failures}")
    print(f"RMSE:   {stats['rmse']:.3f} m")
    print(f"P95:    {stats['p95']:.3f} m")
    print(f"Mean NEES: {np.nanmean(nees):.2f} (expected 2 for a consistent estimator)")
    print(f"NEES within 95% bounds: {inside:.1%}")

    return estimator, true_pos


def example_nlos_robust():
    """Example 4: one NLOS range rejected by a robust loss."""
    print("\n" + "=" * 70)
    print("Example 4: Robust Estimation with a Non-Line-of-Sight Range")
    print("=" * 70)

    true_pos = np.array([12.0, 7.0])
    angles = np.deg2rad(np.arange(0, 360, 45))
    positions = true_pos + 10.0 * np.column_stack([np.cos(angles), np.sin(angles)])
    sources = make_sources(positions)

    readings = []
    for i, source in enumerate(sources):
        distance = float(np.linalg.norm(source.position - true_pos))
        if i == 2:
            distance += 6.0  # reflected path
        readings.append(Reading.ranging(source, distance, distance_std=0.1))
    fingerprint = Fingerprint(readings)

    print(f"\n{'Loss':<10} {'Error (m)':<12} {'Weight of NLOS row':<20}")
    print("-" * 44)
    for loss in (None, "huber", "cauchy"):
        estimator = NonLinearPositionEstimator(
            dim=2,
            sources=sources,
            fingerprint=fingerprint,
            config=EstimatorConfig(robust_loss=loss),
        )
        result = estimator.estimate()
        error = np.linalg.norm(result.position - true_pos)
        print(f"{str(loss):<10} {error:<12.3f} {result.robust_weights[2]:<20.3g}")


def main():
    """Run all position estimation examples."""
    parser = argparse.ArgumentParser(
        description="Nonlinear RF position estimation examples",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--trials", type=int, default=200, help="Monte Carlo trials")
    parser.add_argument("--seed", type=int, default=42, help="Random seed")
    parser.add_argument(
        "--output-dir",
        type=Path,
        default=Path("rf_positioning_examples/figs"),
        help="Directory for the generated figure",
    )
    parser.add_argument("--no-plot", action="store_true", help="Skip the figure")
    parser.add_argument("--verbose", action="store_true", help="Show solver debug logs")
    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    example_ranging_2d()
    example_rssi_3d()
    estimator, true_pos = example_monte_carlo(args.trials, args.seed)
    example_nlos_robust()

    if not args.no_plot and estimator.result is not None:
        print("\n" + "=" * 70)
        print("Generating visualization...")
        print("=" * 70)

        fig = plot_rf_geometry(
            estimator.positions,
            truth_xy=true_pos,
            estimate_xy=estimator.estimated_position,
            covariance=estimator.estimated_covariance,
            distances=estimator.distances,
            labels=[row.source.id for row in estimator.rows],
            title="Mixed Ranging / RSSI Position Estimate",
        )
        paths = save_figure(fig, args.output_dir, "position_estimation_example")
        print(f"\nFigure saved: {paths[0]}")
        plt.show()

    print("\n" + "=" * 70)
    print("Examples completed successfully!")
    print("=" * 70)


if __name__ == "__main__":
    main()
