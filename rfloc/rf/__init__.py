"""
RF (Radio Frequency) positioning module.

This module implements the path-loss measurement model, the conversion of
ranging and RSSI readings into distances, and nonlinear lateration.

Submodules:
    sources: Radio sources and their capabilities
    readings: Ranging / RSSI readings and fingerprints
    measurement_models: Path-loss model and variance propagation
    distances: Distance derivation from readings
    positioning: Lateration solver
    position_estimator: Estimator façade with locking and listener
"""

from rfloc.rf.distances import (
    DEFAULT_FALLBACK_DISTANCE_STD,
    DistanceRow,
    build_distance_rows,
    derive_distance,
    derive_distances,
    split_rows,
)
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
from rfloc.rf.position_estimator import (
    EstimationResult,
    EstimatorConfig,
    EstimatorState,
    NonLinearPositionEstimator,
    PositionEstimatorListener,
)
from rfloc.rf.positioning import LaterationSolver, linear_initial_guess
from rfloc.rf.readings import Fingerprint, Reading, ReadingType
from rfloc.rf.sources import LocatedRadioSource, RadioSource, RadioSourceType

__all__ = [
    # Constants
    "SPEED_OF_LIGHT",
    "DEFAULT_FALLBACK_DISTANCE_STD",
    # Sources and readings
    "RadioSource",
    "LocatedRadioSource",
    "RadioSourceType",
    "Reading",
    "ReadingType",
    "Fingerprint",
    # Measurement models
    "dbm_to_power",
    "power_to_dbm",
    "free_space_gain_db",
    "received_power",
    "rssi_from_distance",
    "rssi_to_distance",
    "rssi_distance_gradient",
    "propagate_variances_to_distance_variance",
    # Distance derivation
    "DistanceRow",
    "derive_distance",
    "derive_distances",
    "build_distance_rows",
    "split_rows",
    # Positioning
    "LaterationSolver",
    "linear_initial_guess",
    # Estimator
    "NonLinearPositionEstimator",
    "PositionEstimatorListener",
    "EstimatorConfig",
    "EstimatorState",
    "EstimationResult",
]
