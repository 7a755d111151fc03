"""
Distance derivation from heterogeneous readings.

Each reading of a fingerprint is turned into lateration rows
(source position, distance, distance standard deviation):

- A measured distance (RANGING, RANGING_AND_RSSI) is used directly.
- An RSSI (RSSI, RANGING_AND_RSSI) is converted by inverting the free-space
  path-loss model, which requires the source transmitted power and path-loss exponent.
  The RSSI (and source parameter) variances are propagated to first order.

A combined reading therefore contributes two rows when its source has a
known transmitted power.

Rows that cannot be derived (unknown source, missing source parameters,
non-positive or non-finite distance) are dropped.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Hashable, Iterable, List, Optional, Tuple

import numpy as np

from rfloc.rf.measurement_models import (
    propagate_variances_to_distance_variance,
    rssi_to_distance,
)
from rfloc.rf.readings import Fingerprint, Reading
from rfloc.rf.sources import LocatedRadioSource

logger = logging.getLogger(__name__)

# Distance standard deviation used when a reading carries none (1 mm).
DEFAULT_FALLBACK_DISTANCE_STD = 1e-3


@dataclass(frozen=True)
class DistanceRow:
    """
    One lateration row.

    Attributes:
        source: Located source the distance refers to.
        position: Source position, shape (d,).
        distance: Derived distance in meters (> 0).
        distance_std: Standard deviation of the distance in meters (> 0).
    """

    source: LocatedRadioSource
    position: np.ndarray
    distance: float
    distance_std: float


def _rssi_distance(
    source: LocatedRadioSource, reading: Reading, fallback_std: float
) -> Optional[Tuple[float, float]]:
    if not (source.has_transmitted_power and source.has_path_loss_exponent):
        logger.debug(
            "Source %r has no transmitted power; RSSI of its reading skipped", source.id
        )
        return None

    distance = rssi_to_distance(
        reading.rssi,
        source.transmitted_power_dbm,
        source.frequency,
        source.path_loss_exponent,
    )

    std = fallback_std
    if reading.rssi_std is not None:
        variance = propagate_variances_to_distance_variance(
            reading.rssi,
            source.transmitted_power_dbm,
            source.frequency,
            source.path_loss_exponent,
            transmitted_power_variance=source.transmitted_power_variance,
            rssi_variance=reading.rssi_std**2,
            path_loss_exp_variance=source.path_loss_exponent_variance,
        )
        if variance is not None and np.isfinite(variance) and variance > 0:
            std = float(np.sqrt(variance))

    return distance, std


def derive_distances(
    source: LocatedRadioSource,
    reading: Reading,
    use_position_covariance: bool = False,
    fallback_std: float = DEFAULT_FALLBACK_DISTANCE_STD,
) -> List[Tuple[float, float]]:
    """
    Derive every usable (distance, standard deviation) pair of one reading.

    A combined ranging and RSSI reading yields up to two pairs, the measured
    distance first and the path-loss distance second.

    Args:
        source: Located source matching the reading.
        reading: Ranging and/or RSSI reading.
        use_position_covariance: If True and the source carries a position
            covariance, its mean per-axis variance trace(Σ)/d is added to
            each distance variance.
        fallback_std: Standard deviation used when none can be derived.

    Returns:
        List of (distance, distance_std), possibly empty.
    """
    candidates = []
    if reading.has_distance:
        std = reading.distance_std if reading.distance_std is not None else fallback_std
        candidates.append((float(reading.distance), std))
    if reading.has_rssi:
        from_rssi = _rssi_distance(source, reading, fallback_std)
        if from_rssi is not None:
            candidates.append(from_rssi)

    position_variance = 0.0
    if use_position_covariance and source.has_position_covariance:
        position_variance = float(np.trace(source.position_covariance)) / source.dim

    derived = []
    for distance, std in candidates:
        if not np.isfinite(distance) or distance <= 0:
            logger.debug(
                "Distance %r to source %r is not usable, row dropped", distance, source.id
            )
            continue
        if position_variance > 0:
            std = np.sqrt(std**2 + position_variance)
        derived.append((distance, float(std)))
    return derived


def derive_distance(
    source: LocatedRadioSource,
    reading: Reading,
    use_position_covariance: bool = False,
    fallback_std: float = DEFAULT_FALLBACK_DISTANCE_STD,
) -> Optional[Tuple[float, float]]:
    """
    Derive the preferred distance and its standard deviation from one reading.

    The measured distance is preferred over the path-loss distance; see
    derive_distances() for all pairs of a combined reading.

    Returns:
        (distance, distance_std), or None when no usable distance can be
        derived from the reading.

    Example:
        >>> ap = LocatedRadioSource("ap", 2.4e9, position=np.zeros(2))
        >>> derive_distance(ap, Reading.ranging(ap, 5.0, distance_std=0.3))
        (5.0, 0.3)
    """
    derived = derive_distances(
        source,
        reading,
        use_position_covariance=use_position_covariance,
        fallback_std=fallback_std,
    )
    return derived[0] if derived else None


def build_distance_rows(
    sources: Iterable[LocatedRadioSource],
    fingerprint: Fingerprint,
    use_position_covariance: bool = False,
    fallback_std: float = DEFAULT_FALLBACK_DISTANCE_STD,
) -> List[DistanceRow]:
    """
    Derive the lateration rows of a fingerprint, in fingerprint order.

    Readings are matched to located sources by source id; when several
    located sources share an id the first one is used. Readings of unknown
    sources and readings without a usable distance are skipped.

    Args:
        sources: Located radio sources.
        fingerprint: Readings taken at the unknown position.
        use_position_covariance: Fold source position covariances into the
            distance variances.
        fallback_std: Distance standard deviation used when none is known.

    Returns:
        List of DistanceRow, at most two per reading.
    """
    lookup: Dict[Hashable, LocatedRadioSource] = {}
    for source in sources:
        lookup.setdefault(source.id, source)

    rows = []
    for reading in fingerprint:
        source = lookup.get(reading.source_id)
        if source is None:
            logger.debug("Reading of unknown source %r skipped", reading.source_id)
            continue

        for distance, std in derive_distances(
            source,
            reading,
            use_position_covariance=use_position_covariance,
            fallback_std=fallback_std,
        ):
            rows.append(DistanceRow(source, source.position, distance, std))

    logger.debug("%d rows derived from %d readings", len(rows), len(fingerprint))
    return rows


def split_rows(
    rows: List[DistanceRow], dim: Optional[int] = None
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Stack rows into solver inputs.

    Args:
        rows: Lateration rows.
        dim: Spatial dimension, only needed to shape an empty result.

    Returns:
        positions (N, d), distances (N,), standard deviations (N,).
    """
    if not rows:
        return np.empty((0, dim or 0)), np.empty(0), np.empty(0)

    positions = np.vstack([row.position for row in rows])
    distances = np.array([row.distance for row in rows], dtype=float)
    stds = np.array([row.distance_std for row in rows], dtype=float)
    return positions, distances, stds
