"""
Nonlinear position estimator.

Estimates the position of a receiver from a fingerprint of ranging and/or
RSSI readings against radio sources of known location:

1. Each reading is converted into a (source position, distance, σ) row
   (see rfloc.rf.distances).
2. The rows are fused by nonlinear weighted least squares
   (see rfloc.rf.positioning.LaterationSolver).
3. The measurement uncertainty is propagated into a position covariance.

The estimator is locked while estimate() runs. Any configuration change or
nested estimate() issued during that time (typically from a listener
callback) raises LockedError.

Example:
    >>> estimator = NonLinearPositionEstimator(dim=2, sources=sources,
    ...                                        fingerprint=fingerprint)
    >>> result = estimator.estimate()
    >>> result.position, result.covariance
"""

import dataclasses
import logging
import numbers
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, List, Optional, Tuple

import numpy as np

from rfloc.estimators.nonlinear_least_squares import ROBUST_LOSSES
from rfloc.exceptions import (
    ConfigurationError,
    EstimationError,
    LockedError,
    NotReadyError,
)
from rfloc.rf.distances import (
    DEFAULT_FALLBACK_DISTANCE_STD,
    DistanceRow,
    build_distance_rows,
    split_rows,
)
from rfloc.rf.positioning import LaterationSolver
from rfloc.rf.readings import Fingerprint
from rfloc.rf.sources import LocatedRadioSource

logger = logging.getLogger(__name__)


class EstimatorState(Enum):
    """Lifecycle state of a NonLinearPositionEstimator."""

    UNCONFIGURED = "unconfigured"
    READY = "ready"
    ESTIMATING = "estimating"


def _is_real(value) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


@dataclass(frozen=True)
class EstimatorConfig:
    """
    Tuning options of the nonlinear position estimator.

    Attributes:
        use_radio_source_position_covariance: Fold the position covariance
            of each source into the variance of its distance.
        fallback_distance_standard_deviation: Distance standard deviation
            (m) used for rows whose uncertainty is unknown.
        method: "lm" (Levenberg-Marquardt) or "gn" (Gauss-Newton).
        max_iterations: Maximum solver iterations.
        tolerance: Relative step size tolerance of the solver.
        divergence_factor: Cost growth factor declaring divergence.
        robust_loss: None for plain weighted least squares, or one of
            "huber", "cauchy", "gm", "tukey" to downweight outlier rows.
        robust_loss_param: Threshold of the robust loss in units of the
            residual scale.
    """

    use_radio_source_position_covariance: bool = False
    fallback_distance_standard_deviation: float = DEFAULT_FALLBACK_DISTANCE_STD
    method: str = "lm"
    max_iterations: int = 100
    tolerance: float = 1e-10
    divergence_factor: float = 1e6
    robust_loss: Optional[str] = None
    robust_loss_param: float = 1.5

    def __post_init__(self) -> None:
        if not isinstance(self.use_radio_source_position_covariance, bool):
            raise ConfigurationError("use_radio_source_position_covariance must be a bool")
        std = self.fallback_distance_standard_deviation
        if not _is_real(std) or not np.isfinite(std) or std <= 0:
            raise ConfigurationError(
                f"fallback_distance_standard_deviation must be positive, got {std!r}"
            )
        if self.method not in ("gn", "lm"):
            raise ConfigurationError(f"method must be 'gn' or 'lm', got {self.method!r}")
        if (
            not isinstance(self.max_iterations, numbers.Integral)
            or isinstance(self.max_iterations, bool)
            or self.max_iterations < 1
        ):
            raise ConfigurationError(
                f"max_iterations must be a positive integer, got {self.max_iterations!r}"
            )
        if not _is_real(self.tolerance) or not self.tolerance > 0:
            raise ConfigurationError(f"tolerance must be positive, got {self.tolerance!r}")
        if not _is_real(self.divergence_factor) or not self.divergence_factor > 1:
            raise ConfigurationError(
                f"divergence_factor must be > 1, got {self.divergence_factor!r}"
            )
        if self.robust_loss is not None and self.robust_loss not in ROBUST_LOSSES:
            raise ConfigurationError(
                f"robust_loss must be None or one of {ROBUST_LOSSES}, got {self.robust_loss!r}"
            )
        if not _is_real(self.robust_loss_param) or not self.robust_loss_param > 0:
            raise ConfigurationError(
                f"robust_loss_param must be positive, got {self.robust_loss_param!r}"
            )


@dataclass
class EstimationResult:
    """
    Outcome of one estimate() call.

    Attributes:
        position: Estimated position, shape (d,).
        covariance: Position covariance (d, d), or None when the geometry
            does not allow one to be computed.
        iterations: Solver iterations.
        residuals: Weighted residuals (‖p − s_i‖ − d_i) / σ_i per row.
        cost: Final cost ½ Σ residuals², robust weights included.
        robust_weights: Robust weight of each row, all 1 without a robust
            loss. Rows weighted near 0 were rejected as outliers.
    """

    position: np.ndarray
    covariance: Optional[np.ndarray]
    iterations: int
    residuals: np.ndarray
    cost: float
    robust_weights: np.ndarray


class PositionEstimatorListener:
    """Receives start/end notifications of estimate(). Override as needed."""

    def on_estimate_start(self, estimator: "NonLinearPositionEstimator") -> None:
        pass

    def on_estimate_end(self, estimator: "NonLinearPositionEstimator") -> None:
        pass


class NonLinearPositionEstimator:
    """
    Nonlinear least squares position estimator for ranging and RSSI readings.

    Attributes:
        dim: Spatial dimension (2 or 3).
        min_required_sources: Minimum number of usable rows, dim + 1.
    """

    def __init__(
        self,
        dim: int = 2,
        sources: Optional[Iterable[LocatedRadioSource]] = None,
        fingerprint: Optional[Fingerprint] = None,
        initial_position: Optional[np.ndarray] = None,
        listener: Optional[PositionEstimatorListener] = None,
        config: Optional[EstimatorConfig] = None,
    ):
        if dim not in (2, 3):
            raise ConfigurationError(f"dim must be 2 or 3, got {dim}")
        self._dim = dim
        self._lock = threading.Lock()

        self._sources: Optional[Tuple[LocatedRadioSource, ...]] = None
        self._fingerprint: Optional[Fingerprint] = None
        self._initial_position: Optional[np.ndarray] = None
        self._listener: Optional[PositionEstimatorListener] = None
        self._config = EstimatorConfig()

        self._rows: List[DistanceRow] = []
        self._result: Optional[EstimationResult] = None

        if sources is not None:
            self.sources = sources
        if fingerprint is not None:
            self.fingerprint = fingerprint
        if initial_position is not None:
            self.initial_position = initial_position
        if listener is not None:
            self.listener = listener
        if config is not None:
            self.config = config

    def _check_not_locked(self) -> None:
        if self._lock.locked():
            raise LockedError("Estimator is locked while an estimation is in progress")

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------
    @property
    def dim(self) -> int:
        return self._dim

    @property
    def min_required_sources(self) -> int:
        return self._dim + 1

    @property
    def sources(self) -> Optional[Tuple[LocatedRadioSource, ...]]:
        return self._sources

    @sources.setter
    def sources(self, sources: Iterable[LocatedRadioSource]) -> None:
        self._check_not_locked()
        if sources is None:
            raise ConfigurationError("sources are required")
        sources = tuple(sources)
        for source in sources:
            if not isinstance(source, LocatedRadioSource):
                raise ConfigurationError(
                    f"sources must be LocatedRadioSource objects, got {type(source)}"
                )
            if source.dim != self._dim:
                raise ConfigurationError(
                    f"Source {source.id!r} is {source.dim}D, estimator is {self._dim}D"
                )
        if len(sources) < self.min_required_sources:
            raise ConfigurationError(
                f"At least {self.min_required_sources} sources are required, "
                f"got {len(sources)}"
            )
        self._sources = sources

    @property
    def fingerprint(self) -> Optional[Fingerprint]:
        return self._fingerprint

    @fingerprint.setter
    def fingerprint(self, fingerprint: Fingerprint) -> None:
        self._check_not_locked()
        if fingerprint is None:
            raise ConfigurationError("fingerprint is required")
        if not isinstance(fingerprint, Fingerprint):
            raise ConfigurationError(
                f"fingerprint must be a Fingerprint, got {type(fingerprint)}"
            )
        self._fingerprint = fingerprint

    @property
    def initial_position(self) -> Optional[np.ndarray]:
        return None if self._initial_position is None else self._initial_position.copy()

    @initial_position.setter
    def initial_position(self, position: Optional[np.ndarray]) -> None:
        self._check_not_locked()
        if position is None:
            self._initial_position = None
            return
        position = np.array(position, dtype=float)
        if position.shape != (self._dim,):
            raise ConfigurationError(
                f"initial_position must have shape ({self._dim},), got {position.shape}"
            )
        if not np.all(np.isfinite(position)):
            raise ConfigurationError(f"initial_position must be finite, got {position}")
        self._initial_position = position

    @property
    def listener(self) -> Optional[PositionEstimatorListener]:
        return self._listener

    @listener.setter
    def listener(self, listener: Optional[PositionEstimatorListener]) -> None:
        self._check_not_locked()
        self._listener = listener

    @property
    def config(self) -> EstimatorConfig:
        return self._config

    @config.setter
    def config(self, config: EstimatorConfig) -> None:
        self._check_not_locked()
        if not isinstance(config, EstimatorConfig):
            raise ConfigurationError(f"config must be an EstimatorConfig, got {type(config)}")
        self._config = config

    @property
    def use_radio_source_position_covariance(self) -> bool:
        return self._config.use_radio_source_position_covariance

    @use_radio_source_position_covariance.setter
    def use_radio_source_position_covariance(self, value: bool) -> None:
        self._check_not_locked()
        self._config = dataclasses.replace(
            self._config, use_radio_source_position_covariance=value
        )

    @property
    def fallback_distance_standard_deviation(self) -> float:
        return self._config.fallback_distance_standard_deviation

    @fallback_distance_standard_deviation.setter
    def fallback_distance_standard_deviation(self, value: float) -> None:
        self._check_not_locked()
        self._config = dataclasses.replace(
            self._config, fallback_distance_standard_deviation=value
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------
    @property
    def is_locked(self) -> bool:
        return self._lock.locked()

    @property
    def is_ready(self) -> bool:
        """True when enough usable rows can be derived from the configuration."""
        if self._sources is None or self._fingerprint is None:
            return False
        return len(self._build_rows()) >= self.min_required_sources

    @property
    def state(self) -> EstimatorState:
        if self.is_locked:
            return EstimatorState.ESTIMATING
        if self.is_ready:
            return EstimatorState.READY
        return EstimatorState.UNCONFIGURED

    # ------------------------------------------------------------------
    # Results
    # ------------------------------------------------------------------
    @property
    def result(self) -> Optional[EstimationResult]:
        return self._result

    @property
    def estimated_position(self) -> Optional[np.ndarray]:
        if self._result is None:
            return None
        return self._result.position.copy()

    @property
    def estimated_position_coordinates(self) -> Optional[List[float]]:
        if self._result is None:
            return None
        return self._result.position.tolist()

    @property
    def estimated_covariance(self) -> Optional[np.ndarray]:
        if self._result is None or self._result.covariance is None:
            return None
        return self._result.covariance.copy()

    @property
    def rows(self) -> List[DistanceRow]:
        """Rows used by the last estimation."""
        return list(self._rows)

    @property
    def positions(self) -> np.ndarray:
        return split_rows(self._rows, self._dim)[0]

    @property
    def distances(self) -> np.ndarray:
        return split_rows(self._rows, self._dim)[1]

    @property
    def distance_standard_deviations(self) -> np.ndarray:
        return split_rows(self._rows, self._dim)[2]

    # ------------------------------------------------------------------
    # Estimation
    # ------------------------------------------------------------------
    def _build_rows(self) -> List[DistanceRow]:
        return build_distance_rows(
            self._sources,
            self._fingerprint,
            use_position_covariance=self._config.use_radio_source_position_covariance,
            fallback_std=self._config.fallback_distance_standard_deviation,
        )

    def estimate(self) -> EstimationResult:
        """
        Estimate the receiver position.

        Returns:
            EstimationResult with position and covariance (possibly None).

        Raises:
            LockedError: If an estimation is already in progress.
            NotReadyError: If fewer than min_required_sources usable rows
                can be derived.
            EstimationError: If the solver does not converge or diverges.
        """
        if not self._lock.acquire(blocking=False):
            raise LockedError("Estimation already in progress")

        try:
            if self._sources is None or self._fingerprint is None:
                raise NotReadyError("sources and fingerprint must be set before estimating")
            rows = self._build_rows()
            if len(rows) < self.min_required_sources:
                raise NotReadyError(
                    f"{len(rows)} usable readings, at least "
                    f"{self.min_required_sources} are required"
                )

            if self._listener is not None:
                self._listener.on_estimate_start(self)

            self._rows = rows
            self._result = None
            result = self._solve(rows)
            self._result = result
        finally:
            self._lock.release()

        if self._listener is not None:
            self._listener.on_estimate_end(self)

        return result

    def _solve(self, rows: List[DistanceRow]) -> EstimationResult:
        positions, distances, stds = split_rows(rows, self._dim)
        config = self._config

        try:
            solver = LaterationSolver(
                positions,
                method=config.method,
                robust_loss=config.robust_loss,
                loss_param=config.robust_loss_param,
            )
            position, info = solver.solve(
                distances,
                standard_deviations=stds,
                initial_guess=self._initial_position,
                max_iters=config.max_iterations,
                tol=config.tolerance,
                divergence_factor=config.divergence_factor,
            )
        except (ValueError, np.linalg.LinAlgError) as e:
            raise EstimationError(f"Position estimation failed: {e}") from e

        if info["diverged"]:
            raise EstimationError(
                f"Position estimation diverged after {info['iterations']} iteration(s)"
            )
        if not info["converged"]:
            raise EstimationError(
                f"Position estimation did not converge in {info['iterations']} iteration(s)"
            )

        logger.debug(
            "Estimated %dD position %s from %d rows in %d iteration(s)",
            self._dim,
            position,
            len(rows),
            info["iterations"],
        )

        return EstimationResult(
            position=position,
            covariance=info["covariance"],
            iterations=info["iterations"],
            residuals=info["residuals"],
            cost=info["cost"],
            robust_weights=info["robust_weights"],
        )
