"""Radio source definitions (Wi-Fi access points, beacons).

A RadioSource is identified by an opaque key and a carrier frequency. A
LocatedRadioSource additionally knows where it is, and optionally how
uncertain that position is and which transmitted power and path-loss
exponent it exhibits. Capability predicates (``has_position``,
``has_transmitted_power``, ...) let callers decide which distance
derivation applies to a reading.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Hashable, Optional

import numpy as np

from rfloc.exceptions import ConfigurationError

# Default path-loss exponent (free space).
DEFAULT_PATH_LOSS_EXPONENT = 2.0


class RadioSourceType(Enum):
    """Kind of radio source."""

    WIFI_ACCESS_POINT = "wifi_access_point"
    BEACON = "beacon"


@dataclass(frozen=True)
class RadioSource:
    """
    Radio source of unknown position.

    Attributes:
        id: Opaque identifier (e.g. BSSID or beacon identifier). Readings
            are matched against located sources through this key.
        frequency: Carrier frequency in Hz.
        source_type: Kind of radio source.

    Example:
        >>> ap = RadioSource("00:11:22:33:44:55", frequency=2.4e9)
        >>> ap.has_position
        False
    """

    id: Hashable
    frequency: float
    source_type: RadioSourceType = RadioSourceType.WIFI_ACCESS_POINT

    def __post_init__(self) -> None:
        if self.id is None:
            raise ConfigurationError("Radio source id is required")
        if not np.isfinite(self.frequency) or self.frequency <= 0:
            raise ConfigurationError(
                f"Frequency must be a positive finite value, got {self.frequency}"
            )

    @property
    def has_position(self) -> bool:
        return False

    @property
    def has_position_covariance(self) -> bool:
        return False

    @property
    def has_transmitted_power(self) -> bool:
        return False

    @property
    def has_path_loss_exponent(self) -> bool:
        return False


@dataclass(frozen=True)
class LocatedRadioSource(RadioSource):
    """
    Radio source with a known position.

    Attributes:
        position: Source position, shape (2,) or (3,).
        position_covariance: Optional covariance of the position, shape
            (d, d). Must be symmetric positive semi-definite.
        transmitted_power_dbm: Optional equivalent transmitted power (dBm).
        transmitted_power_std_dbm: Optional standard deviation of the
            transmitted power (dB).
        path_loss_exponent: Path-loss exponent. Only meaningful together
            with a transmitted power; defaults to 2.0 (free space).
        path_loss_exponent_std: Optional standard deviation of the
            path-loss exponent.

    Example:
        >>> beacon = LocatedRadioSource(
        ...     "b1", frequency=2.4e9, position=np.array([1.0, 2.0]),
        ...     transmitted_power_dbm=-4.0)
        >>> beacon.dim, beacon.has_transmitted_power
        (2, True)
    """

    position: np.ndarray = field(default=None, compare=False)
    position_covariance: Optional[np.ndarray] = field(default=None, compare=False)
    transmitted_power_dbm: Optional[float] = None
    transmitted_power_std_dbm: Optional[float] = None
    path_loss_exponent: float = DEFAULT_PATH_LOSS_EXPONENT
    path_loss_exponent_std: Optional[float] = None

    def __post_init__(self) -> None:
        super().__post_init__()

        if self.position is None:
            raise ConfigurationError("Located radio source requires a position")
        position = np.array(self.position, dtype=float)
        if position.ndim != 1 or position.shape[0] not in (2, 3):
            raise ConfigurationError(
                f"Position must have shape (2,) or (3,), got {position.shape}"
            )
        if not np.all(np.isfinite(position)):
            raise ConfigurationError(f"Position must be finite, got {position}")
        position.setflags(write=False)
        # Frozen dataclass: bypass __setattr__ to store the normalized copy.
        object.__setattr__(self, "position", position)

        if self.position_covariance is not None:
            cov = np.array(self.position_covariance, dtype=float)
            d = position.shape[0]
            if cov.shape != (d, d):
                raise ConfigurationError(
                    f"Position covariance must have shape ({d}, {d}), got {cov.shape}"
                )
            if not np.allclose(cov, cov.T):
                raise ConfigurationError("Position covariance must be symmetric")
            eigvals = np.linalg.eigvalsh(cov)
            if np.any(eigvals < -1e-10):
                raise ConfigurationError(
                    "Position covariance must be positive semi-definite, "
                    f"got eigenvalues {eigvals}"
                )
            cov.setflags(write=False)
            object.__setattr__(self, "position_covariance", cov)

        if self.transmitted_power_dbm is not None and not np.isfinite(
            self.transmitted_power_dbm
        ):
            raise ConfigurationError(
                f"Transmitted power must be finite, got {self.transmitted_power_dbm}"
            )
        if self.path_loss_exponent is None or self.path_loss_exponent <= 0:
            raise ConfigurationError(
                f"Path-loss exponent must be positive, got {self.path_loss_exponent}"
            )
        for name in ("transmitted_power_std_dbm", "path_loss_exponent_std"):
            value = getattr(self, name)
            if value is not None and not value > 0:
                raise ConfigurationError(f"{name} must be positive, got {value}")

    @property
    def dim(self) -> int:
        """Spatial dimension of the source position (2 or 3)."""
        return self.position.shape[0]

    @property
    def has_position(self) -> bool:
        return True

    @property
    def has_position_covariance(self) -> bool:
        return self.position_covariance is not None

    @property
    def has_transmitted_power(self) -> bool:
        return self.transmitted_power_dbm is not None

    @property
    def has_path_loss_exponent(self) -> bool:
        # The exponent only takes part in the RSSI model with a known power.
        return self.has_transmitted_power

    @property
    def transmitted_power_variance(self) -> Optional[float]:
        if self.transmitted_power_std_dbm is None:
            return None
        return self.transmitted_power_std_dbm**2

    @property
    def path_loss_exponent_variance(self) -> Optional[float]:
        if self.path_loss_exponent_std is None:
            return None
        return self.path_loss_exponent_std**2
