"""Readings and fingerprints collected at an unknown receiver position.

A Reading is a tagged union over three variants (``ReadingType``):

- RANGING: a measured distance to the source (e.g. Wi-Fi RTT / UWB).
- RSSI: a received signal strength in dBm.
- RANGING_AND_RSSI: both at once.

Callers dispatch on ``reading_type`` (or on ``has_distance`` / ``has_rssi``)
to decide how a distance is derived from the reading.

A Fingerprint is the ordered collection of readings taken at one position.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Iterator, List, Optional, Tuple

import numpy as np

from rfloc.exceptions import ConfigurationError
from rfloc.rf.sources import RadioSource


class ReadingType(Enum):
    """Variant tag of a Reading."""

    RANGING = "ranging"
    RSSI = "rssi"
    RANGING_AND_RSSI = "ranging_and_rssi"


@dataclass(frozen=True)
class Reading:
    """
    Single measurement against one radio source.

    Attributes:
        source: Radio source the reading refers to (not necessarily located).
        reading_type: Variant tag.
        distance: Measured distance in meters (RANGING variants), >= 0.
        distance_std: Optional standard deviation of the distance (m).
        rssi: Received signal strength in dBm (RSSI variants).
        rssi_std: Optional standard deviation of the RSSI (dB).
        num_attempted_measurements: Optional number of ranging attempts
            averaged into ``distance``.
        num_successful_measurements: Optional number of ranging attempts
            that succeeded.

    Use the ``ranging``, ``rssi_only`` and ``ranging_and_rssi`` constructors
    rather than passing the tag by hand:

        >>> ap = RadioSource("ap1", 2.4e9)
        >>> r = Reading.ranging(ap, distance=4.2, distance_std=0.5)
        >>> r.reading_type, r.has_rssi
        (<ReadingType.RANGING: 'ranging'>, False)
    """

    source: RadioSource
    reading_type: ReadingType
    distance: Optional[float] = None
    distance_std: Optional[float] = None
    rssi: Optional[float] = None
    rssi_std: Optional[float] = None
    num_attempted_measurements: Optional[int] = None
    num_successful_measurements: Optional[int] = None

    def __post_init__(self) -> None:
        if not isinstance(self.source, RadioSource):
            raise ConfigurationError(
                f"Reading source must be a RadioSource, got {type(self.source)}"
            )
        if not isinstance(self.reading_type, ReadingType):
            raise ConfigurationError(
                f"reading_type must be a ReadingType, got {self.reading_type!r}"
            )

        needs_distance = self.reading_type in (
            ReadingType.RANGING,
            ReadingType.RANGING_AND_RSSI,
        )
        needs_rssi = self.reading_type in (ReadingType.RSSI, ReadingType.RANGING_AND_RSSI)

        if needs_distance:
            if self.distance is None:
                raise ConfigurationError(f"{self.reading_type.name} reading requires a distance")
            if not np.isfinite(self.distance) or self.distance < 0:
                raise ConfigurationError(
                    f"Distance must be finite and non-negative, got {self.distance}"
                )
        elif self.distance is not None or self.distance_std is not None:
            raise ConfigurationError("RSSI reading cannot carry a distance")

        if needs_rssi:
            if self.rssi is None:
                raise ConfigurationError(f"{self.reading_type.name} reading requires an RSSI")
            if not np.isfinite(self.rssi):
                raise ConfigurationError(f"RSSI must be finite, got {self.rssi}")
        elif self.rssi is not None or self.rssi_std is not None:
            raise ConfigurationError("Ranging reading cannot carry an RSSI")

        for name in ("distance_std", "rssi_std"):
            value = getattr(self, name)
            if value is not None and not value > 0:
                raise ConfigurationError(f"{name} must be positive, got {value}")

        attempted = self.num_attempted_measurements
        successful = self.num_successful_measurements
        if attempted is not None and attempted < 1:
            raise ConfigurationError(
                f"num_attempted_measurements must be >= 1, got {attempted}"
            )
        if successful is not None and successful < 1:
            raise ConfigurationError(
                f"num_successful_measurements must be >= 1, got {successful}"
            )
        if attempted is not None and successful is not None and successful > attempted:
            raise ConfigurationError(
                "num_successful_measurements cannot exceed num_attempted_measurements"
            )

    @classmethod
    def ranging(
        cls,
        source: RadioSource,
        distance: float,
        distance_std: Optional[float] = None,
        num_attempted_measurements: Optional[int] = None,
        num_successful_measurements: Optional[int] = None,
    ) -> "Reading":
        """Create a ranging-only reading."""
        return cls(
            source=source,
            reading_type=ReadingType.RANGING,
            distance=distance,
            distance_std=distance_std,
            num_attempted_measurements=num_attempted_measurements,
            num_successful_measurements=num_successful_measurements,
        )

    @classmethod
    def rssi_only(
        cls,
        source: RadioSource,
        rssi: float,
        rssi_std: Optional[float] = None,
    ) -> "Reading":
        """Create an RSSI-only reading."""
        return cls(
            source=source,
            reading_type=ReadingType.RSSI,
            rssi=rssi,
            rssi_std=rssi_std,
        )

    @classmethod
    def ranging_and_rssi(
        cls,
        source: RadioSource,
        distance: float,
        rssi: float,
        distance_std: Optional[float] = None,
        rssi_std: Optional[float] = None,
        num_attempted_measurements: Optional[int] = None,
        num_successful_measurements: Optional[int] = None,
    ) -> "Reading":
        """Create a combined ranging and RSSI reading."""
        return cls(
            source=source,
            reading_type=ReadingType.RANGING_AND_RSSI,
            distance=distance,
            distance_std=distance_std,
            rssi=rssi,
            rssi_std=rssi_std,
            num_attempted_measurements=num_attempted_measurements,
            num_successful_measurements=num_successful_measurements,
        )

    @property
    def has_distance(self) -> bool:
        return self.reading_type is not ReadingType.RSSI

    @property
    def has_rssi(self) -> bool:
        return self.reading_type is not ReadingType.RANGING

    @property
    def source_id(self):
        return self.source.id


@dataclass(frozen=True)
class Fingerprint:
    """
    Ordered collection of readings taken at one (unknown) position.

    The order of readings defines the order of the rows fed to the solver,
    so it is kept as given.

    Attributes:
        readings: Readings, one per source of interest.

    Example:
        >>> fp = Fingerprint([Reading.rssi_only(ap, -60.0)])
        >>> len(fp)
        1
    """

    readings: Tuple[Reading, ...] = ()

    def __post_init__(self) -> None:
        if self.readings is None:
            raise ConfigurationError("Fingerprint readings are required")
        readings = tuple(self.readings)
        for reading in readings:
            if not isinstance(reading, Reading):
                raise ConfigurationError(
                    f"Fingerprint entries must be Reading objects, got {type(reading)}"
                )
        object.__setattr__(self, "readings", readings)

    def __len__(self) -> int:
        return len(self.readings)

    def __iter__(self) -> Iterator[Reading]:
        return iter(self.readings)

    @property
    def source_ids(self) -> List:
        """Identifiers of the sources the readings refer to, in order."""
        return [reading.source_id for reading in self.readings]
