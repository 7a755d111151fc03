"""
Exceptions raised by the position estimators.

Low-level numerical helpers raise plain ValueError for bad arguments; the
estimator façade raises the types below so that callers can tell a bad
configuration apart from a numerical failure.
"""


class RFLocError(Exception):
    """Base class for all rfloc errors."""


class ConfigurationError(RFLocError, ValueError):
    """Invalid or insufficient arguments (sources, readings, options)."""


class NotReadyError(RFLocError, RuntimeError):
    """Estimation requested without enough usable (source, reading) rows."""


class LockedError(RFLocError, RuntimeError):
    """Configuration change or reentrant call while an estimation runs."""


class EstimationError(RFLocError, RuntimeError):
    """Solver did not converge, diverged, or hit a numerical failure."""
