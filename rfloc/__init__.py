"""RF positioning from ranging and RSSI readings.

This package contains the components of the nonlinear position estimator:
- rf: Radio sources, readings, path-loss models, distance derivation,
  lateration and the estimator façade
- estimators: Generic nonlinear least squares engine
- utils: Geometry helpers
- eval: Error metrics and plots
"""

__version__ = "0.1.0"
