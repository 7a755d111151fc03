"""
RF position estimation examples.

Examples:
    - Ranging-only 2D position estimation
    - RSSI-only 3D position estimation through the path-loss model
    - Monte Carlo evaluation of mixed ranging and RSSI fingerprints
"""

__version__ = "0.1.0"
