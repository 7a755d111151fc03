"""
Utility functions for lateration algorithms.

This module provides geometric helpers shared by the solvers: the range
Jacobian with singularity handling and radio source layout checks.
"""

from .geometry import affine_rank, check_source_geometry, range_jacobian

__all__ = [
    'range_jacobian',
    'affine_rank',
    'check_source_geometry',
]
