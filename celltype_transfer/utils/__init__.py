"""Utility functions for CellType-Transfer.

Provides statistical helpers used across modules.
"""

from .stats import (
    compute_percentiles,
    iqr_lower_fence,
    mad_lower_fence,
)

__all__ = [
    "compute_percentiles",
    "iqr_lower_fence",
    "mad_lower_fence",
]
