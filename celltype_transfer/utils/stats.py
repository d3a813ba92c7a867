"""Statistical utilities for CellType-Transfer.

Provides percentile helpers and the lower-fence rules used
to flag low-confidence assignments.
"""

from __future__ import annotations

from typing import Iterable, Sequence, Union

import numpy as np

ArrayLike = Union[Iterable[float], np.ndarray]


def _to_clean_array(values: ArrayLike) -> np.ndarray:
    """Convert input to clean numpy array, removing non-finite values.

    Parameters
    ----------
    values : ArrayLike
        Input values (list, iterable, or array).

    Returns
    -------
    np.ndarray
        Clean array with only finite values.
    """
    arr = np.asarray(list(values), dtype=float)
    if arr.size == 0:
        return arr
    return arr[np.isfinite(arr)]


def compute_percentiles(values: ArrayLike, percentiles: Sequence[float]) -> np.ndarray:
    """Compute percentile values ignoring NaNs.

    Parameters
    ----------
    values : ArrayLike
        Input values.
    percentiles : Sequence[float]
        Percentiles to compute (0-100).

    Returns
    -------
    np.ndarray
        Computed percentile values. Returns NaN array if input is empty.
    """
    arr = _to_clean_array(values)
    if arr.size == 0:
        return np.full(len(percentiles), np.nan)
    return np.percentile(arr, percentiles)


def iqr_lower_fence(values: ArrayLike, multiplier: float = 1.5) -> float:
    """Return Q1 - multiplier * IQR of the finite values.

    Parameters
    ----------
    values : ArrayLike
        Input values.
    multiplier : float
        IQR multiplier (Tukey uses 1.5).

    Returns
    -------
    float
        Lower fence, or NaN if there are no finite values.
    """
    q1, q3 = compute_percentiles(values, [25, 75])
    if not np.isfinite(q1):
        return float("nan")
    return float(q1 - multiplier * (q3 - q1))


def mad_lower_fence(values: ArrayLike, nmads: float = 3.0) -> float:
    """Return median - nmads * MAD (scaled to SD units) of the finite values."""
    arr = _to_clean_array(values)
    if arr.size == 0:
        return float("nan")
    median = float(np.median(arr))
    mad = float(np.median(np.abs(arr - median))) * 1.4826
    return median - nmads * mad
