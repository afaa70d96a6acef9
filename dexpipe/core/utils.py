"""Small pure helpers for core computations."""

from __future__ import annotations

import numpy as np


def finite_1d(name: str, values: np.ndarray) -> np.ndarray:
    arr = np.asarray(values, dtype=float).ravel()
    if arr.size == 0:
        raise ValueError(f"{name} must be non-empty.")
    if not np.isfinite(arr).all():
        raise ValueError(f"{name} must be finite.")
    return arr


def readonly(values: np.ndarray, dtype=float) -> np.ndarray:
    """Return a read-only copy of `values`."""
    arr = np.array(values, dtype=dtype, copy=True)
    arr.setflags(write=False)
    return arr


def geometric_mean(values: np.ndarray) -> float:
    arr = finite_1d("values", values)
    if np.any(arr <= 0.0):
        raise ValueError("geometric mean requires strictly positive values.")
    return float(np.exp(np.mean(np.log(arr))))
