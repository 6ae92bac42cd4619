"""Input compatibility layer for pandas and optional Polars data.

Measurement vectors (``Ym``, ``Tm``) and index maps (``ind_y``,
``ind_t``) often arrive as columns of a data frame.  This module
converts them to flat NumPy arrays at the boundary so that the
assembler only ever sees ``np.ndarray``.

Polars is **not** a required dependency.  If it is not installed, the
converters accept NumPy, pandas and plain Python sequences only.
"""

from __future__ import annotations

from typing import Any

import numpy as np
import pandas as pd

from .exceptions import ShapeMismatchError

# Polars is optional.
try:
    import polars as pl

    _HAS_POLARS = True
except ImportError:
    _HAS_POLARS = False


def _to_numpy(obj: Any, *, name: str) -> np.ndarray:
    if isinstance(obj, (pd.Series, pd.Index)):
        return obj.to_numpy()
    if isinstance(obj, pd.DataFrame):
        if obj.shape[1] != 1:
            msg = f"'{name}' must be a single column, got {obj.shape[1]} columns."
            raise ShapeMismatchError(msg)
        return obj.iloc[:, 0].to_numpy()

    if _HAS_POLARS:
        if isinstance(obj, pl.Series):
            return obj.to_numpy()
        if isinstance(obj, (pl.DataFrame, pl.LazyFrame)):
            frame = obj.collect() if isinstance(obj, pl.LazyFrame) else obj
            if frame.width != 1:
                msg = f"'{name}' must be a single column, got {frame.width} columns."
                raise ShapeMismatchError(msg)
            return frame.to_series(0).to_numpy()

    return np.asarray(obj)


def ensure_float_vector(obj: Any, *, name: str = "input") -> np.ndarray:
    """Convert *obj* to a 1-D float64 array.

    Accepted types: ``np.ndarray``, ``pandas.Series``, single-column
    ``pandas.DataFrame``, Polars ``Series``/``DataFrame``/``LazyFrame``
    (when Polars is installed), lists and tuples.  Scalars become
    length-1 vectors.

    Raises:
        ShapeMismatchError: If *obj* has more than one non-singleton
            dimension.
    """
    arr = np.asarray(_to_numpy(obj, name=name), dtype=np.float64)
    if arr.ndim == 0:
        return arr.reshape(1)
    if arr.ndim > 1:
        if sum(d != 1 for d in arr.shape) > 1:
            msg = f"'{name}' must be a vector, got shape {arr.shape}."
            raise ShapeMismatchError(msg)
        arr = arr.reshape(-1)
    return arr


def ensure_index_vector(obj: Any, size: int, *, name: str = "index") -> np.ndarray:
    """Convert *obj* to a 1-D ``intp`` index map into a grid of *size*.

    Repeated entries are allowed: several residual slots may share
    one grid point.

    Raises:
        ShapeMismatchError: If *obj* is not a vector of integers or an
            entry falls outside ``[0, size)``.
    """
    raw = _to_numpy(obj, name=name)
    arr = np.asarray(raw)
    if arr.ndim == 0:
        arr = arr.reshape(1)
    if arr.ndim > 1:
        arr = arr.reshape(-1)
    if arr.size and not np.all(np.equal(np.mod(arr, 1), 0)):
        msg = f"'{name}' must contain integer indices."
        raise ShapeMismatchError(msg)
    idx = arr.astype(np.intp)
    if idx.size and (idx.min() < 0 or idx.max() >= size):
        msg = (
            f"'{name}' indexes a grid of {size} entries but contains "
            f"values in [{idx.min()}, {idx.max()}]."
        )
        raise ShapeMismatchError(msg)
    return idx
