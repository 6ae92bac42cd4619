"""Shared type aliases for the nlme_subject package."""

import numpy as np
import pandas as pd

# Array-like inputs accepted by the public API.
ArrayLike = np.ndarray | pd.Series | pd.DataFrame | list | tuple

# Sorted multiset of differentiation labels, e.g. ("b", "b", "beta").
DerivativeKey = tuple[str, ...]
