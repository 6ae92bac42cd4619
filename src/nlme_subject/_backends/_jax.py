"""JAX autodiff kernel backend.

Each kernel is written once as a per-slot scalar loss of the channel
vector ``x`` (``(Y, σ)`` or ``(T, R, σ)``) and the slot's datum.  The
k-th derivative tensor is obtained by nesting ``jax.jacfwd`` k times
and vectorised over slots with ``jax.vmap``; the canonical partials
are then read off the ``(C,) * k`` tensor at sorted channel indices.

NumPy ↔ JAX boundary convention
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
All public methods accept NumPy arrays and return NumPy arrays.
Inbound arrays are cast with ``jnp.asarray(..., dtype=jnp.float64)``;
outbound results are materialised with ``np.asarray``.  Callers never
touch JAX types.

Float64 rationale
~~~~~~~~~~~~~~~~~
Fourth-order partials carry ``σ⁻⁶`` factors; float32 would lose most
significant digits for small scales, so 64-bit mode is enabled before
any array is created.

Graceful degradation
~~~~~~~~~~~~~~~~~~~~
If JAX is not installed, :class:`JaxBackend` can still be instantiated
(for introspection) but ``is_available`` returns ``False`` and
:func:`~nlme_subject._backends.resolve_backend` raises ``ImportError``
when this backend is requested.
"""

from __future__ import annotations

import itertools
import math
from collections.abc import Callable
from dataclasses import dataclass
from functools import lru_cache

import numpy as np

from .._typing import DerivativeKey
from . import KernelPartials

try:
    import jax

    # Enable 64-bit floating point before any array creation.
    jax.config.update("jax_enable_x64", True)

    import jax.numpy as jnp

    _CAN_IMPORT_JAX = True
except ImportError:
    _CAN_IMPORT_JAX = False


_NOISE_CHANNELS = ("Y", "Sigma")
_TIME_CHANNELS = ("T", "R", "Sigma")
_LOG_2PI = math.log(2.0 * math.pi)


# ------------------------------------------------------------------ #
# Per-slot losses (defined only when JAX is importable)
# ------------------------------------------------------------------ #

if _CAN_IMPORT_JAX:

    def _normal_noise_slot(x, datum):
        y, s = x[0], x[1]
        return 0.5 * ((y - datum) / s) ** 2 + 0.5 * (_LOG_2PI + 2.0 * jnp.log(s))

    def _lognormal_noise_slot(x, datum):
        y, s = x[0], x[1]
        log_datum = jnp.log(datum)
        return (
            0.5 * ((jnp.log(y) - log_datum) / s) ** 2
            + 0.5 * (_LOG_2PI + 2.0 * jnp.log(s))
            + log_datum
        )

    def _normal_time_slot(x, datum):
        t, r, s = x[0] - datum, x[1], x[2]
        return 0.5 * (t**2 + r**2) / s**2 + _LOG_2PI + 2.0 * jnp.log(s)

    @lru_cache(maxsize=None)
    def _derivative_stack(loss: Callable, order: int) -> tuple[Callable, ...]:
        """JIT-compiled, slot-vectorised loss and its first *order* derivatives."""
        fns = [loss]
        for _ in range(order):
            fns.append(jax.jacfwd(fns[-1]))
        return tuple(jax.jit(jax.vmap(fn, in_axes=(0, 0))) for fn in fns)


def _autodiff_partials(
    loss: Callable,
    channels: tuple[str, ...],
    inputs: tuple[np.ndarray, ...],
    datum: np.ndarray,
    order: int,
) -> tuple[np.ndarray, KernelPartials]:
    x = jnp.stack([jnp.asarray(v, dtype=jnp.float64) for v in inputs], axis=1)
    d = jnp.asarray(datum, dtype=jnp.float64)
    stack = _derivative_stack(loss, order)

    values = np.asarray(stack[0](x, d))
    partials: KernelPartials = {}
    for k in range(1, order + 1):
        tensor = np.asarray(stack[k](x, d))
        for idx in itertools.combinations_with_replacement(range(len(channels)), k):
            entry = tensor[(slice(None),) + idx]
            if np.any(entry != 0.0):
                key: DerivativeKey = tuple(channels[i] for i in idx)
                partials[key] = entry
    return values, partials


@dataclass(frozen=True)
class JaxBackend:
    """Autodiff kernel partials via nested ``jax.jacfwd``."""

    @property
    def name(self) -> str:
        return "jax"

    @property
    def is_available(self) -> bool:  # noqa: PLR6301
        return _CAN_IMPORT_JAX

    def normal_noise(
        self,
        Y: np.ndarray,
        Ym: np.ndarray,
        sigma: np.ndarray,
        order: int,
    ) -> tuple[np.ndarray, KernelPartials]:
        return _autodiff_partials(
            _normal_noise_slot, _NOISE_CHANNELS, (Y, sigma), Ym, order
        )

    def lognormal_noise(
        self,
        Y: np.ndarray,
        Ym: np.ndarray,
        sigma: np.ndarray,
        order: int,
    ) -> tuple[np.ndarray, KernelPartials]:
        return _autodiff_partials(
            _lognormal_noise_slot, _NOISE_CHANNELS, (Y, sigma), Ym, order
        )

    def normal_time(
        self,
        T: np.ndarray,
        Tm: np.ndarray,
        R: np.ndarray,
        sigma: np.ndarray,
        order: int,
    ) -> tuple[np.ndarray, KernelPartials]:
        return _autodiff_partials(
            _normal_time_slot, _TIME_CHANNELS, (T, R, sigma), Tm, order
        )
