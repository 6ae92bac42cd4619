"""Backend abstraction layer for likelihood-kernel partial derivatives.

Each backend implements the :class:`BackendProtocol` interface: for
every likelihood kernel it returns the per-slot losses and all
per-slot partial derivatives up to the requested order, keyed by the
sorted multiset of kernel channels (``("Y", "Sigma")``,
``("T", "R", "Sigma", "Sigma")`` …).  The kernel classes in
:mod:`nlme_subject.kernels` dispatch to the active backend via
:func:`resolve_backend` rather than branching on the backend name.

Two backends exist:

* ``"numpy"`` — closed-form partials, always available, the reference
  path.
* ``"jax"`` — the same partials by nested forward-mode automatic
  differentiation of the per-slot loss.  Useful to validate a new
  closed form or to prototype a kernel before deriving it by hand.

Resolution follows the policy set by :mod:`.._config`:

1. Programmatic override via :func:`~nlme_subject.set_backend`.
2. ``NLME_SUBJECT_BACKEND`` environment variable.
3. ``"numpy"``.

When ``"jax"`` is requested but JAX is not installed, an
:class:`ImportError` is raised — explicit requests are never silently
degraded.

Partials that are identically zero are omitted from the returned
mapping; consumers treat a missing key as zero.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

import numpy as np

from .._config import get_backend
from .._typing import DerivativeKey

KernelPartials = dict[DerivativeKey, np.ndarray]

# ------------------------------------------------------------------ #
# BackendProtocol
# ------------------------------------------------------------------ #


@runtime_checkable
class BackendProtocol(Protocol):
    """Interface that every kernel backend must implement.

    All inputs are per-slot arrays of equal length n (data already
    gathered through the index map).  Every method returns
    ``(slot_values, partials)`` where ``slot_values`` has shape
    ``(n,)`` and each partial has shape ``(n,)``.

    Attributes:
        name: Short identifier (``"numpy"`` or ``"jax"``).
    """

    @property
    def name(self) -> str: ...

    @property
    def is_available(self) -> bool:
        """Whether the backend's dependencies are importable."""
        ...

    def normal_noise(
        self,
        Y: np.ndarray,
        Ym: np.ndarray,
        sigma: np.ndarray,
        order: int,
    ) -> tuple[np.ndarray, KernelPartials]:
        """Gaussian measurement noise over channels ``("Y", "Sigma")``.

        ``ℓ_i = ½((Y_i − Ym_i)/σ_i)² + ½ log(2π σ_i²)``.
        """
        ...

    def lognormal_noise(
        self,
        Y: np.ndarray,
        Ym: np.ndarray,
        sigma: np.ndarray,
        order: int,
    ) -> tuple[np.ndarray, KernelPartials]:
        """Log-normal measurement noise over channels ``("Y", "Sigma")``.

        ``ℓ_i = ½((log Y_i − log Ym_i)/σ_i)² + ½ log(2π σ_i² Ym_i²)``.
        """
        ...

    def normal_time(
        self,
        T: np.ndarray,
        Tm: np.ndarray,
        R: np.ndarray,
        sigma: np.ndarray,
        order: int,
    ) -> tuple[np.ndarray, KernelPartials]:
        """Gaussian event-time model over channels ``("T", "R", "Sigma")``.

        ``ℓ_i = ½((T_i − Tm_i)/σ_i)² + ½(R_i/σ_i)² + log(2π σ_i²)``.
        """
        ...


# ------------------------------------------------------------------ #
# Backend resolution
# ------------------------------------------------------------------ #

# One instance per backend name.
_BACKEND_CACHE: dict[str, BackendProtocol] = {}


def resolve_backend(name: str | None = None) -> BackendProtocol:
    """Return a :class:`BackendProtocol` instance for *name*.

    When *name* is ``None`` (the default), the policy from
    :func:`~nlme_subject._config.get_backend` is used.

    Raises:
        ImportError: If ``"jax"`` is explicitly requested but JAX
            is not installed.
        ValueError: If *name* is not a recognised backend.
    """
    if name is None:
        name = get_backend()
    name = name.strip().lower()
    if name == "auto":
        name = "numpy"

    if name in _BACKEND_CACHE:
        return _BACKEND_CACHE[name]

    if name == "numpy":
        from ._numpy import NumpyBackend

        backend: BackendProtocol = NumpyBackend()

    elif name == "jax":
        from ._jax import JaxBackend

        jax_backend = JaxBackend()
        if not jax_backend.is_available:
            msg = (
                "Backend 'jax' was explicitly requested but JAX is "
                "not installed.  Install JAX (`pip install jax`) or "
                "use set_backend('numpy')."
            )
            raise ImportError(msg)
        backend = jax_backend

    else:
        msg = f"Unknown backend {name!r}.  Choose 'numpy' or 'jax'."
        raise ValueError(msg)

    _BACKEND_CACHE[name] = backend
    return backend
