"""Likelihood and prior kernels.

Three kernel families contribute to the subject objective:

* **Noise models** score continuous measurements ``Y`` against data
  ``Ym`` with scale ``Sigma`` (channels ``("Y", "Sigma")``).
* **Time models** score predicted event times ``T`` against data
  ``Tm`` together with the root-function value ``R`` at the event
  (channels ``("T", "R", "Sigma")``).
* **Parameter models** give the random-effect prior ``J_prior(b, δ)``.

Noise and time kernels are sums of independent per-slot terms, so a
kernel evaluation returns one ``(n,)`` array per channel multiset
(see :class:`KernelDerivatives`) and never an off-diagonal slot
block.  The arithmetic is delegated to the active backend
(:mod:`nlme_subject._backends`); the classes here only fix the
channel layout and the registry name.

The prior is differentiated directly in ``(b, δ)`` space and returns
a :class:`PriorDerivatives` whose tensors are already laid out with
the ``b`` axes before the ``δ`` axes.

Adding a kernel
~~~~~~~~~~~~~~~
Implement the matching protocol and register the class with
:func:`register_noise_model`, :func:`register_time_model` or
:func:`register_parameter_model`.  Model definitions refer to kernels
by their registered name (``"normal"``, ``"lognormal"``).
"""

from __future__ import annotations

import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

import numpy as np

from ._backends import BackendProtocol, resolve_backend
from ._compat import ensure_float_vector, ensure_index_vector
from ._typing import DerivativeKey
from .covariance import CovarianceJet

logger = logging.getLogger(__name__)

NOISE_CHANNELS: tuple[str, str] = ("Y", "Sigma")
TIME_CHANNELS: tuple[str, str, str] = ("T", "R", "Sigma")
PRIOR_VARIABLES: tuple[str, str] = ("b", "delta")

_LOG_2PI = math.log(2.0 * math.pi)


# ------------------------------------------------------------------ #
# Kernel outputs
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class KernelDerivatives:
    """Per-slot losses of one likelihood kernel and their partials.

    Attributes:
        channels: Channel names in canonical order.
        slot_values: Per-slot losses ``(n,)``.
        partials: Canonical channel multiset → per-slot partial
            ``(n,)``.  Identically zero partials are absent.
        order: Highest partial order evaluated.
    """

    channels: tuple[str, ...]
    slot_values: np.ndarray
    partials: Mapping[DerivativeKey, np.ndarray] = field(default_factory=dict)
    order: int = 0

    @property
    def value(self) -> float:
        return float(np.sum(self.slot_values))

    def get(self, key: DerivativeKey) -> np.ndarray | None:
        return self.partials.get(tuple(key))


@dataclass(frozen=True)
class PriorDerivatives:
    """Prior value and its partials keyed by ``(b, delta)`` multisets.

    ``partials[("b", "delta")]`` has shape ``(q, r)``,
    ``partials[("b", "b", "delta")]`` has shape ``(q, q, r)`` and so
    on.  Identically zero partials (third and fourth order in ``b``
    for the Gaussian prior) are absent.
    """

    value: float
    partials: Mapping[DerivativeKey, np.ndarray] = field(default_factory=dict)

    def get(self, key: DerivativeKey) -> np.ndarray | None:
        return self.partials.get(tuple(key))


# ------------------------------------------------------------------ #
# Protocols
# ------------------------------------------------------------------ #


@runtime_checkable
class NoiseModel(Protocol):
    """Interface every measurement-noise kernel implements."""

    @property
    def name(self) -> str: ...

    def evaluate(
        self,
        Y: np.ndarray,
        Ym: np.ndarray,
        sigma: np.ndarray,
        order: int,
        backend: BackendProtocol,
    ) -> KernelDerivatives:
        """Score per-slot predictions *Y* against data *Ym* with scale *sigma*."""
        ...


@runtime_checkable
class TimeModel(Protocol):
    """Interface every event-time kernel implements."""

    @property
    def name(self) -> str: ...

    def evaluate(
        self,
        T: np.ndarray,
        Tm: np.ndarray,
        R: np.ndarray,
        sigma: np.ndarray,
        order: int,
        backend: BackendProtocol,
    ) -> KernelDerivatives:
        """Score per-slot event times *T* and root values *R*."""
        ...


@runtime_checkable
class ParameterModel(Protocol):
    """Interface every random-effect prior implements."""

    @property
    def name(self) -> str: ...

    def evaluate(self, b: np.ndarray, cov: CovarianceJet, order: int) -> PriorDerivatives:
        """Return the prior at *b* and its ``(b, δ)`` partials up to *order*."""
        ...


# ------------------------------------------------------------------ #
# Concrete kernels
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class NormalNoise:
    """Gaussian measurement noise.

    ``ℓ_i = ½((Y_i − Ym_i)/σ_i)² + ½ log(2π σ_i²)``
    """

    @property
    def name(self) -> str:
        return "normal"

    def evaluate(
        self,
        Y: np.ndarray,
        Ym: np.ndarray,
        sigma: np.ndarray,
        order: int,
        backend: BackendProtocol,
    ) -> KernelDerivatives:
        values, partials = backend.normal_noise(Y, Ym, sigma, order)
        return KernelDerivatives(NOISE_CHANNELS, values, partials, order)


@dataclass(frozen=True)
class LogNormalNoise:
    """Log-normal measurement noise with median ``Y``.

    ``ℓ_i = ½((log Y_i − log Ym_i)/σ_i)² + ½ log(2π σ_i² Ym_i²)``

    This is the negative log density of ``Ym_i`` when
    ``log Ym_i ~ N(log Y_i, σ_i²)``.  Predictions and data must be
    strictly positive.
    """

    @property
    def name(self) -> str:
        return "lognormal"

    def evaluate(
        self,
        Y: np.ndarray,
        Ym: np.ndarray,
        sigma: np.ndarray,
        order: int,
        backend: BackendProtocol,
    ) -> KernelDerivatives:
        values, partials = backend.lognormal_noise(Y, Ym, sigma, order)
        return KernelDerivatives(NOISE_CHANNELS, values, partials, order)


@dataclass(frozen=True)
class NormalTime:
    """Gaussian event-time model.

    ``ℓ_i = ½((T_i − Tm_i)/σ_i)² + ½(R_i/σ_i)² + log(2π σ_i²)``

    Two residuals share the scale: the mismatch between predicted and
    observed event time, and the root-function value at the event,
    which is zero when the predicted event is located exactly.
    """

    @property
    def name(self) -> str:
        return "normal"

    def evaluate(
        self,
        T: np.ndarray,
        Tm: np.ndarray,
        R: np.ndarray,
        sigma: np.ndarray,
        order: int,
        backend: BackendProtocol,
    ) -> KernelDerivatives:
        values, partials = backend.normal_time(T, Tm, R, sigma, order)
        return KernelDerivatives(TIME_CHANNELS, values, partials, order)


@dataclass(frozen=True)
class NormalParameter:
    """Zero-mean multivariate normal prior on the random effects.

    ``J_prior = ½ bᵀ D⁻¹ b + ½ log det D + ½ q log 2π``

    The δ-partials run through the covariance jet::

        ∂_δr J       = ½ bᵀ ∂_r D⁻¹ b + ½ tr(D⁻¹ ∂_r D)
        ∂_δr∂_δs J   = ½ bᵀ ∂_rs D⁻¹ b
                       + ½ tr(∂_s D⁻¹ ∂_r D + D⁻¹ ∂_rs D)

    The prior is quadratic in b, so every partial with three or more
    b-axes vanishes.
    """

    @property
    def name(self) -> str:
        return "normal"

    def evaluate(self, b: np.ndarray, cov: CovarianceJet, order: int) -> PriorDerivatives:
        invD = cov.invD
        q = b.size
        value = 0.5 * float(b @ invD @ b) + 0.5 * cov.logdetD + 0.5 * q * _LOG_2PI

        partials: dict[DerivativeKey, np.ndarray] = {}
        if order >= 1:
            dD, dinvD = cov.dD, cov.dinvD
            partials[("b",)] = invD @ b
            partials[("delta",)] = 0.5 * np.einsum("i,ijr,j->r", b, dinvD, b) + 0.5 * np.einsum(
                "ij,jir->r", invD, dD
            )
        if order >= 2:
            ddD, ddinvD = cov.ddD, cov.ddinvD
            partials[("b", "b")] = invD.copy()
            partials[("b", "delta")] = np.einsum("ijr,j->ir", dinvD, b)
            partials[("delta", "delta")] = 0.5 * np.einsum(
                "i,ijrs,j->rs", b, ddinvD, b
            ) + 0.5 * (
                np.einsum("ijs,jir->rs", dinvD, dD) + np.einsum("ij,jirs->rs", invD, ddD)
            )
        if order >= 3:
            partials[("b", "b", "delta")] = dinvD.copy()
            partials[("b", "delta", "delta")] = np.einsum("ijrs,j->irs", ddinvD, b)
        if order >= 4:
            partials[("b", "b", "delta", "delta")] = ddinvD.copy()
        return PriorDerivatives(value=value, partials=partials)


# ------------------------------------------------------------------ #
# Registries
# ------------------------------------------------------------------ #

_NOISE_MODELS: dict[str, type] = {
    "normal": NormalNoise,
    "lognormal": LogNormalNoise,
}
_TIME_MODELS: dict[str, type] = {
    "normal": NormalTime,
}
_PARAMETER_MODELS: dict[str, type] = {
    "normal": NormalParameter,
}


def _register(registry: dict[str, type], protocol: type, name: str, cls: type) -> None:
    try:
        instance = cls()
    except Exception:  # noqa: BLE001
        msg = f"{cls!r} could not be instantiated for protocol check."
        raise TypeError(msg) from None
    if not isinstance(instance, protocol):
        msg = f"{cls!r} does not implement the {protocol.__name__} protocol."
        raise TypeError(msg)
    registry[name] = cls


def _resolve(registry: dict[str, type], protocol: type, kind: object, what: str) -> object:
    if isinstance(kind, protocol):
        return kind
    key = str(kind).strip().lower()
    if key not in registry:
        available = ", ".join(sorted(registry))
        msg = f"Unknown {what} {kind!r}.  Available: {available}."
        raise ValueError(msg)
    logger.debug("Resolved %s %r", what, key)
    return registry[key]()


def register_noise_model(name: str, cls: type) -> None:
    """Register a :class:`NoiseModel` class under *name*.

    Raises:
        TypeError: If *cls* does not satisfy the protocol.
    """
    _register(_NOISE_MODELS, NoiseModel, name, cls)


def register_time_model(name: str, cls: type) -> None:
    """Register a :class:`TimeModel` class under *name*."""
    _register(_TIME_MODELS, TimeModel, name, cls)


def register_parameter_model(name: str, cls: type) -> None:
    """Register a :class:`ParameterModel` class under *name*."""
    _register(_PARAMETER_MODELS, ParameterModel, name, cls)


def resolve_noise_model(kind: str | NoiseModel) -> NoiseModel:
    """Resolve a noise-model tag (or instance) to a kernel.

    Raises:
        ValueError: If *kind* is a string that is not registered.
    """
    return _resolve(_NOISE_MODELS, NoiseModel, kind, "noise model")


def resolve_time_model(kind: str | TimeModel) -> TimeModel:
    """Resolve an event-time model tag (or instance) to a kernel."""
    return _resolve(_TIME_MODELS, TimeModel, kind, "time model")


def resolve_parameter_model(kind: str | ParameterModel) -> ParameterModel:
    """Resolve a parameter-model tag (or instance) to a prior kernel."""
    return _resolve(_PARAMETER_MODELS, ParameterModel, kind, "parameter model")


# ------------------------------------------------------------------ #
# Stand-alone kernel evaluation
# ------------------------------------------------------------------ #


def measurement_loss(
    Y: object,
    Ym: object,
    sigma: object,
    ind: object,
    *,
    kind: str | NoiseModel = "normal",
    order: int = 0,
    backend: str | None = None,
) -> KernelDerivatives:
    """Evaluate a noise kernel on grid data.

    *Y* holds one prediction per residual slot; *Ym* and *sigma* live
    on the measurement grid and are gathered through the index map
    *ind*, so slot ``i`` is scored against ``Ym[ind[i]]`` with scale
    ``sigma[ind[i]]``.

    Examples:
        >>> out = measurement_loss([2.0], [1.0], [1.0], [0], order=2)
        >>> round(out.value, 4)
        1.4189
        >>> float(out.get(("Y", "Sigma"))[0])
        -2.0
    """
    Y = ensure_float_vector(Y, name="Y")
    Ym = ensure_float_vector(Ym, name="Ym")
    sigma = ensure_float_vector(sigma, name="sigma")
    idx = ensure_index_vector(ind, Ym.size, name="ind")
    model = resolve_noise_model(kind)
    return model.evaluate(Y, Ym[idx], sigma[idx], order, resolve_backend(backend))


def event_loss(
    T: object,
    Tm: object,
    R: object,
    sigma: object,
    ind: object,
    *,
    kind: str | TimeModel = "normal",
    order: int = 0,
    backend: str | None = None,
) -> KernelDerivatives:
    """Evaluate an event-time kernel on grid data.

    *T* and *R* hold one entry per event slot; *Tm* and *sigma* are
    gathered through *ind*.
    """
    T = ensure_float_vector(T, name="T")
    Tm = ensure_float_vector(Tm, name="Tm")
    R = ensure_float_vector(R, name="R")
    sigma = ensure_float_vector(sigma, name="sigma")
    idx = ensure_index_vector(ind, Tm.size, name="ind")
    model = resolve_time_model(kind)
    return model.evaluate(T, Tm[idx], R, sigma[idx], order, resolve_backend(backend))
