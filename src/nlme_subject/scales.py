"""Heteroscedastic scale builders for measurements and event times.

A scale model maps φ to one positive standard deviation per grid
point (measurement or event), with φ-derivatives.  The engine gathers
grid rows into residual slots through the index maps, so a scale
model never needs to know which slots share a grid point.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

import numpy as np

from .simulation import ChannelJet, broadcast_channel


@runtime_checkable
class ScaleModel(Protocol):
    """Interface every scale builder implements."""

    def evaluate(self, phi: np.ndarray, n_grid: int, order: int) -> ChannelJet:
        """Return σ on a grid of *n_grid* points and its φ-derivatives.

        Args:
            phi: Mixed-effect parameter vector ``(m,)``.
            n_grid: Number of grid points (measurements or events).
            order: Highest φ-derivative order required (0–4).
        """
        ...


@dataclass(frozen=True)
class ConstantScale:
    """A scale that does not depend on φ."""

    sigma: float | np.ndarray

    def evaluate(self, phi: np.ndarray, n_grid: int, order: int) -> ChannelJet:
        return broadcast_channel(self.sigma, (None,) * order, n_grid, phi.size)


@dataclass(frozen=True)
class ParameterScale:
    """Scale carried by one entry of φ.

    ``transform="exp"`` gives ``σ = exp(φ[index])`` (log-scale noise
    parameter, the usual choice); ``"identity"`` gives ``σ = φ[index]``.
    The same σ applies to every grid point.
    """

    index: int
    transform: str = "exp"

    def __post_init__(self) -> None:
        if self.transform not in ("exp", "identity"):
            msg = f"Unknown scale transform {self.transform!r}; use 'exp' or 'identity'."
            raise ValueError(msg)

    def evaluate(self, phi: np.ndarray, n_grid: int, order: int) -> ChannelJet:
        m = phi.size
        if not 0 <= self.index < m:
            msg = f"Scale index {self.index} out of range for φ of length {m}."
            raise IndexError(msg)

        raw = float(phi[self.index])
        sigma = np.exp(raw) if self.transform == "exp" else raw

        derivatives: list[np.ndarray | None] = []
        for k in range(1, order + 1):
            if self.transform == "identity" and k > 1:
                derivatives.append(None)
                continue
            d = np.zeros((m,) * k)
            d[(self.index,) * k] = sigma if self.transform == "exp" else 1.0
            derivatives.append(d)
        return broadcast_channel(sigma, derivatives, n_grid, m)


@dataclass(frozen=True)
class CallableScale:
    """Adapter for a model definition exposing ``sigma(phi)`` and
    derivative callables ``dsigmadphi(phi)``, ``ddsigmadphidphi(phi)`` …

    Each callable may return either the per-grid layout
    ``(n_grid, m, …)`` or a grid-independent ``(m, …)`` tensor.
    """

    sigma: Callable[[np.ndarray], np.ndarray | float]
    derivatives: Sequence[Callable[[np.ndarray], np.ndarray]] = field(default_factory=tuple)

    def evaluate(self, phi: np.ndarray, n_grid: int, order: int) -> ChannelJet:
        supplied = [fn(phi) for fn in self.derivatives[:order]]
        return broadcast_channel(self.sigma(phi), supplied, n_grid, phi.size)
