"""Trajectory simulator contract and per-channel derivative jets.

The simulator itself (ODE integration, event detection) lives outside
this package.  It is consumed through :class:`TrajectorySimulator`,
which returns a :class:`Trajectory` of three channels:

* ``Y`` — predicted measurements, one entry per measurement slot
  (``len(ind_y)``).
* ``T`` — predicted event times, one entry per event slot
  (``len(ind_t)``).
* ``R`` — the auxiliary root-function value at each event slot.

Each channel is a :class:`ChannelJet`: values plus φ-sensitivities,
``derivatives[k - 1]`` having shape ``(n, m, …, m)`` with k φ-axes.
Simulators usually supply first- and second-order sensitivities
only; entries beyond ``len(derivatives)`` are treated as zero.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import numpy as np


@dataclass(frozen=True)
class ChannelJet:
    """Per-slot values of one kernel input and their φ-derivatives.

    Attributes:
        value: ``(n,)``.
        derivatives: ``(d1, d2, …)`` with ``dk`` of shape
            ``(n,) + (m,) * k``.  ``None`` marks an identically zero
            sensitivity; the tuple length is the highest order the
            producer supplied.
    """

    value: np.ndarray
    derivatives: tuple[np.ndarray | None, ...] = field(default_factory=tuple)

    @property
    def supplied_order(self) -> int:
        return len(self.derivatives)

    def derivative(self, k: int) -> np.ndarray | None:
        if k <= len(self.derivatives):
            return self.derivatives[k - 1]
        return None

    def take(self, index: np.ndarray) -> ChannelJet:
        """Gather grid rows into residual slots."""
        return ChannelJet(
            value=self.value[index],
            derivatives=tuple(None if d is None else d[index] for d in self.derivatives),
        )


@dataclass(frozen=True)
class Trajectory:
    """Simulated measurement predictions, event times and root values."""

    Y: ChannelJet
    T: ChannelJet
    R: ChannelJet


def empty_channel(order: int = 0) -> ChannelJet:
    """A zero-slot channel for subjects without events or measurements."""
    return ChannelJet(value=np.zeros(0), derivatives=(None,) * order)


@runtime_checkable
class TrajectorySimulator(Protocol):
    """Interface every trajectory simulator implements."""

    def simulate(
        self,
        t: np.ndarray,
        phi: np.ndarray,
        kappa: Any,
        order: int,
        *,
        ind_y: np.ndarray,
        ind_t: np.ndarray,
    ) -> Trajectory:
        """Simulate the subject at φ under experimental condition *kappa*.

        Args:
            t: Simulation time grid.
            phi: Mixed-effect parameter vector ``(m,)``.
            kappa: Experimental condition descriptor (opaque).
            order: Highest φ-derivative order requested (0–4).
                Implementations may supply fewer orders above 2.
            ind_y: Measurement grid index of each measurement slot;
                ``Y`` has one entry per element.
            ind_t: Event grid index of each event slot; ``T`` and
                ``R`` have one entry per element.
        """
        ...


def broadcast_channel(
    value: np.ndarray | float,
    derivatives: Sequence[np.ndarray | None],
    n: int,
    n_phi: int,
) -> ChannelJet:
    """Broadcast grid-independent values and sensitivities to *n* slots.

    A scale that is the same for every grid point may be reported as a
    scalar with derivatives of shape ``(m,) * k``; this expands it to
    the per-slot layout.
    """
    value = np.broadcast_to(np.asarray(value, dtype=np.float64), (n,)).copy()
    out: list[np.ndarray | None] = []
    for k, d in enumerate(derivatives, start=1):
        if d is None:
            out.append(None)
            continue
        target = (n,) + (n_phi,) * k
        out.append(np.broadcast_to(np.asarray(d, dtype=np.float64), target).copy())
    return ChannelJet(value=value, derivatives=tuple(out))
