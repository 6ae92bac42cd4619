"""Evaluation context: mutable accumulator for pipeline artifacts.

An :class:`EvaluationContext` travels through one objective
evaluation, collecting intermediate tensors at the point they are
computed.  Display and diagnostics read from the context instead of
re-evaluating collaborators.

The context is **not** part of the serialisation API: it carries
collaborator jets and kernel partials.
:meth:`~nlme_subject._results.ObjectiveResult.to_dict` skips it.

Lifecycle::

    ┌──────────────────────────────────────────────┐
    │  subject_objective()                         │
    │  ├─ ctx = EvaluationContext()                │
    │  ├─ ObjectiveEngine(…, ctx=ctx)              │
    │  │   ├─ ctx.noise_kind / time_kind / …       │
    │  │   └─ ctx.backend_name                     │
    │  ├─ engine.evaluate(…)                       │
    │  │   ├─ ctx = fresh copy of resolution fields│
    │  │   ├─ ctx.covariance = resolver(δ)         │
    │  │   ├─ ctx.mixed_effects = mapper(β, b)     │
    │  │   ├─ ctx.channels = simulator, scales     │
    │  │   ├─ ctx.noise_kernel / time_kernel       │
    │  │   ├─ ctx.prior                            │
    │  │   └─ ctx.phi_tensors = F1 … Fk            │
    │  └─ return result (result.context = ctx)     │
    └──────────────────────────────────────────────┘
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from .covariance import CovarianceJet
    from .kernels import KernelDerivatives, PriorDerivatives
    from .mixed_effects import MixedEffectJet
    from .simulation import ChannelJet


@dataclass
class EvaluationContext:
    """Mutable accumulator for one objective evaluation.

    Every field defaults to ``None`` (or an empty container) so the
    context can be created empty and populated stage by stage.  A
    ``None`` field means that stage has not run, or was not needed
    for the requested order.
    """

    # ---- Resolution ----------------------------------------------
    order: int | None = None
    backend_name: str | None = None
    noise_kind: str | None = None
    time_kind: str | None = None
    parameter_kind: str | None = None
    covariance_kind: str | None = None
    experiment: int | None = None
    hessian_jitter: float | None = None

    # ---- Dimensions ----------------------------------------------
    dims: dict[str, int] = field(default_factory=dict)
    """Lengths of ``b``, ``beta``, ``delta`` and ``phi``."""

    # ---- Collaborator jets ---------------------------------------
    covariance: CovarianceJet | None = None
    mixed_effects: MixedEffectJet | None = None
    channels: dict[str, ChannelJet] = field(default_factory=dict)
    """Per-slot channel jets: ``Y``, ``Sigma_noise``, ``T``, ``R``, ``Sigma_time``."""

    # ---- Kernels -------------------------------------------------
    noise_kernel: KernelDerivatives | None = None
    time_kernel: KernelDerivatives | None = None
    prior: PriorDerivatives | None = None

    # ---- φ-stage tensors -----------------------------------------
    noise_phi_tensors: list[np.ndarray] = field(default_factory=list)
    time_phi_tensors: list[np.ndarray] = field(default_factory=list)
    phi_tensors: list[np.ndarray] = field(default_factory=list)
    """Summed branch tensors ``[F1, …, Fk]``, ``Fk`` of shape ``(m,) * k``."""

    # ---- Bookkeeping ---------------------------------------------
    zero_filled: list[str] = field(default_factory=list)
    """Optional collaborator derivatives that were absent and taken as zero."""
