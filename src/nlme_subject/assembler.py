"""Chain-rule assembly of the subject objective's derivatives.

The objective is ``J = J_noise(φ) + J_time(φ) + J_prior(b, δ)`` with
``φ = φ(β, b)``.  Its total derivatives are assembled in two stages:

1. **φ stage.**  For each likelihood branch the kernel partials
   (per slot, keyed by channel multiset) are composed with the
   channel φ-sensitivities, giving ``∂^k J_branch / ∂φ^k`` for
   ``k = 1 … order``.  The two branches are summed before stage 2;
   each order uses the kernel partials up to that order and the
   channel sensitivities up to that order, nothing above.
2. **Outer stage.**  The summed φ-tensors ``F1 … Fk`` are composed
   with the mixed-effect jet for every requested variable sequence
   over ``{b, beta}``.  All orders share the same ``F`` list and one
   contraction cache, so a slot such as ``(b, b, b, beta)`` extends
   the ``(b, b, b)`` contraction built for ``(b, b, b, b)``.

The prior is differentiated directly in ``(b, δ)`` space and added to
every slot without ``beta``.  Slots that mix ``beta`` and ``delta``
are zero by separability: φ does not depend on δ and the prior does
not depend on β.

Both stages are the same combinatorial identity (Faà di Bruno over
set partitions of the derivative positions), implemented once in
:mod:`nlme_subject._tensors`.  For order 2 along ``(u, v)`` it reads::

    F2[i, j] φ_u[i] φ_v[j]  +  F1[i] φ_uv[i]

and for order 3 along ``(u, v, w)``::

    F3 φ_u φ_v φ_w
    + F2 (φ_uv φ_w + φ_uw φ_v + φ_vw φ_u)
    + F1 φ_uvw

where the first line is the pure contraction and the remaining lines
are curvature corrections.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence

import numpy as np

from ._results import SLOT_VARIABLES, STRUCTURAL_ZEROS
from ._tensors import OuterContractionCache, check_finite, compose_outer, compose_slotwise
from .exceptions import ShapeMismatchError
from .kernels import KernelDerivatives, PriorDerivatives
from .mixed_effects import VARIABLES, MixedEffectJet

logger = logging.getLogger(__name__)


class DerivativeAssembler:
    """Combine kernel, mapper and prior derivatives into total derivatives.

    Args:
        hessian_jitter: Value added to the ``ddJdbdb`` diagonal after
            assembly.
        check_finite: Raise :class:`~nlme_subject.exceptions.NonFiniteError`
            on NaN/Inf in φ-tensors or outputs.
    """

    def __init__(self, hessian_jitter: float, *, check_finite: bool = True) -> None:
        self.hessian_jitter = float(hessian_jitter)
        self.check_finite = check_finite

    # ---- φ stage -------------------------------------------------

    def phi_tensors(
        self,
        kernel: KernelDerivatives,
        sensitivities: Mapping[str, Sequence[np.ndarray | None]],
        order: int,
        n_phi: int,
    ) -> list[np.ndarray]:
        """φ-derivatives ``[F1, …, F_order]`` of one likelihood branch."""
        tensors = []
        for k in range(1, order + 1):
            F = compose_slotwise(kernel.get, kernel.channels, sensitivities, k, n_phi)
            check_finite(F, f"d{k}J/dphi{k}", self.check_finite)
            tensors.append(F)
        return tensors

    @staticmethod
    def sum_branches(*branches: Sequence[np.ndarray]) -> list[np.ndarray]:
        """Sum per-branch φ-tensor lists order by order."""
        depth = max((len(b) for b in branches), default=0)
        return [sum(b[k] for b in branches if k < len(b)) for k in range(depth)]

    # ---- Outer stage ---------------------------------------------

    def slot(
        self,
        variables: tuple[str, ...],
        phi_tensors: Sequence[np.ndarray],
        mixed_effects: MixedEffectJet,
        prior: PriorDerivatives,
        dims: Mapping[str, int],
        cache: OuterContractionCache | None = None,
    ) -> np.ndarray:
        """Total derivative of J along *variables* (no jitter).

        Pass the same *cache* for every slot of one evaluation so the
        φ-tensor contractions they share are built once.
        """
        shape = tuple(dims[v] for v in variables)
        has_delta = "delta" in variables
        has_beta = "beta" in variables
        if has_delta and has_beta:
            return np.zeros(shape)

        if has_delta:
            out = np.zeros(shape)
        else:
            out = compose_outer(
                phi_tensors, mixed_effects.get, variables, VARIABLES, dims, cache=cache
            )

        if not has_beta:
            term = prior.get(variables)
            if term is not None:
                out = out + term
        return out

    def assemble(
        self,
        order: int,
        phi_tensors: Sequence[np.ndarray],
        mixed_effects: MixedEffectJet,
        prior: PriorDerivatives,
        dims: Mapping[str, int],
    ) -> dict[str, np.ndarray]:
        """All derivative slots of total order ``1 … order``.

        Returns:
            Slot name → tensor, including ``dJdbeta`` and ``dJddelta``.
        """
        out: dict[str, np.ndarray] = {}
        cache = OuterContractionCache(phi_tensors, mixed_effects.get)
        for name, variables in SLOT_VARIABLES.items():
            if not variables or len(variables) > order:
                continue
            if name in STRUCTURAL_ZEROS:
                out[name] = np.zeros(tuple(dims[v] for v in variables))
                continue
            out[name] = self.slot(variables, phi_tensors, mixed_effects, prior, dims, cache)

        if "ddJdbdb" in out:
            # Singularity guard for downstream Newton steps; not part of J.
            out["ddJdbdb"] = out["ddJdbdb"] + self.hessian_jitter * np.eye(dims["b"])

        for name, tensor in out.items():
            expected = tuple(dims[v] for v in SLOT_VARIABLES[name])
            if tensor.shape != expected:
                msg = f"Assembled '{name}' has shape {tensor.shape}, expected {expected}."
                raise ShapeMismatchError(msg)
            check_finite(tensor, name, self.check_finite)
        logger.debug(
            "Assembled %d derivative slots up to order %d with %d contractions",
            len(out),
            order,
            cache.contractions,
        )
        return out
