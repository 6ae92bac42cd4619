"""Objective engine: resolution, collaborator calls and assembly.

The :class:`ObjectiveEngine` centralises everything that happens
around the chain-rule assembler:

1. **Kernel resolution** — map the experiment's noise / time /
   parameter model tags and the covariance type to kernel instances,
   once per engine rather than once per derivative order.
2. **Backend resolution** — NumPy closed forms or JAX autodiff.
3. **Input conversion** — data vectors and index maps from NumPy,
   pandas or Polars to flat arrays.
4. **Collaborator normalisation** — every tensor a collaborator
   returns is brought to its full shape (size-1 axes restored
   explicitly) and checked for NaN/Inf.
5. **Assembly** — kernels, φ stage, outer stage, prior, jitter.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from functools import partial
from typing import Any

import numpy as np

from ._compat import ensure_float_vector, ensure_index_vector
from ._config import get_check_finite, get_hessian_jitter
from ._context import EvaluationContext
from ._results import DerivativeOrder, ObjectiveResult
from ._tensors import check_finite, restore_singleton_axes
from .assembler import DerivativeAssembler
from .covariance import CovarianceJet, CovarianceParametrisation, resolve_covariance
from .exceptions import MissingDerivativeError, ShapeMismatchError
from .kernels import (
    NoiseModel,
    ParameterModel,
    TimeModel,
    resolve_noise_model,
    resolve_parameter_model,
    resolve_time_model,
)
from .mixed_effects import MixedEffectJet, MixedEffectMap, derivative_keys
from .scales import ScaleModel
from .simulation import ChannelJet, TrajectorySimulator

logger = logging.getLogger(__name__)

DEFAULT_COVARIANCE_TYPE = "diag-matrix-logarithm"

# Collaborator sensitivities up to this order must be supplied; higher
# ones may be omitted and are then taken as zero.
_MANDATORY_ORDER = 2


# ------------------------------------------------------------------ #
# Model definition
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class ExperimentModel:
    """Collaborators and kernel tags for one experiment.

    Attributes:
        phi_map: ``(β, b) → φ`` with derivatives.
        simulator: ``φ → (Y, T, R)`` with φ-sensitivities.
        noise_scale: ``φ → σ`` on the measurement grid.
        time_scale: ``φ → σ`` on the event grid.
        noise_model: Measurement kernel tag or instance.
        time_model: Event-time kernel tag or instance.
        parameter_model: Random-effect prior tag or instance.
    """

    phi_map: MixedEffectMap
    simulator: TrajectorySimulator
    noise_scale: ScaleModel
    time_scale: ScaleModel
    noise_model: str | NoiseModel = "normal"
    time_model: str | TimeModel = "normal"
    parameter_model: str | ParameterModel = "normal"


@dataclass(frozen=True)
class MixedEffectModel:
    """A population model: per-experiment definitions and one covariance type."""

    experiments: Sequence[ExperimentModel] = field(default_factory=tuple)
    covariance_type: str | CovarianceParametrisation = DEFAULT_COVARIANCE_TYPE

    def experiment(self, index: int) -> ExperimentModel:
        try:
            return self.experiments[index]
        except IndexError:
            msg = (
                f"Experiment index {index} out of range for a model with "
                f"{len(self.experiments)} experiment(s)."
            )
            raise IndexError(msg) from None


# ------------------------------------------------------------------ #
# Engine
# ------------------------------------------------------------------ #


class ObjectiveEngine:
    """Resolves kernels and backend, then evaluates subject objectives.

    The engine is immutable after construction; :meth:`evaluate` may
    be called repeatedly at different points.  Each call fills its own
    :class:`EvaluationContext`, seeded from the resolution fields of
    ``ctx``, so earlier results keep their context.

    Attributes:
        experiment: The selected :class:`ExperimentModel`.
        noise_model, time_model, parameter_model: Resolved kernels.
        covariance: Resolved covariance parametrisation.
        backend_name: Active kernel backend.
        hessian_jitter: Value added to the ``ddJdbdb`` diagonal.
        ctx: Resolution context filled at construction.
    """

    def __init__(
        self,
        model: MixedEffectModel | ExperimentModel,
        *,
        experiment: int = 0,
        covariance_type: str | CovarianceParametrisation | None = None,
        backend: str | None = None,
        hessian_jitter: float | None = None,
        check_finite: bool | None = None,
        ctx: EvaluationContext | None = None,
    ) -> None:
        self.ctx: EvaluationContext = ctx if ctx is not None else EvaluationContext()

        # ---- Experiment selection ---------------------------------
        if isinstance(model, MixedEffectModel):
            self.experiment = model.experiment(experiment)
            if covariance_type is None:
                covariance_type = model.covariance_type
        elif isinstance(model, ExperimentModel):
            self.experiment = model
        else:
            msg = (
                f"model must be a MixedEffectModel or ExperimentModel, "
                f"got {type(model).__name__}."
            )
            raise TypeError(msg)
        if covariance_type is None:
            covariance_type = DEFAULT_COVARIANCE_TYPE

        # ---- Kernel resolution (once) ----------------------------
        self.noise_model: NoiseModel = resolve_noise_model(self.experiment.noise_model)
        self.time_model: TimeModel = resolve_time_model(self.experiment.time_model)
        self.parameter_model: ParameterModel = resolve_parameter_model(
            self.experiment.parameter_model
        )
        self.covariance: CovarianceParametrisation = resolve_covariance(covariance_type)

        # ---- Backend and numerics ---------------------------------
        from ._backends import resolve_backend

        self.backend = resolve_backend(backend)
        self.backend_name: str = self.backend.name
        if hessian_jitter is None:
            hessian_jitter = get_hessian_jitter()
        self.hessian_jitter = float(hessian_jitter)
        if not np.isfinite(self.hessian_jitter) or self.hessian_jitter < 0.0:
            msg = f"hessian_jitter must be finite and >= 0, got {hessian_jitter!r}."
            raise ValueError(msg)
        self.check_finite: bool = get_check_finite() if check_finite is None else check_finite
        self.assembler = DerivativeAssembler(
            self.hessian_jitter, check_finite=self.check_finite
        )

        self.ctx.experiment = experiment
        self.ctx.noise_kind = self.noise_model.name
        self.ctx.time_kind = self.time_model.name
        self.ctx.parameter_kind = self.parameter_model.name
        self.ctx.covariance_kind = self.covariance.name
        self.ctx.backend_name = self.backend_name
        self.ctx.hessian_jitter = self.hessian_jitter
        logger.debug(
            "Engine resolved noise=%s time=%s prior=%s covariance=%s backend=%s",
            self.noise_model.name,
            self.time_model.name,
            self.parameter_model.name,
            self.covariance.name,
            self.backend_name,
        )

    def _new_context(self) -> EvaluationContext:
        base = self.ctx
        return EvaluationContext(
            backend_name=base.backend_name,
            noise_kind=base.noise_kind,
            time_kind=base.time_kind,
            parameter_kind=base.parameter_kind,
            covariance_kind=base.covariance_kind,
            experiment=base.experiment,
            hessian_jitter=base.hessian_jitter,
        )

    # ================================================================ #
    # Public entry
    # ================================================================ #

    def evaluate(
        self,
        beta: Any,
        b: Any,
        kappa: Any,
        delta: Any,
        t: Any,
        Ym: Any,
        Tm: Any,
        ind_y: Any,
        ind_t: Any,
        order: int | DerivativeOrder = DerivativeOrder.GRAD2,
    ) -> ObjectiveResult:
        """Evaluate J and its derivatives up to *order* at one point."""
        order = DerivativeOrder.coerce(order)
        k = int(order)
        ctx = self._new_context()
        ctx.order = k

        beta = ensure_float_vector(beta, name="beta")
        b = ensure_float_vector(b, name="b")
        delta = ensure_float_vector(delta, name="delta")
        t = ensure_float_vector(t, name="t")
        Ym = ensure_float_vector(Ym, name="Ym")
        Tm = ensure_float_vector(Tm, name="Tm")
        ind_y = ensure_index_vector(ind_y, Ym.size, name="ind_y")
        ind_t = ensure_index_vector(ind_t, Tm.size, name="ind_t")
        logger.debug("Evaluating subject objective at order %s", order.name)

        # ---- Covariance ------------------------------------------
        q, p, r = b.size, beta.size, delta.size
        if self.covariance.dimension(r) != q:
            msg = (
                f"Covariance type {self.covariance.name!r} with {r} parameters "
                f"describes {self.covariance.dimension(r)} random effects, "
                f"but b has length {q}."
            )
            raise ShapeMismatchError(msg)
        cov = self._normalise_covariance(self.covariance.evaluate(delta, min(k, 2)), q, r, k)
        ctx.covariance = cov

        # ---- Mixed effects ---------------------------------------
        jet = self._normalise_mixed_effects(
            self.experiment.phi_map.evaluate(beta, b, derivative_keys(k, max_beta=2)),
            {"b": q, "beta": p},
            k,
            ctx.zero_filled,
        )
        phi = jet.phi
        m = phi.size
        dims = {"b": q, "beta": p, "delta": r, "phi": m}
        ctx.mixed_effects = jet
        ctx.dims = dims

        # ---- Forward model ---------------------------------------
        traj = self.experiment.simulator.simulate(t, phi, kappa, k, ind_y=ind_y, ind_t=ind_t)
        n_y, n_t = ind_y.size, ind_t.size
        normalise = partial(self._normalise_channel, m=m, order=k, zero_filled=ctx.zero_filled)
        Y = normalise(traj.Y, n_y, label="Y")
        T = normalise(traj.T, n_t, label="T")
        R = normalise(traj.R, n_t, label="R")
        sigma_y = normalise(
            self.experiment.noise_scale.evaluate(phi, Ym.size, k), Ym.size, label="Sigma_noise"
        ).take(ind_y)
        sigma_t = normalise(
            self.experiment.time_scale.evaluate(phi, Tm.size, k), Tm.size, label="Sigma_time"
        ).take(ind_t)
        ctx.channels = {"Y": Y, "Sigma_noise": sigma_y, "T": T, "R": R, "Sigma_time": sigma_t}

        # ---- Kernels ---------------------------------------------
        noise = self.noise_model.evaluate(Y.value, Ym[ind_y], sigma_y.value, k, self.backend)
        events = self.time_model.evaluate(
            T.value, Tm[ind_t], R.value, sigma_t.value, k, self.backend
        )
        prior = self.parameter_model.evaluate(b, cov, k)
        ctx.noise_kernel, ctx.time_kernel, ctx.prior = noise, events, prior
        for label, kernel in (("noise", noise), ("time", events)):
            check_finite(kernel.slot_values, f"{label} kernel", self.check_finite)
            for key, partial_ in kernel.partials.items():
                check_finite(partial_, f"{label} kernel partial {key}", self.check_finite)

        J_noise, J_time, J_prior = noise.value, events.value, prior.value
        J = J_noise + J_time + J_prior
        check_finite(J, "J", self.check_finite)

        # ---- Assembly --------------------------------------------
        slots: dict[str, np.ndarray] = {}
        if k >= 1:
            ctx.noise_phi_tensors = self.assembler.phi_tensors(
                noise,
                {"Y": Y.derivatives, "Sigma": sigma_y.derivatives},
                k,
                m,
            )
            ctx.time_phi_tensors = self.assembler.phi_tensors(
                events,
                {"T": T.derivatives, "R": R.derivatives, "Sigma": sigma_t.derivatives},
                k,
                m,
            )
            ctx.phi_tensors = self.assembler.sum_branches(
                ctx.noise_phi_tensors, ctx.time_phi_tensors
            )
            slots = self.assembler.assemble(k, ctx.phi_tensors, jet, prior, dims)

        return ObjectiveResult(
            order=order,
            J=J,
            J_noise=J_noise,
            J_time=J_time,
            J_prior=J_prior,
            hessian_jitter=self.hessian_jitter if k >= 2 else 0.0,
            context=ctx,
            **slots,
        )

    # ================================================================ #
    # Collaborator normalisation
    # ================================================================ #

    def _normalise_covariance(
        self,
        cov: CovarianceJet,
        q: int,
        r: int,
        order: int,
    ) -> CovarianceJet:
        D = restore_singleton_axes(cov.D, (q, q), name="D")
        invD = restore_singleton_axes(cov.invD, (q, q), name="invD")
        updates: dict[str, Any] = {"D": D, "invD": invD, "logdetD": float(cov.logdetD)}
        for attr, rank, needed in (
            ("dD", 1, order >= 1),
            ("dinvD", 1, order >= 1),
            ("ddD", 2, order >= 2),
            ("ddinvD", 2, order >= 2),
        ):
            value = getattr(cov, attr)
            if value is None:
                if needed:
                    msg = f"Covariance parametrisation did not supply '{attr}'."
                    raise MissingDerivativeError(msg)
                continue
            updates[attr] = restore_singleton_axes(value, (q, q) + (r,) * rank, name=attr)
        for attr in ("D", "invD", "dD", "dinvD", "ddD", "ddinvD"):
            if attr in updates:
                check_finite(updates[attr], attr, self.check_finite)
        return replace(cov, **updates)

    def _normalise_mixed_effects(
        self,
        jet: MixedEffectJet,
        dims: dict[str, int],
        order: int,
        zero_filled: list[str],
    ) -> MixedEffectJet:
        phi = np.asarray(jet.phi, dtype=np.float64).reshape(-1)
        check_finite(phi, "phi", self.check_finite)
        m = phi.size
        derivs: dict[tuple[str, ...], np.ndarray] = {}
        for key in derivative_keys(order, max_beta=2):
            value = jet.get(key)
            name = "dphi/d" + "d".join(key)
            if value is None:
                if len(key) <= _MANDATORY_ORDER:
                    msg = f"Mixed-effect map did not supply '{name}'."
                    raise MissingDerivativeError(msg)
                zero_filled.append(name)
                logger.debug("Mixed-effect derivative %s absent; taken as zero", name)
                continue
            expected = (m,) + tuple(dims[v] for v in key)
            derivs[key] = restore_singleton_axes(value, expected, name=name)
            check_finite(derivs[key], name, self.check_finite)
        return MixedEffectJet(phi=phi, derivatives=derivs)

    def _normalise_channel(
        self,
        channel: ChannelJet,
        n: int,
        *,
        m: int,
        order: int,
        label: str,
        zero_filled: list[str],
    ) -> ChannelJet:
        value = restore_singleton_axes(
            np.asarray(channel.value, dtype=np.float64).reshape(-1), (n,), name=label
        )
        check_finite(value, label, self.check_finite)

        required = min(order, _MANDATORY_ORDER)
        if channel.supplied_order < required:
            msg = (
                f"'{label}' supplies φ-derivatives up to order "
                f"{channel.supplied_order}; order {required} is required."
            )
            raise MissingDerivativeError(msg)

        derivatives: list[np.ndarray | None] = []
        for j in range(1, order + 1):
            d = channel.derivative(j)
            name = f"d{j}{label}/dphi{j}"
            if d is None:
                if j > channel.supplied_order:
                    zero_filled.append(name)
                    logger.debug("Sensitivity %s absent; taken as zero", name)
                derivatives.append(None)
                continue
            d = restore_singleton_axes(d, (n,) + (m,) * j, name=name)
            check_finite(d, name, self.check_finite)
            derivatives.append(d)
        return ChannelJet(value=value, derivatives=tuple(derivatives))
