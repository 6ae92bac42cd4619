"""Numerical checks of assembled derivatives.

Two diagnostics guard the chain-rule assembler:

* **Finite-difference agreement** — every derivative slot of order k
  is compared with a central finite difference of the order-(k − 1)
  slot obtained by dropping its last variable.  First derivatives are
  differences of J itself; ``ddJdbdbeta`` is the b-derivative
  differenced in β; ``ddddJdbdbdbddelta`` is ``dddJdbdbdb``
  differenced in δ, and so on.  Because each comparison differences
  an *analytic* lower-order tensor, the truncation error stays at
  first-difference level for every order.

  Differences are taken with
  :func:`statsmodels.tools.numdiff.approx_fprime` (``centered=True``).
  The Hessian jitter is switched off for the check so that
  ``ddJdbdb`` is the pure second derivative.

* **Symmetry** — a derivative along ``(b, b, beta)`` must be invariant
  under swapping its two b-axes.  :func:`symmetry_defects` reports the
  largest violation per slot.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np
from statsmodels.tools.numdiff import approx_fprime

from ._compat import ensure_float_vector
from ._results import SLOT_VARIABLES, DerivativeOrder, ObjectiveResult, _DictAccessMixin
from ._tensors import max_asymmetry, symmetric_axis_groups
from .core import subject_objective

if TYPE_CHECKING:
    from ._typing import ArrayLike
    from .covariance import CovarianceParametrisation
    from .engine import ExperimentModel, MixedEffectModel

logger = logging.getLogger(__name__)


# ------------------------------------------------------------------ #
# Result type
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class DerivativeCheck(_DictAccessMixin):
    """Outcome of :func:`check_derivatives`.

    Attributes:
        order: Highest derivative order checked.
        tolerance: Threshold on the scaled error.
        errors: Slot name → scaled error
            ``max|analytic − numeric| / max(1, max|numeric|)``.
        analytic: Slot name → analytic tensor (excluded from
            ``to_dict``).
        numeric: Slot name → finite-difference tensor (excluded from
            ``to_dict``).
    """

    order: DerivativeOrder
    tolerance: float
    errors: dict[str, float] = field(default_factory=dict)
    analytic: dict[str, np.ndarray] = field(default_factory=dict, repr=False)
    numeric: dict[str, np.ndarray] = field(default_factory=dict, repr=False)

    _EXCLUDE_FROM_DICT = frozenset({"analytic", "numeric"})

    @property
    def passed(self) -> bool:
        return all(err <= self.tolerance for err in self.errors.values())

    @property
    def failures(self) -> list[str]:
        return [name for name, err in self.errors.items() if err > self.tolerance]

    @property
    def worst(self) -> tuple[str, float] | None:
        if not self.errors:
            return None
        name = max(self.errors, key=self.errors.__getitem__)
        return name, self.errors[name]


def _scaled_error(analytic: np.ndarray, numeric: np.ndarray) -> float:
    diff = float(np.max(np.abs(analytic - numeric), initial=0.0))
    scale = max(1.0, float(np.max(np.abs(numeric), initial=0.0)))
    return diff / scale


# ------------------------------------------------------------------ #
# Finite-difference agreement
# ------------------------------------------------------------------ #


def check_derivatives(
    model: MixedEffectModel | ExperimentModel,
    beta: ArrayLike,
    b: ArrayLike,
    kappa: Any,
    delta: ArrayLike,
    t: ArrayLike,
    Ym: ArrayLike,
    Tm: ArrayLike,
    ind_y: ArrayLike,
    ind_t: ArrayLike,
    experiment: int = 0,
    *,
    order: int | DerivativeOrder = DerivativeOrder.GRAD2,
    covariance_type: str | CovarianceParametrisation | None = None,
    backend: str | None = None,
    epsilon: float | None = None,
    tolerance: float = 1e-5,
) -> DerivativeCheck:
    """Compare every derivative slot up to *order* with finite differences.

    Arguments mirror :func:`~nlme_subject.subject_objective`.

    Args:
        epsilon: Step size passed to ``approx_fprime``; ``None`` lets
            statsmodels choose a step scaled to each coordinate.
        tolerance: Largest acceptable scaled error.

    Returns:
        A :class:`DerivativeCheck`; ``check.passed`` is the verdict.
    """
    if not math.isfinite(tolerance) or tolerance < 0:
        msg = f"tolerance must be finite and >= 0, got {tolerance!r}."
        raise ValueError(msg)
    order = DerivativeOrder.coerce(order)
    point = {
        "b": ensure_float_vector(b, name="b"),
        "beta": ensure_float_vector(beta, name="beta"),
        "delta": ensure_float_vector(delta, name="delta"),
    }

    def evaluate(values: dict[str, np.ndarray], k: int) -> ObjectiveResult:
        return subject_objective(
            model,
            values["beta"],
            values["b"],
            kappa,
            values["delta"],
            t,
            Ym,
            Tm,
            ind_y,
            ind_t,
            experiment,
            order=k,
            covariance_type=covariance_type,
            backend=backend,
            hessian_jitter=0.0,
        )

    reference = evaluate(point, int(order))

    errors: dict[str, float] = {}
    analytic: dict[str, np.ndarray] = {}
    numeric: dict[str, np.ndarray] = {}
    for name, variables in SLOT_VARIABLES.items():
        if not variables or len(variables) > order:
            continue
        prefix, last = variables[:-1], variables[-1]
        x0 = point[last]

        def lower(x: np.ndarray, prefix=prefix, last=last) -> np.ndarray:
            shifted = dict(point)
            shifted[last] = np.asarray(x, dtype=np.float64)
            value = evaluate(shifted, len(prefix)).derivative(*prefix)
            return np.ravel(value)

        jac = approx_fprime(x0, lower, epsilon=epsilon, centered=True)
        tensor = np.asarray(reference.derivative(*variables))
        # approx_fprime squeezes size-1 axes; its element order is
        # (lower-slot entries, x entries) in every case.
        fd = np.reshape(jac, tensor.shape)
        errors[name] = _scaled_error(tensor, fd)
        analytic[name] = tensor
        numeric[name] = fd
        logger.debug("Derivative check %s: scaled error %.3e", name, errors[name])

    return DerivativeCheck(
        order=order,
        tolerance=tolerance,
        errors=errors,
        analytic=analytic,
        numeric=numeric,
    )


# ------------------------------------------------------------------ #
# Symmetry
# ------------------------------------------------------------------ #


def symmetry_defects(result: ObjectiveResult) -> dict[str, float]:
    """Largest ``|T − T_σ|`` over same-variable axis permutations, per slot.

    Slots with no repeated variable (``ddJdbdbeta``) have nothing to
    check and are omitted, as are slots not computed at the result's
    order.  The ``ddJdbdb`` jitter is a multiple of the identity and
    does not affect symmetry.
    """
    defects: dict[str, float] = {}
    for name, variables in SLOT_VARIABLES.items():
        tensor = getattr(result, name)
        groups = symmetric_axis_groups(variables)
        if tensor is None or not groups:
            continue
        defects[name] = max(max_asymmetry(tensor, axes) for axes in groups)
    return defects
