"""Public entry point for the per-subject objective.

:func:`subject_objective` evaluates, for one subject of a nonlinear
mixed-effects model, the negative log-likelihood contribution

    J(β, b, δ) = J_noise(φ(β, b)) + J_time(φ(β, b)) + J_prior(b, δ)

together with its exact derivatives: up to fourth order in the random
effects b, mixed with up to second order in the fixed effects β and
the covariance parameters δ.  Derivatives are obtained by explicit
chain-rule composition of the collaborator jets (see
:mod:`nlme_subject.assembler`), never by finite differences.

The requested :class:`~nlme_subject.DerivativeOrder` bounds every
stage: collaborators are asked for sensitivities up to that order and
no tensor above it is formed.

Example::

    model = ExperimentModel(
        phi_map=ExponentialMixedEffectMap(A=np.eye(2), B=np.eye(2)),
        simulator=my_simulator,
        noise_scale=ConstantScale(0.1),
        time_scale=ConstantScale(0.5),
    )
    result = subject_objective(
        model, beta, b, kappa, delta, t, Ym, Tm, ind_y, ind_t,
        order=DerivativeOrder.GRAD2,
    )
    newton_step = np.linalg.solve(result.ddJdbdb, -result.dJdb)
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from ._context import EvaluationContext
from ._results import DerivativeOrder, ObjectiveResult
from .engine import ExperimentModel, MixedEffectModel, ObjectiveEngine

if TYPE_CHECKING:
    from ._typing import ArrayLike
    from .covariance import CovarianceParametrisation


def subject_objective(
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
    hessian_jitter: float | None = None,
    check_finite: bool | None = None,
) -> ObjectiveResult:
    """Evaluate one subject's objective and its derivatives.

    Args:
        model: A :class:`MixedEffectModel` (the experiment is picked
            by *experiment*) or a single :class:`ExperimentModel`.
        beta: Fixed effects ``(p,)``.
        b: Random effects ``(q,)``.
        kappa: Experimental condition, passed to the simulator as is.
        delta: Covariance parameters ``(r,)``.
        t: Simulation time grid.
        Ym: Measurement data on the measurement grid.
        Tm: Event-time data on the event grid.
        ind_y: Measurement grid index of each measurement slot.
        ind_t: Event grid index of each event slot.
        experiment: Index into ``model.experiments``.
        order: Highest derivative order, a :class:`DerivativeOrder`
            or its integer value.  Use
            :meth:`DerivativeOrder.from_slot_count` to translate a
            requested number of outputs.
        covariance_type: Overrides the model's covariance type.  A
            bare :class:`ExperimentModel` defaults to
            ``"diag-matrix-logarithm"``.
        backend: ``"numpy"`` or ``"jax"`` kernels.  ``None`` uses
            :func:`~nlme_subject.get_backend`.
        hessian_jitter: Value added to the ``ddJdbdb`` diagonal.
            ``None`` uses :func:`~nlme_subject.get_hessian_jitter`.
        check_finite: Raise on NaN/Inf.  ``None`` uses
            :func:`~nlme_subject.get_check_finite`.

    Returns:
        :class:`ObjectiveResult` with every slot up to *order* filled.

    Raises:
        ShapeMismatchError: A collaborator tensor or input vector has
            an inconsistent shape.
        CovarianceError: The covariance matrix is not symmetric
            positive definite.
        NonFiniteError: A NaN or Inf appeared and finite checking is
            on.
        MissingDerivativeError: A mandatory collaborator derivative
            is absent.
        ValueError: Unknown kernel, covariance type, backend or order.
    """
    ctx = EvaluationContext()
    engine = ObjectiveEngine(
        model,
        experiment=experiment,
        covariance_type=covariance_type,
        backend=backend,
        hessian_jitter=hessian_jitter,
        check_finite=check_finite,
        ctx=ctx,
    )
    return engine.evaluate(beta, b, kappa, delta, t, Ym, Tm, ind_y, ind_t, order)
