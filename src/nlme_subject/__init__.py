"""nlme_subject — Per-subject NLME objective with exact analytic derivatives.

Evaluates, for one subject of a nonlinear mixed-effects model observed
through noisy measurements and event times, the negative
log-likelihood contribution ``J = J_noise + J_time + J_prior`` and its
derivatives up to fourth order in the random effects, mixed with up to
second order in the fixed effects and covariance parameters.  All
derivatives come from hand-assembled multi-order chain rules
(Faà di Bruno over set partitions) with explicit tensor contractions.

Public API:
    .. autosummary::
        subject_objective
        check_derivatives
        symmetry_defects
        print_objective_table
        print_derivative_check_table
        DerivativeOrder
        ObjectiveResult
        DerivativeCheck
        EvaluationContext
        ObjectiveEngine
        ExperimentModel
        MixedEffectModel
        LinearMixedEffectMap
        ExponentialMixedEffectMap
        CallableMixedEffectMap
        ConstantScale
        ParameterScale
        CallableScale
        ChannelJet
        Trajectory
        DiagonalLogParametrisation
        LogCholeskyParametrisation
        register_covariance
        resolve_covariance
        register_noise_model
        register_time_model
        register_parameter_model
        measurement_loss
        event_loss
        get_backend
        set_backend
        get_hessian_jitter
        set_hessian_jitter
        get_check_finite
        set_check_finite
"""

from ._config import (
    get_backend,
    get_check_finite,
    get_hessian_jitter,
    set_backend,
    set_check_finite,
    set_hessian_jitter,
)
from ._context import EvaluationContext
from ._results import DerivativeOrder, ObjectiveResult
from .core import subject_objective
from .covariance import (
    CovarianceJet,
    CovarianceParametrisation,
    DiagonalLogParametrisation,
    LogCholeskyParametrisation,
    register_covariance,
    resolve_covariance,
)
from .diagnostics import DerivativeCheck, check_derivatives, symmetry_defects
from .display import print_derivative_check_table, print_objective_table
from .engine import ExperimentModel, MixedEffectModel, ObjectiveEngine
from .exceptions import (
    CovarianceError,
    MissingDerivativeError,
    NonFiniteError,
    ObjectiveError,
    ShapeMismatchError,
)
from .kernels import (
    LogNormalNoise,
    NormalNoise,
    NormalParameter,
    NormalTime,
    event_loss,
    measurement_loss,
    register_noise_model,
    register_parameter_model,
    register_time_model,
)
from .mixed_effects import (
    CallableMixedEffectMap,
    ExponentialMixedEffectMap,
    LinearMixedEffectMap,
    MixedEffectJet,
)
from .scales import CallableScale, ConstantScale, ParameterScale
from .simulation import ChannelJet, Trajectory, TrajectorySimulator

__all__ = [
    "DerivativeCheck",
    "DerivativeOrder",
    "EvaluationContext",
    "ObjectiveResult",
    "subject_objective",
    "check_derivatives",
    "symmetry_defects",
    "print_derivative_check_table",
    "print_objective_table",
    "ExperimentModel",
    "MixedEffectModel",
    "ObjectiveEngine",
    "CovarianceJet",
    "CovarianceParametrisation",
    "DiagonalLogParametrisation",
    "LogCholeskyParametrisation",
    "register_covariance",
    "resolve_covariance",
    "LogNormalNoise",
    "NormalNoise",
    "NormalParameter",
    "NormalTime",
    "event_loss",
    "measurement_loss",
    "register_noise_model",
    "register_parameter_model",
    "register_time_model",
    "CallableMixedEffectMap",
    "ExponentialMixedEffectMap",
    "LinearMixedEffectMap",
    "MixedEffectJet",
    "CallableScale",
    "ConstantScale",
    "ParameterScale",
    "ChannelJet",
    "Trajectory",
    "TrajectorySimulator",
    "CovarianceError",
    "MissingDerivativeError",
    "NonFiniteError",
    "ObjectiveError",
    "ShapeMismatchError",
    "get_backend",
    "set_backend",
    "get_check_finite",
    "set_check_finite",
    "get_hessian_jitter",
    "set_hessian_jitter",
]

__version__ = "0.1.0"
