"""Edge-case tests for collaborator contracts and input validation.

Covers: a scalar random effect with squeezed collaborator outputs,
truncated sensitivities, missing mandatory derivatives, non-finite
scales, subjects without events, and shape mismatches between
inputs, covariance type and collaborator tensors.
"""

from dataclasses import dataclass, replace

import numpy as np
import pytest

from _subjects import DecaySimulator, make_experiment, make_subject
from nlme_subject import (
    CallableMixedEffectMap,
    ChannelJet,
    ConstantScale,
    LinearMixedEffectMap,
    MissingDerivativeError,
    NonFiniteError,
    ShapeMismatchError,
    Trajectory,
    check_derivatives,
    subject_objective,
)
from nlme_subject._results import SLOT_VARIABLES
from nlme_subject.mixed_effects import derivative_keys

# ------------------------------------------------------------------ #
# Helpers
# ------------------------------------------------------------------ #


def _squeezed_map(phi_map):
    """Wrap *phi_map* so every derivative comes back with size-1 axes dropped."""

    def phi(beta, b):
        return phi_map.evaluate(beta, b, []).phi

    def derivative(key):
        def fn(beta, b):
            return np.squeeze(phi_map.evaluate(beta, b, [key]).get(key))

        return fn

    keys = derivative_keys(4, max_beta=2)
    return CallableMixedEffectMap(phi=phi, derivatives={key: derivative(key) for key in keys})


@dataclass(frozen=True)
class SqueezingSimulator:
    """Drops every size-1 axis of the wrapped simulator's output."""

    inner: DecaySimulator = DecaySimulator()

    def simulate(self, t, phi, kappa, order, *, ind_y, ind_t):
        traj = self.inner.simulate(t, phi, kappa, order, ind_y=ind_y, ind_t=ind_t)

        def squeeze(jet):
            return ChannelJet(
                value=np.squeeze(jet.value),
                derivatives=tuple(np.squeeze(d) for d in jet.derivatives),
            )

        return Trajectory(Y=squeeze(traj.Y), T=squeeze(traj.T), R=squeeze(traj.R))


@dataclass(frozen=True)
class ShortSimulator:
    """Returns one measurement slot fewer than requested."""

    def simulate(self, t, phi, kappa, order, *, ind_y, ind_t):
        traj = DecaySimulator().simulate(t, phi, kappa, order, ind_y=ind_y, ind_t=ind_t)
        Y = ChannelJet(
            value=traj.Y.value[:-1],
            derivatives=tuple(d[:-1] for d in traj.Y.derivatives),
        )
        return Trajectory(Y=Y, T=traj.T, R=traj.R)


def _with_model(s, **changes):
    args = list(s.args())
    args[0] = replace(make_experiment(s.b.size), **changes)
    return args


# ------------------------------------------------------------------ #
# 1. Scalar random effect
# ------------------------------------------------------------------ #


class TestScalarRandomEffect:
    """A squeezing collaborator must not change any result for q = 1."""

    def setup_method(self):
        self.s = make_subject(1, covariance_type="cholesky")
        self.s.ind_t = np.array([1])
        self.reference = subject_objective(*self.s.args(), order=4)

    def test_squeezed_mapper_identical(self):
        experiment = make_experiment(1)
        args = list(self.s.args())
        args[0] = replace(experiment, phi_map=_squeezed_map(experiment.phi_map))
        result = subject_objective(*args, order=4)
        assert result.J == self.reference.J
        for name, variables in SLOT_VARIABLES.items():
            if variables:
                np.testing.assert_allclose(
                    getattr(result, name), getattr(self.reference, name), rtol=1e-14, atol=0
                )

    def test_squeezed_simulator_identical(self):
        args = list(self.s.args())
        args[0] = replace(make_experiment(1), simulator=SqueezingSimulator())
        result = subject_objective(*args, order=4)
        for name in ("ddddJdbdbdbdb", "dddJdbdbetadbeta", "ddJdbddelta"):
            np.testing.assert_allclose(
                getattr(result, name), getattr(self.reference, name), rtol=1e-14
            )

    def test_singleton_axes_kept(self):
        assert self.reference.dJdb.shape == (1,)
        assert self.reference.ddJdbdb.shape == (1, 1)
        assert self.reference.ddddJdbdbdbdb.shape == (1, 1, 1, 1)
        assert self.reference.ddJdbddelta.shape == (1, 1)
        assert self.reference.ddddJdbdbdbetaddelta.shape == (1, 1, 3, 1)

    def test_transposed_mapper_rejected(self):
        s = make_subject(2)
        experiment = make_experiment(2)
        phi_map = _squeezed_map(experiment.phi_map)
        bad = dict(phi_map.derivatives)
        bad[("b",)] = lambda beta, b: experiment.phi_map.B.T
        args = list(s.args())
        args[0] = replace(experiment, phi_map=replace(phi_map, derivatives=bad))
        with pytest.raises(ShapeMismatchError, match="dphi/db"):
            subject_objective(*args, order=1)


# ------------------------------------------------------------------ #
# 2. Optional and mandatory collaborator derivatives
# ------------------------------------------------------------------ #


class TestTruncatedSensitivities:
    def test_zero_filled_and_recorded(self):
        s = make_subject(max_supplied=2)
        result = subject_objective(*s.args(), order=4)
        zero_filled = result.context.zero_filled
        for label in ("Y", "T", "R"):
            assert f"d3{label}/dphi3" in zero_filled
            assert f"d4{label}/dphi4" in zero_filled
        assert np.all(np.isfinite(result.ddddJdbdbdbdb))

    def test_second_order_unaffected(self):
        truncated = subject_objective(*make_subject(max_supplied=2).args(), order=2)
        full = subject_objective(*make_subject().args(), order=2)
        np.testing.assert_allclose(truncated.ddJdbdb, full.ddJdbdb, rtol=1e-14)
        assert truncated.context.zero_filled == []

    def test_higher_orders_differ(self):
        truncated = subject_objective(*make_subject(max_supplied=2).args(), order=3)
        full = subject_objective(*make_subject().args(), order=3)
        assert not np.allclose(truncated.dddJdbdbdb, full.dddJdbdbdb)

    def test_affine_mapper_higher_orders_zero_filled(self):
        s = make_subject()
        args = _with_model(s)
        experiment = args[0]
        A = experiment.phi_map.A
        B = experiment.phi_map.B
        args[0] = replace(
            experiment,
            phi_map=LinearMixedEffectMap(A=A, B=B, offset=np.array([1.0, 1.0, 1.0, 0.5])),
        )
        result = subject_objective(*args, order=3)
        assert "dphi/dbdbdb" in result.context.zero_filled


class TestMissingMandatory:
    def test_first_order_sensitivity_only(self):
        s = make_subject(max_supplied=1)
        with pytest.raises(MissingDerivativeError, match="order 2 is required"):
            subject_objective(*s.args(), order=2)

    def test_first_order_sensitivity_enough_for_gradient(self):
        s = make_subject(max_supplied=1)
        result = subject_objective(*s.args(), order=1)
        assert result.dJdb.shape == (2,)

    def test_missing_second_order_mapper(self):
        s = make_subject()
        experiment = make_experiment()
        phi_map = _squeezed_map(experiment.phi_map)
        derivatives = {k: f for k, f in phi_map.derivatives.items() if k != ("b", "b")}
        args = list(s.args())
        args[0] = replace(experiment, phi_map=replace(phi_map, derivatives=derivatives))
        with pytest.raises(MissingDerivativeError, match="dphi/dbdb"):
            subject_objective(*args, order=2)
        # the gradient does not need it
        assert subject_objective(*args, order=1).dJdb is not None


# ------------------------------------------------------------------ #
# 3. Non-finite values
# ------------------------------------------------------------------ #


class TestNonFinite:
    def test_zero_noise_scale_raises(self):
        s = make_subject()
        args = _with_model(s, noise_scale=ConstantScale(0.0))
        with pytest.raises(NonFiniteError) as info:
            subject_objective(*args, order=1)
        assert info.value.name == "noise kernel"

    @pytest.mark.filterwarnings("ignore::RuntimeWarning")
    def test_check_disabled_propagates(self):
        s = make_subject()
        args = _with_model(s, noise_scale=ConstantScale(0.0))
        result = subject_objective(*args, order=1, check_finite=False)
        assert not np.isfinite(result.J)

    def test_nan_data_raises(self):
        s = make_subject()
        s.Ym = np.array([1.3, np.nan, 0.6, 0.25])
        with pytest.raises(NonFiniteError):
            subject_objective(*s.args(), order=0)


# ------------------------------------------------------------------ #
# 4. Degenerate data
# ------------------------------------------------------------------ #


class TestNoEvents:
    def test_empty_event_grid(self):
        s = make_subject()
        s.Tm = np.zeros(0)
        s.ind_t = np.zeros(0, dtype=int)
        result = subject_objective(*s.args(), order=4)
        assert result.J_time == 0.0
        assert result.J == pytest.approx(result.J_noise + result.J_prior)
        assert np.all(np.isfinite(result.ddddJdbdbdbdb))

    def test_empty_event_grid_derivatives(self):
        s = make_subject()
        s.Tm = np.zeros(0)
        s.ind_t = np.zeros(0, dtype=int)
        assert check_derivatives(*s.args(), order=2).passed


class TestShapeValidation:
    def test_covariance_dimension_mismatch(self):
        s = make_subject()
        s.delta = np.zeros(3)
        with pytest.raises(ShapeMismatchError, match="describes 3 random effects"):
            subject_objective(*s.args())

    def test_cholesky_non_triangular(self):
        s = make_subject(covariance_type="cholesky")
        s.delta = np.zeros(2)
        with pytest.raises(ShapeMismatchError, match="triangular"):
            subject_objective(*s.args())

    def test_index_out_of_range(self):
        s = make_subject()
        s.ind_y = np.array([0, 4])
        with pytest.raises(ShapeMismatchError, match="ind_y"):
            subject_objective(*s.args())

    def test_simulator_slot_count(self):
        s = make_subject()
        args = _with_model(s, simulator=ShortSimulator())
        with pytest.raises(ShapeMismatchError, match="'Y'"):
            subject_objective(*args)


class TestInvalidArguments:
    def test_unknown_noise_model(self):
        s = make_subject()
        with pytest.raises(ValueError, match="Unknown noise model"):
            subject_objective(*_with_model(s, noise_model="student-t"))

    def test_unknown_backend(self):
        s = make_subject()
        with pytest.raises(ValueError, match="Unknown backend"):
            subject_objective(*s.args(), backend="torch")

    @pytest.mark.parametrize("order", [-1, 5])
    def test_order_out_of_range(self, order):
        s = make_subject()
        with pytest.raises(ValueError, match="between 0 and 4"):
            subject_objective(*s.args(), order=order)

    def test_bad_model(self):
        s = make_subject()
        args = list(s.args())
        args[0] = {"experiments": []}
        with pytest.raises(TypeError, match="MixedEffectModel or ExperimentModel"):
            subject_objective(*args)
