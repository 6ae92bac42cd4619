"""Tests that the JAX autodiff backend reproduces the NumPy closed forms."""

import itertools

import numpy as np
import pytest

jax = pytest.importorskip("jax")

from _subjects import make_subject  # noqa: E402

from nlme_subject import subject_objective  # noqa: E402
from nlme_subject._backends import resolve_backend  # noqa: E402
from nlme_subject.kernels import NOISE_CHANNELS, TIME_CHANNELS  # noqa: E402


def _assert_same_partials(ref, out, channels, order, n):
    np.testing.assert_allclose(out[0], ref[0], rtol=1e-12)
    for k in range(1, order + 1):
        for key in itertools.combinations_with_replacement(channels, k):
            expected = ref[1].get(key, np.zeros(n))
            actual = out[1].get(key, np.zeros(n))
            np.testing.assert_allclose(actual, expected, rtol=1e-10, atol=1e-12)


class TestJaxBackend:
    """Per-slot partials from nested jacfwd against the closed-form tables."""

    def setup_method(self):
        self.numpy = resolve_backend("numpy")
        self.jax = resolve_backend("jax")
        self.Y = np.array([1.2, 0.4, 2.5])
        self.Ym = np.array([1.0, 0.9, 2.0])
        self.sigma = np.array([0.5, 0.8, 0.3])

    def test_name_and_cache(self):
        assert self.jax.name == "jax"
        assert self.jax.is_available
        assert resolve_backend("jax") is self.jax

    @pytest.mark.parametrize("order", [0, 2, 4])
    def test_normal_noise(self, order):
        args = (self.Y, self.Ym, self.sigma, order)
        _assert_same_partials(
            self.numpy.normal_noise(*args), self.jax.normal_noise(*args), NOISE_CHANNELS, order, 3
        )

    @pytest.mark.parametrize("order", [1, 4])
    def test_lognormal_noise(self, order):
        args = (self.Y, self.Ym, self.sigma, order)
        _assert_same_partials(
            self.numpy.lognormal_noise(*args),
            self.jax.lognormal_noise(*args),
            NOISE_CHANNELS,
            order,
            3,
        )

    @pytest.mark.parametrize("order", [1, 4])
    def test_normal_time(self, order):
        T, Tm, R = np.array([1.1, 2.3]), np.array([1.0, 2.0]), np.array([0.2, -0.4])
        args = (T, Tm, R, np.array([0.6, 0.9]), order)
        _assert_same_partials(
            self.numpy.normal_time(*args), self.jax.normal_time(*args), TIME_CHANNELS, order, 2
        )


class TestJaxEndToEnd:
    def test_objective_matches_numpy(self):
        s = make_subject()
        ref = subject_objective(*s.args(), order=4, backend="numpy")
        out = subject_objective(*s.args(), order=4, backend="jax")
        assert out.context.backend_name == "jax"
        assert out.J == pytest.approx(ref.J, rel=1e-12)
        for name, tensor in zip(
            ("dJdb", "ddJdbddelta", "dddJdbdbdbeta", "ddddJdbdbdbdb"),
            (out.dJdb, out.ddJdbddelta, out.dddJdbdbdbeta, out.ddddJdbdbdbdb),
        ):
            np.testing.assert_allclose(tensor, getattr(ref, name), rtol=1e-9, atol=1e-11)
