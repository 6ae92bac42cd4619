"""Tests for the configuration system: backend, Hessian jitter, finite checks."""

import os

import numpy as np
import pytest

import nlme_subject._config as _cfg
from nlme_subject._config import (
    DEFAULT_HESSIAN_JITTER,
    get_backend,
    get_check_finite,
    get_hessian_jitter,
    set_backend,
    set_check_finite,
    set_hessian_jitter,
)

_ENV_VARS = (
    "NLME_SUBJECT_BACKEND",
    "NLME_SUBJECT_HESSIAN_JITTER",
    "NLME_SUBJECT_CHECK_FINITE",
)


def _reset():
    _cfg._backend_override = None
    _cfg._jitter_override = None
    _cfg._check_finite_override = None
    for var in _ENV_VARS:
        os.environ.pop(var, None)


class TestGetBackend:
    """Tests for get_backend() resolution order."""

    def setup_method(self):
        _reset()

    def teardown_method(self):
        _reset()

    def test_default_is_numpy(self):
        assert get_backend() == "numpy"

    def test_env_var_jax(self):
        os.environ["NLME_SUBJECT_BACKEND"] = "jax"
        assert get_backend() == "jax"

    def test_env_var_case_insensitive(self):
        os.environ["NLME_SUBJECT_BACKEND"] = "NumPy"
        assert get_backend() == "numpy"

    def test_unrecognised_env_var_falls_back(self):
        os.environ["NLME_SUBJECT_BACKEND"] = "torch"
        assert get_backend() == "numpy"

    def test_programmatic_override_wins_over_env(self):
        os.environ["NLME_SUBJECT_BACKEND"] = "numpy"
        set_backend("jax")
        assert get_backend() == "jax"

    def test_auto_restores_default(self):
        set_backend("jax")
        set_backend("auto")
        assert get_backend() == "numpy"


class TestSetBackend:
    """Tests for set_backend() validation."""

    def setup_method(self):
        _reset()

    def teardown_method(self):
        _reset()

    def test_accepts_valid_names(self):
        for name in ("jax", "numpy", "auto"):
            set_backend(name)  # should not raise

    def test_case_insensitive(self):
        set_backend("JAX")
        assert get_backend() == "jax"

    def test_rejects_invalid_name(self):
        with pytest.raises(ValueError, match="Unknown backend"):
            set_backend("tensorflow")

    def test_jax_without_install_fails_at_resolution(self, monkeypatch):
        import nlme_subject._backends as backends
        import nlme_subject._backends._jax as jax_module

        monkeypatch.setattr(jax_module, "_CAN_IMPORT_JAX", False)
        monkeypatch.setattr(backends, "_BACKEND_CACHE", {})
        set_backend("jax")
        assert get_backend() == "jax"
        with pytest.raises(ImportError, match="JAX is not installed"):
            backends.resolve_backend()

    def test_auto_never_needs_jax(self, monkeypatch):
        import nlme_subject._backends as backends
        import nlme_subject._backends._jax as jax_module

        monkeypatch.setattr(jax_module, "_CAN_IMPORT_JAX", False)
        monkeypatch.setattr(backends, "_BACKEND_CACHE", {})
        set_backend("auto")
        assert backends.resolve_backend().name == "numpy"


class TestHessianJitter:
    """Tests for the ddJdbdb diagonal jitter."""

    def setup_method(self):
        _reset()

    def teardown_method(self):
        _reset()

    def test_default_is_machine_epsilon(self):
        assert get_hessian_jitter() == DEFAULT_HESSIAN_JITTER
        assert DEFAULT_HESSIAN_JITTER == np.finfo(np.float64).eps

    def test_env_var(self):
        os.environ["NLME_SUBJECT_HESSIAN_JITTER"] = "1e-8"
        assert get_hessian_jitter() == pytest.approx(1e-8)

    def test_env_var_not_a_number(self):
        os.environ["NLME_SUBJECT_HESSIAN_JITTER"] = "tiny"
        with pytest.raises(ValueError, match="not a number"):
            get_hessian_jitter()

    def test_env_var_negative(self):
        os.environ["NLME_SUBJECT_HESSIAN_JITTER"] = "-1"
        with pytest.raises(ValueError, match="finite and >= 0"):
            get_hessian_jitter()

    def test_override_wins_over_env(self):
        os.environ["NLME_SUBJECT_HESSIAN_JITTER"] = "1e-8"
        set_hessian_jitter(0.0)
        assert get_hessian_jitter() == 0.0

    def test_none_restores_default(self):
        set_hessian_jitter(1e-3)
        set_hessian_jitter(None)
        assert get_hessian_jitter() == DEFAULT_HESSIAN_JITTER

    @pytest.mark.parametrize("bad", [-1e-3, float("inf"), float("nan")])
    def test_rejects_invalid_override(self, bad):
        with pytest.raises(ValueError):
            set_hessian_jitter(bad)


class TestCheckFinite:
    """Tests for the NaN/Inf guard switch."""

    def setup_method(self):
        _reset()

    def teardown_method(self):
        _reset()

    def test_default_on(self):
        assert get_check_finite() is True

    @pytest.mark.parametrize("value", ["0", "false", "OFF", "no"])
    def test_env_var_off(self, value):
        os.environ["NLME_SUBJECT_CHECK_FINITE"] = value
        assert get_check_finite() is False

    def test_override(self):
        os.environ["NLME_SUBJECT_CHECK_FINITE"] = "1"
        set_check_finite(False)
        assert get_check_finite() is False
        set_check_finite(None)
        assert get_check_finite() is True


class TestPublicExports:
    def test_public_api_exports(self):
        import nlme_subject

        for name in (
            "get_backend",
            "set_backend",
            "get_hessian_jitter",
            "set_hessian_jitter",
            "get_check_finite",
            "set_check_finite",
        ):
            assert hasattr(nlme_subject, name)
