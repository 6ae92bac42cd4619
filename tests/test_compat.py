"""Tests for data-frame input compatibility (pandas and optional Polars)."""

import numpy as np
import pandas as pd
import pytest

from _subjects import make_subject
from nlme_subject import subject_objective
from nlme_subject._compat import ensure_float_vector, ensure_index_vector
from nlme_subject.exceptions import ShapeMismatchError


class TestEnsureFloatVector:
    """Tests for the float-vector converter."""

    def test_list(self):
        out = ensure_float_vector([1, 2, 3], name="Ym")
        assert out.dtype == np.float64
        np.testing.assert_array_equal(out, [1.0, 2.0, 3.0])

    def test_scalar_becomes_length_one(self):
        assert ensure_float_vector(2.5).shape == (1,)

    def test_column_vector_flattened(self):
        out = ensure_float_vector(np.ones((4, 1)))
        assert out.shape == (4,)

    def test_series(self):
        out = ensure_float_vector(pd.Series([0.5, 1.5]))
        np.testing.assert_array_equal(out, [0.5, 1.5])

    def test_single_column_frame(self):
        out = ensure_float_vector(pd.DataFrame({"y": [1.0, 2.0]}))
        np.testing.assert_array_equal(out, [1.0, 2.0])

    def test_rejects_multi_column_frame(self):
        with pytest.raises(ShapeMismatchError, match="single column"):
            ensure_float_vector(pd.DataFrame({"a": [1], "b": [2]}), name="Ym")

    def test_rejects_matrix(self):
        with pytest.raises(ShapeMismatchError, match="'Tm' must be a vector"):
            ensure_float_vector(np.ones((2, 3)), name="Tm")


class TestEnsureIndexVector:
    """Tests for index-map conversion."""

    def test_repeated_entries_allowed(self):
        out = ensure_index_vector([0, 1, 1, 2], 3)
        assert out.dtype == np.intp
        np.testing.assert_array_equal(out, [0, 1, 1, 2])

    def test_integral_floats_accepted(self):
        np.testing.assert_array_equal(ensure_index_vector([0.0, 2.0], 3), [0, 2])

    def test_rejects_fractional(self):
        with pytest.raises(ShapeMismatchError, match="integer"):
            ensure_index_vector([0.5], 3, name="ind_y")

    def test_rejects_out_of_range(self):
        with pytest.raises(ShapeMismatchError, match="'ind_t' indexes a grid of 2"):
            ensure_index_vector([0, 2], 2, name="ind_t")

    def test_rejects_negative(self):
        with pytest.raises(ShapeMismatchError):
            ensure_index_vector([-1], 2)

    def test_empty(self):
        assert ensure_index_vector([], 0).size == 0


class TestPandasEndToEnd:
    """Data vectors supplied as pandas columns give the same objective."""

    def test_series_inputs(self):
        s = make_subject()
        ref = subject_objective(*s.args(), order=1)
        out = subject_objective(
            s.model,
            pd.Series(s.beta),
            pd.Series(s.b),
            s.kappa,
            pd.Series(s.delta),
            s.t,
            pd.DataFrame({"Ym": s.Ym}),
            pd.Series(s.Tm),
            pd.Series(s.ind_y),
            pd.Series(s.ind_t),
            order=1,
        )
        assert out.J == pytest.approx(ref.J)
        np.testing.assert_allclose(out.dJdb, ref.dJdb)


class TestPolars:
    """Polars inputs are converted at the boundary."""

    def test_series(self):
        pl = pytest.importorskip("polars")
        out = ensure_float_vector(pl.Series("y", [1.0, 2.0]))
        np.testing.assert_array_equal(out, [1.0, 2.0])

    def test_frame_and_lazyframe(self):
        pl = pytest.importorskip("polars")
        frame = pl.DataFrame({"ind": [0, 1, 1]})
        np.testing.assert_array_equal(ensure_index_vector(frame, 2), [0, 1, 1])
        np.testing.assert_array_equal(ensure_index_vector(frame.lazy(), 2), [0, 1, 1])

    def test_end_to_end(self):
        pl = pytest.importorskip("polars")
        s = make_subject()
        ref = subject_objective(*s.args(), order=0)
        out = subject_objective(
            s.model,
            s.beta,
            s.b,
            s.kappa,
            s.delta,
            s.t,
            pl.Series("Ym", s.Ym),
            pl.DataFrame({"Tm": s.Tm}),
            pl.Series("ind_y", s.ind_y),
            pl.Series("ind_t", s.ind_t),
            order=0,
        )
        assert out.J == pytest.approx(ref.J)
