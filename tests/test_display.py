"""Tests for the ASCII table printers."""

from _subjects import make_subject
from nlme_subject import (
    DerivativeCheck,
    DerivativeOrder,
    check_derivatives,
    print_derivative_check_table,
    print_objective_table,
    subject_objective,
)
from nlme_subject.display import _fmt_float, _fmt_shape


class TestFormatters:
    def test_fmt_float(self):
        assert _fmt_float(None) == "N/A"
        assert _fmt_float(float("nan")) == "N/A"
        assert _fmt_float(0.0) == "0"
        assert _fmt_float(1.5) == "1.500000"
        assert _fmt_float(2e-7) == "2.000e-07"
        assert _fmt_float(3e6) == "3.000e+06"

    def test_fmt_shape(self):
        assert _fmt_shape((2, 1, 3)) == "(2, 1, 3)"


class TestPrintObjectiveTable:
    def test_header_and_slots(self, capsys):
        s = make_subject()
        print_objective_table(subject_objective(*s.args(), order=2))
        out = capsys.readouterr().out
        assert "Subject Objective" in out
        assert "GRAD2" in out
        assert "J_noise:" in out and "J_time:" in out and "J_prior:" in out
        assert "Backend:" in out and "numpy" in out
        assert "ddJdbdbeta" in out
        assert "ddJdbetaddelta (zero)" in out
        assert "(2, 3)" in out
        assert "dddJdbdbdb" not in out
        assert all(len(line) <= 80 for line in out.splitlines())

    def test_value_only(self, capsys):
        s = make_subject()
        print_objective_table(subject_objective(*s.args(), order=0), title="Point")
        out = capsys.readouterr().out
        assert "Point" in out
        assert "No derivatives computed at order VALUE." in out

    def test_custom_title(self, capsys):
        s = make_subject()
        print_objective_table(subject_objective(*s.args(), order=1), title="Subject 7")
        assert "Subject 7" in capsys.readouterr().out


class TestPrintDerivativeCheckTable:
    def test_passed(self, capsys):
        s = make_subject()
        print_derivative_check_table(check_derivatives(*s.args(), order=1))
        out = capsys.readouterr().out
        assert "Derivative Check" in out
        assert "dJddelta" in out
        assert "PASSED" in out
        assert "FAIL" not in out

    def test_failed(self, capsys):
        check = DerivativeCheck(
            order=DerivativeOrder.GRAD1,
            tolerance=1e-5,
            errors={"dJdb": 1e-2, "dJdbeta": 1e-9},
        )
        print_derivative_check_table(check)
        out = capsys.readouterr().out
        assert "FAILED (1 slot(s))" in out
        lines = [line for line in out.splitlines() if line.startswith("dJdb ")]
        assert lines and lines[0].rstrip().endswith("FAIL")
