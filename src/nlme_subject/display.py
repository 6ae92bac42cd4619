"""Formatted ASCII tables for objective evaluations and derivative checks.

:func:`print_objective_table` shows the decomposition
``J = J_noise + J_time + J_prior`` in a header panel and one row per
computed derivative slot: its shape, largest magnitude, and (for
slots that differentiate one variable more than once) the largest
symmetry defect.  :func:`print_derivative_check_table` lists the
finite-difference errors from
:func:`~nlme_subject.diagnostics.check_derivatives`.
"""

from __future__ import annotations

import textwrap
from typing import TYPE_CHECKING

import numpy as np

from ._results import SLOTS, SLOT_VARIABLES, STRUCTURAL_ZEROS
from .diagnostics import symmetry_defects

if TYPE_CHECKING:
    from ._results import ObjectiveResult
    from .diagnostics import DerivativeCheck


def _fmt_shape(shape: tuple[int, ...]) -> str:
    return "(" + ", ".join(str(d) for d in shape) + ")"


def _fmt_float(val: float | None) -> str:
    if val is None:
        return "N/A"
    if val != val:  # nan check
        return "N/A"
    if val == 0.0:
        return "0"
    if abs(val) < 1e-3 or abs(val) >= 1e5:
        return f"{val:.3e}"
    return f"{val:.6f}"


def _print_title(title: str) -> None:
    print("=" * 80)
    for line in textwrap.wrap(title, width=78):
        print(f"{line:^80}")
    print("=" * 80)


def print_objective_table(
    result: ObjectiveResult,
    *,
    title: str = "Subject Objective",
) -> None:
    """Print the objective decomposition and a summary of each slot.

    Args:
        result: Result of :func:`~nlme_subject.subject_objective`.
        title: Title for the output table.
    """
    _print_title(title)
    ctx = result.context
    col1 = 40
    col2 = 38

    noise_kind = ctx.noise_kind if ctx is not None else None
    time_kind = ctx.time_kind if ctx is not None else None
    backend = ctx.backend_name if ctx is not None else None
    print(
        f"{'Order:':<16}{result.order.name:<{col1 - 16}}"
        f"{'J:':>{col2 - 15}} {_fmt_float(result.J):>14}"
    )
    print(
        f"{'Noise model:':<16}{str(noise_kind or 'N/A'):<{col1 - 16}}"
        f"{'J_noise:':>{col2 - 15}} {_fmt_float(result.J_noise):>14}"
    )
    print(
        f"{'Time model:':<16}{str(time_kind or 'N/A'):<{col1 - 16}}"
        f"{'J_time:':>{col2 - 15}} {_fmt_float(result.J_time):>14}"
    )
    print(
        f"{'Backend:':<16}{str(backend or 'N/A'):<{col1 - 16}}"
        f"{'J_prior:':>{col2 - 15}} {_fmt_float(result.J_prior):>14}"
    )
    print("-" * 80)

    if result.order == 0:
        print("No derivatives computed at order VALUE.")
        print("=" * 80)
        return

    defects = symmetry_defects(result)
    print(f"{'Slot':<26}{'Shape':<18}{'max |T|':>16}{'Asymmetry':>20}")
    print("-" * 80)
    names = [name for name, _ in SLOTS[1:]] + ["dJdbeta", "dJddelta"]
    for name in names:
        tensor = getattr(result, name)
        if tensor is None:
            continue
        magnitude = float(np.max(np.abs(tensor), initial=0.0))
        asym = _fmt_float(defects[name]) if name in defects else ""
        marker = " (zero)" if name in STRUCTURAL_ZEROS else ""
        label = f"{name}{marker}"
        print(
            f"{label:<26}{_fmt_shape(tensor.shape):<18}"
            f"{_fmt_float(magnitude):>16}{asym:>20}"
        )

    print("=" * 80)
    print(f"ddJdbdb includes a diagonal jitter of {_fmt_float(result.hessian_jitter)}.")
    print("(zero) marks slots that vanish by separability of beta and delta.")


def print_derivative_check_table(
    check: DerivativeCheck,
    *,
    title: str = "Derivative Check (central finite differences)",
) -> None:
    """Print per-slot finite-difference errors and the overall verdict.

    Args:
        check: Result of :func:`~nlme_subject.check_derivatives`.
        title: Title for the output table.
    """
    _print_title(title)
    print(f"{'Slot':<26}{'Variables':<30}{'Scaled error':>14}{'Status':>10}")
    print("-" * 80)
    for name, err in check.errors.items():
        variables = ", ".join(SLOT_VARIABLES[name])
        status = "ok" if err <= check.tolerance else "FAIL"
        print(f"{name:<26}{variables:<30}{_fmt_float(err):>14}{status:>10}")
    print("=" * 80)
    verdict = "PASSED" if check.passed else f"FAILED ({len(check.failures)} slot(s))"
    print(f"Tolerance {_fmt_float(check.tolerance)}: {verdict}")
