"""Runtime configuration for the nlme_subject package.

Three knobs control how a subject objective is evaluated:

* **Kernel backend** — ``"numpy"`` evaluates the likelihood kernels
  from their closed-form partial derivatives; ``"jax"`` obtains the
  same partials by automatic differentiation of the per-slot loss.
* **Hessian jitter** — the positive value added to the diagonal of
  ``ddJdbdb`` after assembly.
* **Finite checking** — whether NaN/Inf in intermediate and output
  tensors raises :class:`~nlme_subject.exceptions.NonFiniteError`.

Resolution order for each knob (first match wins):
    1. Programmatic override via the matching ``set_*`` function.
    2. An environment variable (``NLME_SUBJECT_BACKEND``,
       ``NLME_SUBJECT_HESSIAN_JITTER``, ``NLME_SUBJECT_CHECK_FINITE``).
    3. The package default.

Per-call keyword arguments to
:func:`~nlme_subject.core.subject_objective` take precedence over all
three.

Examples:
    Use the autodiff kernels from the shell::

        export NLME_SUBJECT_BACKEND=jax

    Switch off the Hessian jitter programmatically::

        import nlme_subject
        nlme_subject.set_hessian_jitter(0.0)
"""

from __future__ import annotations

import math
import os

import numpy as np

_VALID_BACKENDS = {"jax", "numpy", "auto"}

_TRUE_STRINGS = {"1", "true", "yes", "on"}
_FALSE_STRINGS = {"0", "false", "no", "off"}

DEFAULT_HESSIAN_JITTER: float = float(np.finfo(np.float64).eps)
"""Default singularity guard added to the ``ddJdbdb`` diagonal.

Machine epsilon is far below any curvature the objective produces, so
the value does not move a Newton step in well-conditioned problems;
it only keeps an exactly singular Hessian factorisable.  This is a
numerical safety margin and not part of the objective J.
"""

# Sentinels indicating "no programmatic override has been set".
_backend_override: str | None = None
_jitter_override: float | None = None
_check_finite_override: bool | None = None


# ------------------------------------------------------------------ #
# Kernel backend
# ------------------------------------------------------------------ #


def get_backend() -> str:
    """Return the active kernel backend name (``"jax"`` or ``"numpy"``).

    Resolution order:
        1. Value set by :func:`set_backend` (unless ``"auto"``).
        2. ``NLME_SUBJECT_BACKEND`` environment variable.
        3. ``"numpy"``.

    ``"auto"`` never selects JAX: the closed-form kernels are the
    reference path, and autodiff is opt-in.
    """
    if _backend_override is not None and _backend_override != "auto":
        return _backend_override

    env = os.environ.get("NLME_SUBJECT_BACKEND", "").strip().lower()
    if env in ("jax", "numpy"):
        return env

    return "numpy"


def set_backend(name: str) -> None:
    """Override the kernel backend selection.

    Args:
        name: One of ``"jax"``, ``"numpy"``, or ``"auto"``
            (case-insensitive).  ``"auto"`` restores the default
            resolution order.

    Raises:
        ValueError: If *name* is not a recognised backend.
    """
    global _backend_override
    normalised = name.strip().lower()
    if normalised not in _VALID_BACKENDS:
        raise ValueError(
            f"Unknown backend '{name}'. Choose from: {sorted(_VALID_BACKENDS)}"
        )
    _backend_override = normalised


# ------------------------------------------------------------------ #
# Hessian jitter
# ------------------------------------------------------------------ #


def _validate_jitter(value: float, source: str) -> float:
    value = float(value)
    if not math.isfinite(value) or value < 0.0:
        msg = f"Hessian jitter from {source} must be finite and >= 0, got {value!r}."
        raise ValueError(msg)
    return value


def get_hessian_jitter() -> float:
    """Return the value added to the ``ddJdbdb`` diagonal.

    Resolution order:
        1. Value set by :func:`set_hessian_jitter`.
        2. ``NLME_SUBJECT_HESSIAN_JITTER`` environment variable.
        3. :data:`DEFAULT_HESSIAN_JITTER` (float64 machine epsilon).

    Raises:
        ValueError: If the environment variable does not parse as a
            finite, non-negative float.
    """
    if _jitter_override is not None:
        return _jitter_override

    env = os.environ.get("NLME_SUBJECT_HESSIAN_JITTER", "").strip()
    if env:
        try:
            parsed = float(env)
        except ValueError:
            msg = f"NLME_SUBJECT_HESSIAN_JITTER={env!r} is not a number."
            raise ValueError(msg) from None
        return _validate_jitter(parsed, "NLME_SUBJECT_HESSIAN_JITTER")

    return DEFAULT_HESSIAN_JITTER


def set_hessian_jitter(value: float | None) -> None:
    """Override the Hessian jitter; ``None`` restores the default order."""
    global _jitter_override
    if value is None:
        _jitter_override = None
        return
    _jitter_override = _validate_jitter(value, "set_hessian_jitter()")


# ------------------------------------------------------------------ #
# Finite checking
# ------------------------------------------------------------------ #


def get_check_finite() -> bool:
    """Return whether non-finite tensors raise ``NonFiniteError``.

    Resolution order:
        1. Value set by :func:`set_check_finite`.
        2. ``NLME_SUBJECT_CHECK_FINITE`` environment variable
           (``1/true/yes/on`` or ``0/false/no/off``).
        3. ``True``.
    """
    if _check_finite_override is not None:
        return _check_finite_override

    env = os.environ.get("NLME_SUBJECT_CHECK_FINITE", "").strip().lower()
    if env in _TRUE_STRINGS:
        return True
    if env in _FALSE_STRINGS:
        return False

    return True


def set_check_finite(enabled: bool | None) -> None:
    """Override finite checking; ``None`` restores the default order."""
    global _check_finite_override
    _check_finite_override = None if enabled is None else bool(enabled)
