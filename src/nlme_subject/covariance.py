"""Random-effect covariance parametrisations.

A parametrisation maps an unconstrained vector δ of length r to a
symmetric positive-definite covariance D of shape ``(q, q)`` together
with its inverse and their δ-derivatives.  Derivative layout follows
the convention used throughout the package: the matrix axes come
first, the δ axes last::

    dD[:, :, k]        = ∂D / ∂δ_k                 (q, q, r)
    ddD[:, :, k, l]    = ∂²D / ∂δ_k ∂δ_l           (q, q, r, r)

Inverse derivatives are never differentiated independently; they are
derived from the D-derivatives through the identities

    ∂ D⁻¹           = −D⁻¹ (∂_k D) D⁻¹
    ∂_k ∂_l D⁻¹     = D⁻¹ (∂_k D D⁻¹ ∂_l D + ∂_l D D⁻¹ ∂_k D − ∂_k∂_l D) D⁻¹

so every parametrisation only has to supply D, ∂D and ∂²D.

Two parametrisations are registered:

=============================  ==============================  =========
Name                           D(δ)                            r
=============================  ==============================  =========
``"diag-matrix-logarithm"``    ``diag(exp(δ))``                q
``"cholesky"``                 ``L Lᵀ``, log-diagonal ``L``    q(q+1)/2
=============================  ==============================  =========
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import numpy as np
from scipy import linalg

from .exceptions import CovarianceError, MissingDerivativeError, ShapeMismatchError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CovarianceJet:
    """Covariance matrix, inverse and δ-derivatives up to second order.

    Attributes:
        D: Covariance ``(q, q)``.
        invD: Inverse covariance ``(q, q)``.
        logdetD: ``log det D``.
        dD, dinvD: First δ-derivatives ``(q, q, r)``; ``None`` at order 0.
        ddD, ddinvD: Second δ-derivatives ``(q, q, r, r)``; ``None``
            below order 2.
    """

    D: np.ndarray
    invD: np.ndarray
    logdetD: float
    dD: np.ndarray | None = None
    dinvD: np.ndarray | None = None
    ddD: np.ndarray | None = None
    ddinvD: np.ndarray | None = None

    @property
    def q(self) -> int:
        return self.D.shape[0]

    @property
    def r(self) -> int | None:
        return None if self.dD is None else self.dD.shape[2]


@runtime_checkable
class CovarianceParametrisation(Protocol):
    """Interface every covariance parametrisation implements."""

    @property
    def name(self) -> str: ...

    def dimension(self, n_delta: int) -> int:
        """Return q for a δ vector of length *n_delta*."""
        ...

    def evaluate(self, delta: np.ndarray, order: int) -> CovarianceJet:
        """Return D, invD and the δ-derivatives required by *order*.

        Order 0 needs D and invD only; order 1 adds ``dD``/``dinvD``;
        order 2 and above adds ``ddD``/``ddinvD``.
        """
        ...


# ------------------------------------------------------------------ #
# Shared inverse / log-determinant construction
# ------------------------------------------------------------------ #


def build_covariance_jet(
    D: np.ndarray,
    dD: np.ndarray | None,
    ddD: np.ndarray | None,
) -> CovarianceJet:
    """Factorise D and propagate derivatives to its inverse.

    Raises:
        CovarianceError: If D is not symmetric or the Cholesky
            factorisation fails.
        MissingDerivativeError: If *ddD* is given without *dD*.
    """
    D = np.asarray(D, dtype=np.float64)
    if D.ndim != 2 or D.shape[0] != D.shape[1]:
        msg = f"Covariance must be a square matrix, got shape {D.shape}."
        raise ShapeMismatchError(msg)
    if not np.allclose(D, D.T, rtol=1e-10, atol=1e-12):
        msg = "Covariance matrix is not symmetric."
        raise CovarianceError(msg)

    try:
        factor = linalg.cho_factor(D, lower=True, check_finite=True)
    except (linalg.LinAlgError, ValueError) as exc:
        msg = f"Covariance matrix is not positive definite: {exc}"
        raise CovarianceError(msg) from None

    q = D.shape[0]
    invD = linalg.cho_solve(factor, np.eye(q))
    invD = 0.5 * (invD + invD.T)
    logdetD = float(2.0 * np.sum(np.log(np.diag(factor[0]))))

    dinvD = None
    if dD is not None:
        dinvD = -np.einsum("ij,jkr,kl->ilr", invD, dD, invD, optimize=True)

    ddinvD = None
    if ddD is not None:
        if dD is None:
            msg = "Second covariance derivatives 'ddD' require the first derivatives 'dD'."
            raise MissingDerivativeError(msg)
        cross = np.einsum(
            "ij,jkr,kl,lms,mn->inrs", invD, dD, invD, dD, invD, optimize=True
        )
        ddinvD = (
            cross
            + cross.transpose(0, 1, 3, 2)
            - np.einsum("ij,jkrs,kl->ilrs", invD, ddD, invD, optimize=True)
        )

    return CovarianceJet(
        D=D, invD=invD, logdetD=logdetD, dD=dD, dinvD=dinvD, ddD=ddD, ddinvD=ddinvD
    )


# ------------------------------------------------------------------ #
# Concrete parametrisations
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class DiagonalLogParametrisation:
    """Independent random effects with log-variances δ: ``D = diag(exp δ)``."""

    @property
    def name(self) -> str:
        return "diag-matrix-logarithm"

    def dimension(self, n_delta: int) -> int:
        return n_delta

    def evaluate(self, delta: np.ndarray, order: int) -> CovarianceJet:
        delta = np.asarray(delta, dtype=np.float64).reshape(-1)
        q = delta.size
        variances = np.exp(delta)
        D = np.diag(variances)

        dD = ddD = None
        if order >= 1:
            dD = np.zeros((q, q, q))
            dD[np.arange(q), np.arange(q), np.arange(q)] = variances
        if order >= 2:
            ddD = np.zeros((q, q, q, q))
            idx = np.arange(q)
            ddD[idx, idx, idx, idx] = variances
        return build_covariance_jet(D, dD, ddD)


@dataclass(frozen=True)
class LogCholeskyParametrisation:
    """Correlated random effects via ``D = L Lᵀ``.

    δ fills the lower triangle of L row by row (``np.tril_indices``
    order); diagonal entries enter through ``exp`` so L always has a
    positive diagonal and D is positive definite for every real δ.
    """

    @property
    def name(self) -> str:
        return "cholesky"

    def dimension(self, n_delta: int) -> int:
        q = int(round((math.sqrt(8 * n_delta + 1) - 1) / 2))
        if q * (q + 1) // 2 != n_delta:
            msg = (
                f"Log-Cholesky parametrisation needs q(q+1)/2 parameters; "
                f"{n_delta} is not a triangular number."
            )
            raise ShapeMismatchError(msg)
        return q

    def evaluate(self, delta: np.ndarray, order: int) -> CovarianceJet:
        delta = np.asarray(delta, dtype=np.float64).reshape(-1)
        r = delta.size
        q = self.dimension(r)
        rows, cols = np.tril_indices(q)
        on_diag = rows == cols

        L = np.zeros((q, q))
        L[rows, cols] = np.where(on_diag, np.exp(delta), delta)
        D = L @ L.T

        dD = ddD = None
        if order >= 1:
            dL = np.zeros((q, q, r))
            dL[rows, cols, np.arange(r)] = np.where(on_diag, np.exp(delta), 1.0)
            half = np.einsum("ijr,kj->ikr", dL, L)
            dD = half + half.transpose(1, 0, 2)
        if order >= 2:
            ddL = np.zeros((q, q, r, r))
            k = np.flatnonzero(on_diag)
            ddL[rows[k], cols[k], k, k] = np.exp(delta[k])
            curv = np.einsum("ijrs,kj->ikrs", ddL, L)
            cross = np.einsum("ijr,kjs->ikrs", dL, dL)
            ddD = curv + curv.transpose(1, 0, 2, 3) + cross + cross.transpose(0, 1, 3, 2)
        return build_covariance_jet(D, dD, ddD)


# ------------------------------------------------------------------ #
# Registry
# ------------------------------------------------------------------ #

_PARAMETRISATIONS: dict[str, type] = {
    "diag-matrix-logarithm": DiagonalLogParametrisation,
    "cholesky": LogCholeskyParametrisation,
}


def register_covariance(name: str, cls: type) -> None:
    """Register a covariance parametrisation class under *name*.

    Raises:
        TypeError: If *cls* does not satisfy
            :class:`CovarianceParametrisation`.
    """
    try:
        instance = cls()
    except Exception:  # noqa: BLE001
        msg = f"{cls!r} could not be instantiated for protocol check."
        raise TypeError(msg) from None
    if not isinstance(instance, CovarianceParametrisation):
        msg = f"{cls!r} does not implement the CovarianceParametrisation protocol."
        raise TypeError(msg)
    _PARAMETRISATIONS[name] = cls


def resolve_covariance(
    kind: str | CovarianceParametrisation,
) -> CovarianceParametrisation:
    """Resolve a covariance type tag (or instance) to a parametrisation.

    Raises:
        ValueError: If *kind* is a string that is not registered.
    """
    if isinstance(kind, CovarianceParametrisation):
        return kind
    if kind not in _PARAMETRISATIONS:
        available = ", ".join(sorted(_PARAMETRISATIONS))
        msg = f"Unknown covariance type {kind!r}.  Available types: {available}."
        raise ValueError(msg)
    logger.debug("Resolved covariance parametrisation %r", kind)
    instance: CovarianceParametrisation = _PARAMETRISATIONS[kind]()
    return instance
