"""Mixed-effect maps: (β, b) → φ with mixed derivatives.

The mixed-effect parameter φ (length m) combines the fixed effects β
(length p) with the random effects b (length q).  A map returns a
:class:`MixedEffectJet` holding φ and its derivatives keyed by the
sorted multiset of differentiation variables, with ``"b"`` ordered
before ``"beta"``::

    jet[("b",)]               (m, q)
    jet[("beta",)]            (m, p)
    jet[("b", "b")]           (m, q, q)
    jet[("b", "beta")]        (m, q, p)
    jet[("b", "b", "beta")]   (m, q, q, p)
    ...

First- and second-order entries are mandatory whenever the requested
derivative order reaches them.  Higher entries are optional; a missing
key means that derivative is identically zero.
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import Callable, Collection, Mapping
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

import numpy as np
from typing_extensions import Self

from ._typing import DerivativeKey

logger = logging.getLogger(__name__)

VARIABLES: tuple[str, str] = ("b", "beta")


def derivative_keys(max_order: int, *, max_beta: int | None = None) -> list[DerivativeKey]:
    """All canonical (b, beta) multisets of size 1 to *max_order*."""
    keys: list[DerivativeKey] = []
    for k in range(1, max_order + 1):
        for key in itertools.combinations_with_replacement(VARIABLES, k):
            if max_beta is not None and key.count("beta") > max_beta:
                continue
            keys.append(key)
    return keys


@dataclass(frozen=True)
class MixedEffectJet:
    """φ and its (b, β)-derivatives.

    Attributes:
        phi: Mixed-effect parameter vector ``(m,)``.
        derivatives: Canonical key → tensor of shape ``(m, *dims)``.
    """

    phi: np.ndarray
    derivatives: Mapping[DerivativeKey, np.ndarray] = field(default_factory=dict)

    def get(self, key: DerivativeKey) -> np.ndarray | None:
        return self.derivatives.get(tuple(key))


@runtime_checkable
class MixedEffectMap(Protocol):
    """Interface every mixed-effect map implements."""

    def evaluate(
        self,
        beta: np.ndarray,
        b: np.ndarray,
        keys: Collection[DerivativeKey],
    ) -> MixedEffectJet:
        """Return φ and at least the derivatives listed in *keys*.

        Keys absent from the returned jet are treated as zero when
        they have three or more entries and as an error otherwise.
        """
        ...


# ------------------------------------------------------------------ #
# Concrete maps
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class LinearMixedEffectMap:
    """Affine map ``φ = A β + B b + c``.

    All second and higher derivatives vanish, so the curvature terms
    of the chain rule drop out.

    Attributes:
        A: Fixed-effect design ``(m, p)``.
        B: Random-effect design ``(m, q)``.
        offset: Optional constant ``c`` of shape ``(m,)``.
    """

    A: np.ndarray
    B: np.ndarray
    offset: np.ndarray | None = None

    def evaluate(
        self,
        beta: np.ndarray,
        b: np.ndarray,
        keys: Collection[DerivativeKey],
    ) -> MixedEffectJet:
        A = np.asarray(self.A, dtype=np.float64)
        B = np.asarray(self.B, dtype=np.float64)
        phi = A @ beta + B @ b
        if self.offset is not None:
            phi = phi + np.asarray(self.offset, dtype=np.float64)

        dims = {"b": B.shape[1], "beta": A.shape[1]}
        derivs: dict[DerivativeKey, np.ndarray] = {}
        for key in keys:
            if key == ("b",):
                derivs[key] = B
            elif key == ("beta",):
                derivs[key] = A
            elif len(key) == 2:
                derivs[key] = np.zeros((phi.size,) + tuple(dims[v] for v in key))
        return MixedEffectJet(phi=phi, derivatives=derivs)


@dataclass(frozen=True)
class ExponentialMixedEffectMap:
    """Log-normal parameters ``φ = exp(A β + B b + c)``.

    Every mixed derivative has the closed form
    ``∂^k φ_j / ∂x_1…∂x_k = φ_j · Π_i C_{x_i}[j, ·]`` with
    ``C_beta = A`` and ``C_b = B``, so the map supplies derivatives of
    any order and exercises every curvature term of the chain rule.
    """

    A: np.ndarray
    B: np.ndarray
    offset: np.ndarray | None = None

    def evaluate(
        self,
        beta: np.ndarray,
        b: np.ndarray,
        keys: Collection[DerivativeKey],
    ) -> MixedEffectJet:
        A = np.asarray(self.A, dtype=np.float64)
        B = np.asarray(self.B, dtype=np.float64)
        eta = A @ beta + B @ b
        if self.offset is not None:
            eta = eta + np.asarray(self.offset, dtype=np.float64)
        phi = np.exp(eta)

        coefficients = {"b": B, "beta": A}
        derivs: dict[DerivativeKey, np.ndarray] = {}
        for key in keys:
            tensor = phi
            for var in key:
                C = coefficients[var]
                tensor = tensor[..., np.newaxis] * C.reshape(
                    (C.shape[0],) + (1,) * (tensor.ndim - 1) + (C.shape[1],)
                )
            derivs[tuple(key)] = tensor
        return MixedEffectJet(phi=phi, derivatives=derivs)


@dataclass(frozen=True)
class CallableMixedEffectMap:
    """Adapter for a model definition that exposes one callable per
    derivative, e.g. ``phi(beta, b)``, ``dphidb(beta, b)``.

    Callables may return arrays with size-1 axes squeezed away (a
    scalar random effect yields ``dphidb`` of shape ``(m,)``); the
    engine restores them before assembly.

    Attributes:
        phi: ``(beta, b) -> (m,)``.
        derivatives: Canonical key → callable ``(beta, b) -> tensor``.
    """

    phi: Callable[[np.ndarray, np.ndarray], np.ndarray]
    derivatives: Mapping[DerivativeKey, Callable[[np.ndarray, np.ndarray], np.ndarray]] = (
        field(default_factory=dict)
    )

    @classmethod
    def from_functions(
        cls,
        phi: Callable[[np.ndarray, np.ndarray], np.ndarray],
        *,
        dphidb: Callable | None = None,
        dphidbeta: Callable | None = None,
        ddphidbdb: Callable | None = None,
        ddphidbdbeta: Callable | None = None,
        ddphidbetadbeta: Callable | None = None,
    ) -> Self:
        """Build the adapter from the conventional derivative names."""
        named = {
            ("b",): dphidb,
            ("beta",): dphidbeta,
            ("b", "b"): ddphidbdb,
            ("b", "beta"): ddphidbdbeta,
            ("beta", "beta"): ddphidbetadbeta,
        }
        return cls(phi=phi, derivatives={k: f for k, f in named.items() if f is not None})

    def evaluate(
        self,
        beta: np.ndarray,
        b: np.ndarray,
        keys: Collection[DerivativeKey],
    ) -> MixedEffectJet:
        derivs: dict[DerivativeKey, np.ndarray] = {}
        for key in keys:
            fn = self.derivatives.get(tuple(key))
            if fn is not None:
                derivs[tuple(key)] = np.asarray(fn(beta, b), dtype=np.float64)
        phi = np.asarray(self.phi(beta, b), dtype=np.float64).reshape(-1)
        return MixedEffectJet(phi=phi, derivatives=derivs)
