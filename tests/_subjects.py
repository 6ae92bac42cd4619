"""Closed-form subjects shared by the test modules.

Every collaborator here is a finite sum of separable products
``c(slot) · Π_v f_v(φ_v)`` whose factors are powers or exponentials,
so φ-sensitivities of any order are exact and finite-difference
comparisons of the assembled derivatives are meaningful at every
order.

The reference subject has m = 4 mixed-effect parameters:

* ``Y_i  = φ0 · exp(−φ1 · t[ind_y[i]])``      measurement prediction
* ``T_j  = c_j · φ2 / φ1``                    predicted event time
* ``R_j  = φ0 · φ2 − ρ_j``                    root value at the event
* ``σ_y  = s_k · φ0^½`` on the measurement grid
* ``σ_t  = φ3`` on the event grid (``ParameterScale``)

and ``φ = exp(A β + B b + c)`` with random effects on the first two
entries.
"""

from __future__ import annotations

import itertools
from collections import Counter
from dataclasses import dataclass

import numpy as np

from nlme_subject import (
    ChannelJet,
    ExperimentModel,
    ExponentialMixedEffectMap,
    MixedEffectModel,
    ParameterScale,
    Trajectory,
)

# A factor is ("pow", p) for x**p or ("exp", s) for exp(s * x); s may
# be a per-slot array.
Factor = tuple[str, object]
Term = tuple[np.ndarray, dict[int, Factor]]


def _factor_derivative(factor: Factor, x: float, n: int) -> np.ndarray | float:
    kind, param = factor
    if kind == "pow":
        coef = 1.0
        for j in range(n):
            coef *= param - j
        if coef == 0.0:
            return 0.0
        return coef * x ** (param - n)
    s = np.asarray(param, dtype=float)
    return s**n * np.exp(s * x)


def _term_value(term: Term, counts: Counter, phi: np.ndarray, n: int) -> np.ndarray:
    coef, factors = term
    out = np.broadcast_to(np.asarray(coef, dtype=float), (n,)).copy()
    for v, c in counts.items():
        if c and v not in factors:
            return np.zeros(n)
    for v, factor in factors.items():
        out = out * _factor_derivative(factor, float(phi[v]), counts.get(v, 0))
    return out


def channel_jet(terms: list[Term], phi: np.ndarray, n: int, supply: int) -> ChannelJet:
    """Values and φ-derivatives up to *supply* of a sum of product terms."""
    m = phi.size
    value = sum(_term_value(t, Counter(), phi, n) for t in terms) if terms else np.zeros(n)
    derivatives = []
    for k in range(1, supply + 1):
        d = np.zeros((n,) + (m,) * k)
        for idx in itertools.product(range(m), repeat=k):
            counts = Counter(idx)
            d[(slice(None),) + idx] = sum(_term_value(t, counts, phi, n) for t in terms)
        derivatives.append(d)
    return ChannelJet(value=np.asarray(value, dtype=float), derivatives=tuple(derivatives))


# ------------------------------------------------------------------ #
# Collaborators
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class DecaySimulator:
    """Exponential decay with one event family; see module docstring.

    ``max_supplied`` caps the sensitivity orders returned, to mimic a
    simulator that only provides first and second order.
    """

    event_coef: tuple[float, ...] = (1.0, 1.5)
    root_offset: tuple[float, ...] = (1.7, 1.9)
    max_supplied: int = 4

    def simulate(self, t, phi, kappa, order, *, ind_y, ind_t):
        supply = min(order, self.max_supplied)
        times = np.asarray(t, dtype=float)[ind_y]
        n_y, n_t = len(ind_y), len(ind_t)
        c = np.asarray(self.event_coef, dtype=float)[ind_t]
        rho = np.asarray(self.root_offset, dtype=float)[ind_t]
        Y = channel_jet([(np.ones(n_y), {0: ("pow", 1), 1: ("exp", -times)})], phi, n_y, supply)
        T = channel_jet([(c, {2: ("pow", 1), 1: ("pow", -1)})], phi, n_t, supply)
        R = channel_jet(
            [(np.ones(n_t), {0: ("pow", 1), 2: ("pow", 1)}), (-rho, {})], phi, n_t, supply
        )
        return Trajectory(Y=Y, T=T, R=R)


@dataclass(frozen=True)
class PowerScale:
    """``σ_k = s_k · φ[index] ** power`` on the grid."""

    base: tuple[float, ...]
    index: int = 0
    power: float = 0.5

    def evaluate(self, phi, n_grid, order):
        base = np.broadcast_to(np.asarray(self.base, dtype=float), (n_grid,))
        return channel_jet([(base, {self.index: ("pow", self.power)})], phi, n_grid, order)


# ------------------------------------------------------------------ #
# Reference subject
# ------------------------------------------------------------------ #


@dataclass
class Subject:
    """Model and evaluation point bundled for ``subject_objective``."""

    model: MixedEffectModel | ExperimentModel
    beta: np.ndarray
    b: np.ndarray
    delta: np.ndarray
    t: np.ndarray
    Ym: np.ndarray
    Tm: np.ndarray
    ind_y: np.ndarray
    ind_t: np.ndarray
    kappa: object = None

    def args(self) -> tuple:
        return (
            self.model,
            self.beta,
            self.b,
            self.kappa,
            self.delta,
            self.t,
            self.Ym,
            self.Tm,
            self.ind_y,
            self.ind_t,
        )


def make_experiment(
    q: int = 2,
    *,
    noise_model: str = "normal",
    max_supplied: int = 4,
) -> ExperimentModel:
    """Reference experiment with *q* random effects on the first φ entries."""
    A = np.array(
        [
            [1.0, 0.0, 0.0],
            [0.0, 1.0, 0.0],
            [0.3, 0.0, 1.0],
            [0.0, 0.0, 0.5],
        ]
    )
    B = np.zeros((4, q))
    B[0, 0] = 1.0
    if q >= 2:
        B[1, 1] = 0.8
        B[2, 0] = 0.25
    offset = np.array([0.0, 0.0, 0.0, np.log(0.3)])
    return ExperimentModel(
        phi_map=ExponentialMixedEffectMap(A=A, B=B, offset=offset),
        simulator=DecaySimulator(max_supplied=max_supplied),
        noise_scale=PowerScale(base=(0.2, 0.25, 0.3, 0.35)),
        time_scale=ParameterScale(index=3, transform="identity"),
        noise_model=noise_model,
    )


def make_subject(
    q: int = 2,
    *,
    covariance_type: str = "diag-matrix-logarithm",
    noise_model: str = "normal",
    max_supplied: int = 4,
    seed: int = 0,
) -> Subject:
    """Reference subject at a random, well-conditioned point."""
    rng = np.random.default_rng(seed)
    experiment = make_experiment(q, noise_model=noise_model, max_supplied=max_supplied)
    model = MixedEffectModel(experiments=[experiment], covariance_type=covariance_type)
    r = q if covariance_type == "diag-matrix-logarithm" else q * (q + 1) // 2
    return Subject(
        model=model,
        beta=np.array([0.4, -0.3, 0.1]) + 0.05 * rng.standard_normal(3),
        b=0.2 * rng.standard_normal(q),
        delta=np.full(r, -0.5) + 0.1 * rng.standard_normal(r),
        t=np.array([0.5, 1.0, 2.0, 4.0]),
        Ym=np.array([1.3, 1.0, 0.6, 0.25]),
        Tm=np.array([0.9, 1.6]),
        ind_y=np.array([0, 1, 2, 3, 3]),
        ind_t=np.array([0, 1, 1]),
    )
