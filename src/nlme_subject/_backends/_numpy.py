"""NumPy closed-form kernel backend (always available).

Architecture
~~~~~~~~~~~~
Every kernel is a sum of independent per-slot terms, so its partial
derivatives are diagonal in the slot index and each one is a single
``(n,)`` array.  The closed forms are tabulated by how many times each
channel is differentiated.

Gaussian tables
~~~~~~~~~~~~~~~
For ``ℓ = ½ w σ⁻² + c·log σ + const`` with ``w`` the squared residual
sum, differentiating in σ only touches two powers of σ, which gives the
short tables below.  The measurement kernel has ``c = 1`` (one
residual); the event-time kernel has ``c = 2`` (event-time residual
and root-value residual sharing σ).

Log-normal noise
~~~~~~~~~~~~~~~~
The log-normal kernel is the Gaussian kernel in ``u = log Y``.  Its
Y-partials follow from the u-partials by the univariate Faà di Bruno
formula with ``u' = 1/Y, u'' = −1/Y², u''' = 2/Y³, u'''' = −6/Y⁴``::

    ∂_Y    = f_u u'
    ∂_Y²   = f_uu u'² + f_u u''
    ∂_Y³   = f_uuu u'³ + 3 f_uu u' u'' + f_u u'''
    ∂_Y⁴   = f_uuuu u'⁴ + 6 f_uuu u'² u'' + f_uu (3 u''² + 4 u' u''') + f_u u''''

applied at every fixed number of σ-derivatives.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .._typing import DerivativeKey
from . import KernelPartials

_LOG_2PI = float(np.log(2.0 * np.pi))


def _gaussian_table(
    res: np.ndarray,
    sigma: np.ndarray,
    order: int,
) -> dict[tuple[int, int], np.ndarray]:
    """Partials of ``½ res² σ⁻² + log σ`` keyed by (res-order, σ-order).

    Zero entries are omitted.
    """
    s = sigma
    table: dict[tuple[int, int], np.ndarray] = {}
    if order >= 1:
        table[(1, 0)] = res / s**2
        table[(0, 1)] = -(res**2) / s**3 + 1.0 / s
    if order >= 2:
        table[(2, 0)] = 1.0 / s**2
        table[(1, 1)] = -2.0 * res / s**3
        table[(0, 2)] = 3.0 * res**2 / s**4 - 1.0 / s**2
    if order >= 3:
        table[(2, 1)] = -2.0 / s**3
        table[(1, 2)] = 6.0 * res / s**4
        table[(0, 3)] = -12.0 * res**2 / s**5 + 2.0 / s**3
    if order >= 4:
        table[(2, 2)] = 6.0 / s**4
        table[(1, 3)] = -24.0 * res / s**5
        table[(0, 4)] = 60.0 * res**2 / s**6 - 6.0 / s**4
    return table


def _noise_key(n_y: int, n_sigma: int) -> DerivativeKey:
    return ("Y",) * n_y + ("Sigma",) * n_sigma


def _log_chain_coefficients(Y: np.ndarray) -> dict[tuple[int, int], np.ndarray]:
    """Faà di Bruno weights B[i, a] for ``u = log Y``: ∂_Y^i = Σ_a f_{u^a} B[i, a]."""
    u1 = 1.0 / Y
    u2 = -1.0 / Y**2
    u3 = 2.0 / Y**3
    u4 = -6.0 / Y**4
    return {
        (1, 1): u1,
        (2, 2): u1**2,
        (2, 1): u2,
        (3, 3): u1**3,
        (3, 2): 3.0 * u1 * u2,
        (3, 1): u3,
        (4, 4): u1**4,
        (4, 3): 6.0 * u1**2 * u2,
        (4, 2): 3.0 * u2**2 + 4.0 * u1 * u3,
        (4, 1): u4,
    }


@dataclass(frozen=True)
class NumpyBackend:
    """Closed-form kernel partials.

    The class is a frozen dataclass with no instance state — it exists
    solely to namespace the kernel methods behind the
    :class:`~nlme_subject._backends.BackendProtocol` interface.
    """

    @property
    def name(self) -> str:
        return "numpy"

    @property
    def is_available(self) -> bool:  # noqa: PLR6301
        return True

    # ================================================================ #
    # Measurement noise
    # ================================================================ #

    def normal_noise(
        self,
        Y: np.ndarray,
        Ym: np.ndarray,
        sigma: np.ndarray,
        order: int,
    ) -> tuple[np.ndarray, KernelPartials]:
        with np.errstate(divide="ignore", invalid="ignore"):
            res = Y - Ym
            values = 0.5 * (res / sigma) ** 2 + 0.5 * (_LOG_2PI + 2.0 * np.log(sigma))
            table = _gaussian_table(res, sigma, order)
        return values, {_noise_key(a, j): v for (a, j), v in table.items()}

    def lognormal_noise(
        self,
        Y: np.ndarray,
        Ym: np.ndarray,
        sigma: np.ndarray,
        order: int,
    ) -> tuple[np.ndarray, KernelPartials]:
        with np.errstate(divide="ignore", invalid="ignore"):
            log_ym = np.log(Ym)
            res = np.log(Y) - log_ym
            values = (
                0.5 * (res / sigma) ** 2
                + 0.5 * (_LOG_2PI + 2.0 * np.log(sigma))
                + log_ym
            )
            table = _gaussian_table(res, sigma, order)
            weights = _log_chain_coefficients(Y) if order >= 1 else {}

        partials: KernelPartials = {}
        for n_sigma in range(order + 1):
            if n_sigma >= 1 and (0, n_sigma) in table:
                partials[_noise_key(0, n_sigma)] = table[(0, n_sigma)]
            for n_y in range(1, order - n_sigma + 1):
                total = None
                for a in range(1, n_y + 1):
                    f = table.get((a, n_sigma))
                    if f is None:
                        continue
                    term = f * weights[(n_y, a)]
                    total = term if total is None else total + term
                if total is not None:
                    partials[_noise_key(n_y, n_sigma)] = total
        return values, partials

    # ================================================================ #
    # Event times
    # ================================================================ #

    def normal_time(
        self,
        T: np.ndarray,
        Tm: np.ndarray,
        R: np.ndarray,
        sigma: np.ndarray,
        order: int,
    ) -> tuple[np.ndarray, KernelPartials]:
        s = sigma
        with np.errstate(divide="ignore", invalid="ignore"):
            t = T - Tm
            w = t**2 + R**2
            values = 0.5 * w / s**2 + _LOG_2PI + 2.0 * np.log(s)

            partials: KernelPartials = {}
            if order >= 1:
                partials[("T",)] = t / s**2
                partials[("R",)] = R / s**2
                partials[("Sigma",)] = -w / s**3 + 2.0 / s
            if order >= 2:
                partials[("T", "T")] = 1.0 / s**2
                partials[("R", "R")] = 1.0 / s**2
                partials[("T", "Sigma")] = -2.0 * t / s**3
                partials[("R", "Sigma")] = -2.0 * R / s**3
                partials[("Sigma", "Sigma")] = 3.0 * w / s**4 - 2.0 / s**2
            if order >= 3:
                partials[("T", "T", "Sigma")] = -2.0 / s**3
                partials[("R", "R", "Sigma")] = -2.0 / s**3
                partials[("T", "Sigma", "Sigma")] = 6.0 * t / s**4
                partials[("R", "Sigma", "Sigma")] = 6.0 * R / s**4
                partials[("Sigma", "Sigma", "Sigma")] = -12.0 * w / s**5 + 4.0 / s**3
            if order >= 4:
                partials[("T", "T", "Sigma", "Sigma")] = 6.0 / s**4
                partials[("R", "R", "Sigma", "Sigma")] = 6.0 / s**4
                partials[("T", "Sigma", "Sigma", "Sigma")] = -24.0 * t / s**5
                partials[("R", "Sigma", "Sigma", "Sigma")] = -24.0 * R / s**5
                partials[("Sigma", "Sigma", "Sigma", "Sigma")] = 60.0 * w / s**6 - 12.0 / s**4
        return values, partials
