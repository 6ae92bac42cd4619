"""Typed result objects for subject-objective evaluations.

:class:`ObjectiveResult` is a frozen dataclass with one optional field
per derivative slot.  A field is ``None`` exactly when the requested
:class:`DerivativeOrder` is below the slot's order, so "compute only
what is asked" is visible in the type rather than in the length of a
returned tuple.

Results provide:

* **Attribute access** — ``result.ddJdbdb``.
* **Dict-like access** — ``result["ddJdbdb"]``, ``result.get(key)``,
  ``"key" in result``.
* **Legacy tuple** — :meth:`ObjectiveResult.as_tuple` returns the
  slots in reference order, truncated to the order's slot count.
* **Serialisation** — ``.to_dict()`` returns native Python types.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, fields
from typing import TYPE_CHECKING, Any, ClassVar

import numpy as np

if TYPE_CHECKING:
    from ._context import EvaluationContext


# ------------------------------------------------------------------ #
# Derivative orders and slot layout
# ------------------------------------------------------------------ #


class DerivativeOrder(enum.IntEnum):
    """Highest total derivative order computed by one evaluation."""

    VALUE = 0
    GRAD1 = 1
    GRAD2 = 2
    GRAD3 = 3
    GRAD4 = 4

    @property
    def slot_count(self) -> int:
        """Number of reference-order slots this order fills."""
        return _SLOT_COUNTS[self]

    @classmethod
    def from_slot_count(cls, n: int) -> DerivativeOrder:
        """Map a legacy requested-output count to an order.

        ``1 → VALUE``, ``2 → GRAD1``, ``3–8 → GRAD2``,
        ``9–14 → GRAD3``, ``15–20 → GRAD4``.

        Raises:
            ValueError: If *n* is outside ``1..20``.
        """
        if n < 1 or n > 20:
            msg = f"Requested output count must be between 1 and 20, got {n}."
            raise ValueError(msg)
        if n == 1:
            return cls.VALUE
        if n == 2:
            return cls.GRAD1
        if n <= 8:
            return cls.GRAD2
        if n <= 14:
            return cls.GRAD3
        return cls.GRAD4

    @classmethod
    def coerce(cls, order: int | DerivativeOrder) -> DerivativeOrder:
        """Accept an enum member or its integer value (0–4)."""
        try:
            return cls(int(order))
        except ValueError:
            msg = f"Derivative order must be between 0 and 4, got {order!r}."
            raise ValueError(msg) from None


_SLOT_COUNTS = {
    DerivativeOrder.VALUE: 1,
    DerivativeOrder.GRAD1: 2,
    DerivativeOrder.GRAD2: 8,
    DerivativeOrder.GRAD3: 14,
    DerivativeOrder.GRAD4: 20,
}

SLOTS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("J", ()),
    ("dJdb", ("b",)),
    ("ddJdbdb", ("b", "b")),
    ("ddJdbdbeta", ("b", "beta")),
    ("ddJdbddelta", ("b", "delta")),
    ("ddJdbetadbeta", ("beta", "beta")),
    ("ddJddeltaddelta", ("delta", "delta")),
    ("ddJdbetaddelta", ("beta", "delta")),
    ("dddJdbdbdb", ("b", "b", "b")),
    ("dddJdbdbdbeta", ("b", "b", "beta")),
    ("dddJdbdbddelta", ("b", "b", "delta")),
    ("dddJdbdbetadbeta", ("b", "beta", "beta")),
    ("dddJdbddeltaddelta", ("b", "delta", "delta")),
    ("dddJdbdbetaddelta", ("b", "beta", "delta")),
    ("ddddJdbdbdbdb", ("b", "b", "b", "b")),
    ("ddddJdbdbdbdbeta", ("b", "b", "b", "beta")),
    ("ddddJdbdbdbetadbeta", ("b", "b", "beta", "beta")),
    ("ddddJdbdbdbddelta", ("b", "b", "b", "delta")),
    ("ddddJdbdbddeltaddelta", ("b", "b", "delta", "delta")),
    ("ddddJdbdbdbetaddelta", ("b", "b", "beta", "delta")),
)
"""The twenty reference slots: name and differentiation variables."""

EXTRA_SLOTS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("dJdbeta", ("beta",)),
    ("dJddelta", ("delta",)),
)
"""First derivatives computed alongside ``dJdb`` but outside the tuple."""

STRUCTURAL_ZEROS: frozenset[str] = frozenset(
    {"ddJdbetaddelta", "dddJdbdbetaddelta", "ddddJdbdbdbetaddelta"}
)
"""Slots that mix β and δ; φ never depends on δ and the prior never
on β, so these are zero for every input."""

SLOT_VARIABLES: dict[str, tuple[str, ...]] = dict(SLOTS + EXTRA_SLOTS)

_VARIABLE_RANK = {"b": 0, "beta": 1, "delta": 2}


# ------------------------------------------------------------------ #
# Serialisation helper
# ------------------------------------------------------------------ #


def _numpy_to_python(obj: Any) -> Any:
    """Recursively convert NumPy scalars/arrays to Python-native types."""
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, (np.integer, np.bool_)):
        return int(obj)
    if isinstance(obj, np.floating):
        return float(obj)
    if isinstance(obj, enum.Enum):
        return obj.name
    if isinstance(obj, dict):
        return {k: _numpy_to_python(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        converted = [_numpy_to_python(item) for item in obj]
        return type(obj)(converted)
    return obj


# ------------------------------------------------------------------ #
# Dict-compatibility mixin
# ------------------------------------------------------------------ #


class _DictAccessMixin:
    """Dict-like access convenience for result dataclasses.

    Supports ``result["key"]`` (``KeyError`` on miss),
    ``result.get(key, default)`` and ``"key" in result``.
    """

    # Fields to exclude from to_dict() serialisation.
    _EXCLUDE_FROM_DICT: ClassVar[frozenset[str]] = frozenset({"context"})

    def __getitem__(self, key: str) -> Any:
        try:
            return getattr(self, key)
        except AttributeError:
            raise KeyError(key) from None

    def get(self, key: str, default: Any = None) -> Any:
        return getattr(self, key, default)

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, str):
            return False
        return hasattr(self, key)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a plain, JSON-serialisable dictionary."""
        result: dict[str, Any] = {}
        for f in fields(self):  # type: ignore[arg-type]
            if f.name in self._EXCLUDE_FROM_DICT:
                continue
            result[f.name] = _numpy_to_python(getattr(self, f.name))
        return result


# ------------------------------------------------------------------ #
# ObjectiveResult
# ------------------------------------------------------------------ #


@dataclass(frozen=True)
class ObjectiveResult(_DictAccessMixin):
    """Subject objective ``J = J_noise + J_time + J_prior`` and derivatives.

    Every derivative tensor has one axis per differentiation variable,
    in the order spelled by its name, with the lengths q (``b``),
    p (``beta``) and r (``delta``).  Size-1 axes are never squeezed:
    with a scalar random effect ``ddJdbdb`` has shape ``(1, 1)``.

    ``ddJdbdb`` includes the Hessian jitter on its diagonal
    (``hessian_jitter``); this is a numerical safety margin for
    downstream factorisations and is not part of J.

    Attributes:
        order: The :class:`DerivativeOrder` that was evaluated.
        J: Objective value.
        J_noise, J_time, J_prior: The three additive contributions.
        hessian_jitter: Value added to the ``ddJdbdb`` diagonal.
        context: Intermediate tensors (excluded from ``to_dict``).
    """

    order: DerivativeOrder
    J: float
    J_noise: float
    J_time: float
    J_prior: float
    hessian_jitter: float = 0.0

    # ---- First order ---------------------------------------------
    dJdb: np.ndarray | None = None
    dJdbeta: np.ndarray | None = None
    dJddelta: np.ndarray | None = None

    # ---- Second order --------------------------------------------
    ddJdbdb: np.ndarray | None = None
    ddJdbdbeta: np.ndarray | None = None
    ddJdbddelta: np.ndarray | None = None
    ddJdbetadbeta: np.ndarray | None = None
    ddJddeltaddelta: np.ndarray | None = None
    ddJdbetaddelta: np.ndarray | None = None

    # ---- Third order ---------------------------------------------
    dddJdbdbdb: np.ndarray | None = None
    dddJdbdbdbeta: np.ndarray | None = None
    dddJdbdbddelta: np.ndarray | None = None
    dddJdbdbetadbeta: np.ndarray | None = None
    dddJdbddeltaddelta: np.ndarray | None = None
    dddJdbdbetaddelta: np.ndarray | None = None

    # ---- Fourth order --------------------------------------------
    ddddJdbdbdbdb: np.ndarray | None = None
    ddddJdbdbdbdbeta: np.ndarray | None = None
    ddddJdbdbdbetadbeta: np.ndarray | None = None
    ddddJdbdbdbddelta: np.ndarray | None = None
    ddddJdbdbddeltaddelta: np.ndarray | None = None
    ddddJdbdbdbetaddelta: np.ndarray | None = None

    context: EvaluationContext | None = field(default=None, repr=False, compare=False)

    def as_tuple(self, n: int | None = None) -> tuple[Any, ...]:
        """Return the reference slots in order.

        Args:
            n: Number of slots to return.  Defaults to the slot count
                of :attr:`order`; may not exceed it.

        Raises:
            ValueError: If *n* asks for slots that were not computed.
        """
        available = self.order.slot_count
        if n is None:
            n = available
        if n > available:
            msg = (
                f"{n} slots requested but order {self.order.name} "
                f"computes only {available}."
            )
            raise ValueError(msg)
        return tuple(getattr(self, name) for name, _ in SLOTS[:n])

    def derivative(self, *variables: str) -> np.ndarray | float | None:
        """Return the derivative along *variables* in the given axis order.

        ``result.derivative("beta", "b")`` is the transpose of
        ``result.ddJdbdbeta``.  A call with no variables returns J.

        Raises:
            KeyError: If no slot differentiates by that multiset.
        """
        if not variables:
            return self.J
        canonical = tuple(sorted(variables, key=lambda v: _VARIABLE_RANK.get(v, 99)))
        for name, slot_vars in SLOT_VARIABLES.items():
            if slot_vars == canonical:
                break
        else:
            raise KeyError(variables)

        tensor = getattr(self, name)
        if tensor is None or tuple(variables) == canonical:
            return tensor

        # Stable matching of requested axes to stored axes of the same label.
        remaining = list(enumerate(canonical))
        axes = []
        for var in variables:
            for j, (axis, label) in enumerate(remaining):
                if label == var:
                    axes.append(axis)
                    del remaining[j]
                    break
        return np.transpose(tensor, axes)
