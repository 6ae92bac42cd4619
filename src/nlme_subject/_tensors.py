"""Derivative-tensor primitives shared by the kernels and the assembler.

Every derivative of a composite ``F(g(x))`` follows Faà di Bruno's
formula: the k-th derivative is a sum over the set partitions of the
k differentiation positions.  Each block of a partition takes one
derivative of the inner function of order ``len(block)``; the number
of blocks selects the order of the outer derivative.  The partition
with k singleton blocks is the pure contraction term; partitions with
larger blocks are the curvature corrections that vanish only for an
affine inner map.

Two compositions appear in the objective:

* :func:`compose_slotwise` — outer function is a per-slot likelihood
  kernel over several channels (``Y``, ``Sigma`` …), inner functions
  are the channel sensitivities with respect to φ.  Kernels are
  diagonal in the slot index, so the slot axis is summed, never
  paired.
* :func:`compose_outer` — outer function is the summed φ-derivative
  tensors, inner function is the mixed-effect map with derivatives
  keyed by the outer variables (``b``, ``beta``).

The slot-wise composition builds explicit ``np.einsum`` subscripts; the
outer one contracts one φ-axis at a time through
:class:`OuterContractionCache` so shared prefixes are built once.
Neither squeezes a singleton axis.  :func:`restore_singleton_axes` is
the only place a collaborator's squeezed output is brought back to its
full shape.
"""

from __future__ import annotations

import itertools
from collections.abc import Callable, Mapping, Sequence
from functools import lru_cache

import numpy as np

from ._typing import DerivativeKey
from .exceptions import NonFiniteError, ShapeMismatchError

MAX_ORDER = 4

# Subscript alphabets for einsum.  Output axes and the slot axis must
# never collide.
_OUT = "abcdefgh"
_SLOT = "n"


# ------------------------------------------------------------------ #
# Set partitions
# ------------------------------------------------------------------ #


@lru_cache(maxsize=None)
def set_partitions(n: int) -> tuple[tuple[tuple[int, ...], ...], ...]:
    """Return all set partitions of ``range(n)``.

    Blocks are tuples of increasing positions and appear in order of
    their smallest element, so every partition has one canonical form.

    >>> set_partitions(3)
    (((0, 1, 2),), ((0,), (1, 2)), ((0, 1), (2,)), ((0, 2), (1,)), ((0,), (1,), (2,)))
    """
    if n == 0:
        return ((),)
    result: list[tuple[tuple[int, ...], ...]] = []
    for partition in set_partitions(n - 1):
        # New element joins an existing block ...
        for i in range(len(partition)):
            blocks = list(partition)
            blocks[i] = blocks[i] + (n - 1,)
            result.append(tuple(blocks))
        # ... or opens its own block.
        result.append(partition + ((n - 1,),))
    return tuple(sorted(result, key=lambda p: (len(p), p)))


def canonical_key(labels: Sequence[str], ordering: Sequence[str]) -> DerivativeKey:
    """Sort *labels* by their position in *ordering*."""
    rank = {label: i for i, label in enumerate(ordering)}
    try:
        return tuple(sorted(labels, key=rank.__getitem__))
    except KeyError as exc:
        msg = f"Unknown derivative label {exc.args[0]!r}; expected one of {tuple(ordering)}."
        raise ValueError(msg) from None


# ------------------------------------------------------------------ #
# Shape and value guards
# ------------------------------------------------------------------ #


def restore_singleton_axes(
    arr: object,
    expected: Sequence[int],
    *,
    name: str,
) -> np.ndarray:
    """Return *arr* as a float array of exactly shape *expected*.

    Collaborators written against squeezing array libraries tend to
    drop size-1 axes, e.g. ``dphidb`` of shape ``(m,)`` instead of
    ``(m, 1)`` when the random effect is scalar.  When the shape of
    *arr* equals *expected* with some size-1 axes removed, those axes
    are re-inserted with ``np.expand_dims`` at the positions they hold
    in *expected*.  Any other difference is an error: a transposed or
    reordered tensor is never silently reshaped.

    Raises:
        ShapeMismatchError: If *arr* cannot be aligned with *expected*
            by inserting size-1 axes only.
    """
    out = np.asarray(arr, dtype=np.float64)
    expected = tuple(int(d) for d in expected)
    if out.shape == expected:
        return out

    insert_at: list[int] = []
    pos = 0
    for axis, dim in enumerate(expected):
        if pos < out.ndim and out.shape[pos] == dim:
            pos += 1
        elif dim == 1:
            insert_at.append(axis)
        else:
            break
    else:
        if pos == out.ndim:
            return np.expand_dims(out, axis=tuple(insert_at))

    msg = f"'{name}' has shape {out.shape}, expected {expected}."
    raise ShapeMismatchError(msg)


def check_finite(arr: np.ndarray | float, name: str, enabled: bool = True) -> None:
    """Raise :class:`NonFiniteError` if *arr* contains NaN or Inf."""
    if enabled and not np.all(np.isfinite(arr)):
        raise NonFiniteError(name)


def symmetric_axis_groups(labels: Sequence[str]) -> list[list[int]]:
    """Group tensor axes that differentiate the same variable."""
    groups: dict[str, list[int]] = {}
    for axis, label in enumerate(labels):
        groups.setdefault(label, []).append(axis)
    return [axes for axes in groups.values() if len(axes) > 1]


def max_asymmetry(tensor: np.ndarray, axes: Sequence[int]) -> float:
    """Largest ``|T - T_σ|`` over all permutations σ of *axes*."""
    worst = 0.0
    base = list(range(tensor.ndim))
    for perm in itertools.permutations(axes):
        order = base.copy()
        for src, dst in zip(axes, perm):
            order[src] = dst
        diff = np.max(np.abs(tensor - np.transpose(tensor, order)), initial=0.0)
        worst = max(worst, float(diff))
    return worst


# ------------------------------------------------------------------ #
# Slot-wise composition: kernel partials ∘ channel sensitivities
# ------------------------------------------------------------------ #


def compose_slotwise(
    partials: Callable[[DerivativeKey], np.ndarray | None],
    channels: Sequence[str],
    sensitivities: Mapping[str, Sequence[np.ndarray | None]],
    order: int,
    n_phi: int,
) -> np.ndarray:
    """Order-*order* φ-derivative of ``Σ_i ℓ(u_1(φ)_i, …, u_C(φ)_i)``.

    Args:
        partials: Lookup returning the per-slot kernel partial ``(n,)``
            for a canonical channel multiset, or ``None`` for an
            identically zero partial.
        channels: Channel names in canonical order.
        sensitivities: ``channel -> [d1, d2, d3, d4]`` where ``dk`` has
            shape ``(n, m, …, m)`` with k φ-axes, or ``None`` when that
            sensitivity is zero.
        order: Derivative order, 1 to 4.
        n_phi: Length m of φ.

    Returns:
        Symmetric tensor of shape ``(m,) * order``.
    """
    out = np.zeros((n_phi,) * order)
    out_subscript = _OUT[:order]

    for partition in set_partitions(order):
        n_blocks = len(partition)
        for assignment in itertools.product(channels, repeat=n_blocks):
            kernel = partials(canonical_key(assignment, channels))
            if kernel is None:
                continue

            operands: list[np.ndarray] = [kernel]
            subscripts = [_SLOT]
            for block, channel in zip(partition, assignment):
                sens = sensitivities[channel]
                g = sens[len(block) - 1] if len(block) <= len(sens) else None
                if g is None:
                    break
                operands.append(g)
                subscripts.append(_SLOT + "".join(_OUT[p] for p in block))
            else:
                expr = ",".join(subscripts) + "->" + out_subscript
                out += np.einsum(expr, *operands, optimize=True)
    return out


# ------------------------------------------------------------------ #
# Outer composition: φ-tensors ∘ mixed-effect map
# ------------------------------------------------------------------ #


class OuterContractionCache:
    """Partial contractions of the φ-tensors with inner derivatives.

    ``get(n, keys)`` is ``Fn`` contracted, one φ-axis at a time, with
    the inner derivative of each key in *keys*.  The result keeps the
    ``n - len(keys)`` uncontracted φ-axes first, followed by the
    variable axes of every block in turn.  Each entry is built from
    the entry one key shorter, so slots that share a prefix share its
    contraction: ``(b, b, b, beta)`` extends the ``F4 · φ_b · φ_b · φ_b``
    tensor that ``(b, b, b, b)`` already built.

    One cache is valid for one set of φ-tensors and one inner map.
    """

    def __init__(
        self,
        phi_tensors: Sequence[np.ndarray | None],
        inner: Callable[[DerivativeKey], np.ndarray | None],
    ) -> None:
        self.phi_tensors = phi_tensors
        self.inner = inner
        self.contractions = 0
        self._entries: dict[tuple[int, tuple[DerivativeKey, ...]], np.ndarray | None] = {}

    def __contains__(self, entry: tuple[int, tuple[DerivativeKey, ...]]) -> bool:
        return entry in self._entries

    def get(self, n_blocks: int, keys: tuple[DerivativeKey, ...]) -> np.ndarray | None:
        """``F_{n_blocks}`` contracted with the inner derivatives of *keys*."""
        entry = (n_blocks, keys)
        if entry in self._entries:
            return self._entries[entry]

        if not keys:
            F = self.phi_tensors[n_blocks - 1] if n_blocks <= len(self.phi_tensors) else None
            value = None if F is None else np.asarray(F, dtype=np.float64)
        else:
            prefix = self.get(n_blocks, keys[:-1])
            g = self.inner(keys[-1])
            if prefix is None or g is None:
                value = None
            else:
                # Fn is symmetric, so the leading φ-axis stands for any of them.
                value = np.tensordot(prefix, g, axes=([0], [0]))
                self.contractions += 1
        self._entries[entry] = value
        return value


def compose_outer(
    phi_tensors: Sequence[np.ndarray | None],
    inner: Callable[[DerivativeKey], np.ndarray | None],
    variables: Sequence[str],
    ordering: Sequence[str],
    dims: Mapping[str, int],
    cache: OuterContractionCache | None = None,
) -> np.ndarray:
    """Total derivative of ``F(φ(x))`` along the variable sequence.

    Partitions whose blocks carry the same variable multisets differ
    only by an axis permutation, so each distinct multiset of blocks is
    contracted once (through *cache*) and transposed into place.

    Args:
        phi_tensors: ``[F1, F2, F3, F4]``, the φ-derivatives of the
            outer function, ``Fk`` of shape ``(m,) * k``; ``None``
            entries are treated as zero.
        inner: Lookup returning the inner derivative for a canonical
            variable multiset, shape ``(m, *dims)`` with axes in
            canonical order, or ``None`` when it is identically zero.
        variables: Differentiation variables in output-axis order,
            e.g. ``("b", "b", "beta")``.
        ordering: Canonical variable order, e.g. ``("b", "beta")``.
        dims: Length of each variable.
        cache: Contractions shared with other calls on the same
            *phi_tensors* and *inner*.  A private cache is used when
            omitted.

    Returns:
        Tensor with one axis per entry of *variables*.
    """
    if cache is None:
        cache = OuterContractionCache(phi_tensors, inner)
    order = len(variables)
    out = np.zeros(tuple(dims[v] for v in variables))
    rank = {label: i for i, label in enumerate(ordering)}

    for partition in set_partitions(order):
        blocks = []
        for block in partition:
            positions = sorted(block, key=lambda p: (rank[variables[p]], p))
            blocks.append((tuple(variables[p] for p in positions), positions))
        blocks.sort(key=lambda kb: (len(kb[0]), [rank[v] for v in kb[0]]))

        term = cache.get(len(blocks), tuple(key for key, _ in blocks))
        if term is None:
            continue
        source = [p for _, positions in blocks for p in positions]
        out += np.transpose(term, np.argsort(source))
    return out
