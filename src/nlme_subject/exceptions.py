"""Typed failures raised while evaluating a subject objective.

Every error derives from :class:`ObjectiveError`, itself a
``ValueError``, so callers that already guard numeric code with
``except ValueError`` keep working.  The objective is a pure
evaluator: nothing here is retried, and a failure always means the
inputs (or a collaborator's output) cannot produce a trustworthy
derivative tensor.
"""

from __future__ import annotations


class ObjectiveError(ValueError):
    """Base class for all nlme_subject evaluation errors."""


class ShapeMismatchError(ObjectiveError):
    """A tensor's shape does not match its role or derivative order."""


class CovarianceError(ObjectiveError):
    """The covariance resolver produced a matrix that is not symmetric
    positive definite."""


class NonFiniteError(ObjectiveError):
    """A NaN or Inf appeared in an intermediate or output tensor.

    Attributes:
        name: Label of the offending tensor (e.g. ``"Sigma_noise"``,
            ``"ddJdbdb"``).
    """

    def __init__(self, name: str, message: str | None = None) -> None:
        self.name = name
        if message is None:
            message = f"Tensor '{name}' contains NaN or Inf values."
        super().__init__(message)


class MissingDerivativeError(ObjectiveError):
    """A collaborator did not supply a derivative the requested order needs."""


__all__ = [
    "CovarianceError",
    "MissingDerivativeError",
    "NonFiniteError",
    "ObjectiveError",
    "ShapeMismatchError",
]
