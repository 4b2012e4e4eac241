"""Error taxonomy for the self-optimization engine.

Every error raised across the public surface derives from
:class:`OptimizerError` and can be rendered as a structured object with
:meth:`OptimizerError.to_dict`, carrying enough context for a caller to
decide whether to retry.
"""

from __future__ import annotations

from typing import Any


class OptimizerError(Exception):
    """Base class for engine errors."""

    retryable: bool = False

    def __init__(self, message: str, algorithm_id: str | None = None) -> None:
        self.message = message
        self.algorithm_id = algorithm_id
        super().__init__(message)

    @property
    def cause(self) -> BaseException | None:
        return self.__cause__

    def to_dict(self) -> dict[str, Any]:
        """Structured form returned at the API boundary."""
        cause = self.cause
        return {
            "error": type(self).__name__,
            "message": self.message,
            "algorithm_id": self.algorithm_id,
            "retryable": self.retryable,
            "cause": f"{type(cause).__name__}: {cause}" if cause is not None else None,
        }


class AlgorithmNotFound(OptimizerError, KeyError):
    """The algorithm id is not registered."""

    retryable = True

    def __init__(self, algorithm_id: str) -> None:
        super().__init__(f"Algorithm '{algorithm_id}' not found", algorithm_id)

    def __str__(self) -> str:
        return self.message


class NotApplicable(OptimizerError):
    """The requested operation does not apply to this algorithm."""


class OperationDisabled(NotApplicable):
    """The requested operation is switched off in the configuration."""


class AlreadyOptimizing(OptimizerError):
    """Another optimization run holds the lease for this algorithm id."""

    retryable = True

    def __init__(self, algorithm_id: str) -> None:
        super().__init__(
            f"Algorithm '{algorithm_id}' is already being optimized", algorithm_id
        )


class EvaluationFailure(OptimizerError):
    """The scoring function failed for a single candidate."""

    def __init__(
        self,
        algorithm_id: str,
        parameters: dict[str, Any],
        message: str,
    ) -> None:
        self.parameters = parameters
        super().__init__(message, algorithm_id)


class OptimizationFailed(OptimizerError):
    """The run could not produce a result (every candidate failed, or an unexpected error)."""

    retryable = True

    def __init__(
        self,
        algorithm_id: str,
        message: str,
        failures: list[EvaluationFailure] | None = None,
    ) -> None:
        self.failures = list(failures or [])
        super().__init__(message, algorithm_id)


def as_optimizer_error(algorithm_id: str, error: Exception) -> OptimizerError:
    """Express ``error`` in the engine taxonomy for per-id batch reporting.

    Errors outside the taxonomy (a failed store write, a misbehaving
    evaluator) become :class:`OptimizationFailed` with the original error
    as the cause.
    """
    if isinstance(error, OptimizerError):
        return error
    wrapped = OptimizationFailed(algorithm_id, f"Unexpected {type(error).__name__}: {error}")
    wrapped.__cause__ = error
    return wrapped
