from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol

import numpy as np
from numpy.typing import NDArray

from .errors import EvaluationFailure, OptimizationFailed
from .utils.utils import hash_dict, to_builtin, validate_positive_int

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

logger = logging.getLogger(__name__)




class Evaluator(Protocol):
    """Scoring contract shared by every search strategy.

    Must return a score in [0, 1] and be pure given fixed inputs and a fixed
    random seed. It may be expensive and may raise.
    """

    def __call__(self, algorithm_id: str, parameters: dict[str, Any], metric: str) -> float: ...


class SeededEvaluator:
    """Deterministic stand-in for a real trainer.

    The score combines a per-algorithm baseline, a smooth response to the
    numeric parameters and a small hash-derived jitter. Identical inputs
    always give identical scores.

    Example:
        >>> evaluator = SeededEvaluator(seed=7)
        >>> evaluator("neural_network", {"learning_rate": 0.01}, "accuracy") == \\
        ...     evaluator("neural_network", {"learning_rate": 0.01}, "accuracy")
        True
    """

    def __init__(self, seed: int = 0, jitter: float = 0.05) -> None:
        self.seed = seed
        self.jitter = jitter

    @staticmethod
    def _unit(digest: str) -> float:
        return int(digest[:8], 16) / 0xFFFFFFFF

    def __call__(self, algorithm_id: str, parameters: dict[str, Any], metric: str) -> float:
        baseline = self._unit(hash_dict({"id": algorithm_id, "metric": metric, "seed": self.seed}))
        noise = self._unit(
            hash_dict({"id": algorithm_id, "metric": metric, "seed": self.seed, "params": parameters})
        )

        # Each numeric parameter has a hidden optimum derived from its name.
        responses = []
        for name in sorted(parameters):
            value = parameters[name]
            if isinstance(value, (bool, np.bool_)) or not isinstance(value, (int, float, np.number)):
                continue
            optimum = self._unit(hash_dict({"name": name, "id": algorithm_id, "seed": self.seed}))
            position = (np.tanh(np.log10(abs(float(value)) + 1e-12) / 2) + 1) / 2
            responses.append(np.exp(-((position - optimum) ** 2) / 0.05))
        response = float(np.mean(responses)) if responses else 0.5

        score = 0.35 + 0.25 * baseline + 0.35 * response + self.jitter * (noise - 0.5)
        return float(np.clip(score, 0.0, 1.0))

    def __repr__(self) -> str:
        return f"SeededEvaluator(seed={self.seed})"




@dataclass
class EvaluationResult:
    """Result of a single candidate evaluation.

    Attributes:
        parameters: The candidate configuration.
        score: Score in [0, 1] (NaN if the evaluation failed).
        total_time: Wall-clock evaluation time.
        success: Whether evaluation succeeded.
        error: Failure raised by the scorer, if any.
    """

    parameters: dict[str, Any]
    score: float
    total_time: float
    success: bool = True
    error: EvaluationFailure | None = None


@dataclass
class BatchEvaluationResult:
    """Result of batch evaluation.

    Attributes:
        scores: Score per candidate, NaN for failed candidates.
        results: Individual evaluation results in candidate order.
        best_idx: Index of best candidate (-1 when nothing succeeded).
        best_score: Best score achieved (NaN when nothing succeeded).
        total_time: Total batch evaluation time.
    """

    scores: NDArray[np.float64]
    results: list[EvaluationResult]
    best_idx: int
    best_score: float
    total_time: float

    @property
    def failures(self) -> list[EvaluationFailure]:
        return [r.error for r in self.results if r.error is not None]

    @property
    def n_successful(self) -> int:
        return int(np.sum(np.isfinite(self.scores)))

    @property
    def n_failed(self) -> int:
        return len(self.scores) - self.n_successful

    @property
    def best_parameters(self) -> dict[str, Any] | None:
        if self.best_idx < 0:
            return None
        return self.results[self.best_idx].parameters

    @classmethod
    def empty(cls) -> BatchEvaluationResult:
        return cls(np.array([], dtype=np.float64), [], -1, float("nan"), 0.0)




class SearchBudget:
    """Evaluation count and wall-clock budget for one optimization call.

    Exhausting the budget is a soft stop: strategies check ``take`` before
    each batch and return their best-so-far when nothing is granted.
    """

    def __init__(
        self,
        max_evaluations: int,
        deadline_seconds: float | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_evaluations < 0:
            msg = f"max_evaluations must be >= 0, got {max_evaluations}"
            raise ValueError(msg)
        self.max_evaluations = max_evaluations
        self.deadline_seconds = deadline_seconds
        self._clock = clock
        self._started = clock()
        self.used = 0

    @property
    def remaining(self) -> int:
        return max(0, self.max_evaluations - self.used)

    @property
    def elapsed(self) -> float:
        return self._clock() - self._started

    @property
    def expired(self) -> bool:
        return self.deadline_seconds is not None and self.elapsed >= self.deadline_seconds

    @property
    def exhausted(self) -> bool:
        return self.remaining == 0 or self.expired

    def take(self, n: int) -> int:
        """Reserve up to ``n`` evaluations; returns how many were granted."""
        if self.expired:
            return 0
        granted = min(n, self.remaining)
        self.used += granted
        return granted

    def refund(self, n: int) -> None:
        """Return evaluations that were reserved but not spent."""
        self.used = max(0, self.used - n)

    def __repr__(self) -> str:
        return (
            f"SearchBudget(used={self.used}/{self.max_evaluations}, "
            f"deadline={self.deadline_seconds})"
        )




class CandidateEvaluator:
    """Runs an :class:`Evaluator` over batches of candidates.

    Scores are validated (finite, clipped into [0, 1]). A candidate whose
    evaluation raises or returns a non-finite score is recorded as an
    :class:`EvaluationFailure` and discarded; if every candidate of a batch
    fails the batch raises :class:`OptimizationFailed` carrying the last
    underlying cause.

    Example:
        >>> evaluator = CandidateEvaluator(SeededEvaluator(seed=1), parallel=False)
        >>> batch = evaluator.evaluate_batch("ml_models", [{"max_depth": 4}], "accuracy")
        >>> batch.n_successful
        1
    """

    def __init__(
        self,
        evaluator: Evaluator,
        parallel: bool = True,
        max_workers: int = 4,
    ) -> None:
        validate_positive_int(max_workers, "max_workers")
        self.evaluator = evaluator
        self.parallel = parallel
        self.max_workers = max_workers
        self._lock = threading.Lock()
        self.n_evaluations = 0

    def evaluate(
        self,
        algorithm_id: str,
        parameters: dict[str, Any],
        metric: str,
    ) -> EvaluationResult:
        """Evaluate one candidate, converting scorer errors into a failed result."""
        parameters = to_builtin(dict(parameters))
        start = time.perf_counter()
        with self._lock:
            self.n_evaluations += 1

        try:
            raw = self.evaluator(algorithm_id, dict(parameters), metric)
            score = float(raw)
            if not np.isfinite(score):
                msg = f"Scorer returned non-finite value {raw!r}"
                raise ValueError(msg)
        except Exception as e:
            failure = EvaluationFailure(algorithm_id, parameters, f"Evaluation failed: {e}")
            failure.__cause__ = e
            logger.warning("Discarding candidate for '%s': %s", algorithm_id, e)
            return EvaluationResult(
                parameters=parameters,
                score=float("nan"),
                total_time=time.perf_counter() - start,
                success=False,
                error=failure,
            )

        if not 0.0 <= score <= 1.0:
            logger.debug("Clipping out-of-range score %.4f for '%s'", score, algorithm_id)
            score = float(np.clip(score, 0.0, 1.0))

        return EvaluationResult(
            parameters=parameters,
            score=score,
            total_time=time.perf_counter() - start,
        )

    def evaluate_batch(
        self,
        algorithm_id: str,
        candidates: Sequence[dict[str, Any]],
        metric: str,
    ) -> BatchEvaluationResult:
        """Evaluate a batch of candidates.

        Args:
            algorithm_id: Algorithm being optimized.
            candidates: Candidate configurations.
            metric: Target metric.

        Returns:
            BatchEvaluationResult with NaN scores for failed candidates.

        Raises:
            OptimizationFailed: If every candidate in a non-empty batch failed.
        """
        if not candidates:
            return BatchEvaluationResult.empty()

        start_time = time.perf_counter()
        results: list[EvaluationResult | None] = [None] * len(candidates)

        if self.parallel and len(candidates) > 1 and self.max_workers > 1:
            with ThreadPoolExecutor(max_workers=min(self.max_workers, len(candidates))) as executor:
                futures = {
                    executor.submit(self.evaluate, algorithm_id, candidate, metric): i
                    for i, candidate in enumerate(candidates)
                }
                for future in as_completed(futures):
                    results[futures[future]] = future.result()
        else:
            for i, candidate in enumerate(candidates):
                results[i] = self.evaluate(algorithm_id, candidate, metric)

        completed = [r for r in results if r is not None]
        scores = np.array([r.score for r in completed], dtype=np.float64)

        if not np.any(np.isfinite(scores)):
            failures = [r.error for r in completed if r.error is not None]
            msg = f"All {len(candidates)} candidates failed to evaluate"
            raise OptimizationFailed(algorithm_id, msg, failures) from failures[-1].cause

        best_idx = int(np.nanargmax(scores))

        return BatchEvaluationResult(
            scores=scores,
            results=completed,
            best_idx=best_idx,
            best_score=float(scores[best_idx]),
            total_time=time.perf_counter() - start_time,
        )

    def cross_validate(
        self,
        algorithm_id: str,
        parameters: dict[str, Any],
        metric: str,
        n_folds: int,
    ) -> float | None:
        """Mean held-out score over ``n_folds`` evaluations.

        Each fold is scored with ``cv_fold`` added to the parameters so a
        scorer can hold out a different split. Failed folds are skipped;
        returns None when all folds fail.
        """
        validate_positive_int(n_folds, "n_folds")
        if n_folds == 1:
            folds = [dict(parameters)]
        else:
            folds = [{**parameters, "cv_fold": i} for i in range(n_folds)]

        scores = [self.evaluate(algorithm_id, fold, metric) for fold in folds]
        valid = [r.score for r in scores if r.success]
        if not valid:
            logger.warning("All %d validation folds failed for '%s'", n_folds, algorithm_id)
            return None
        return float(np.mean(valid))

    def __repr__(self) -> str:
        return (
            f"CandidateEvaluator({self.evaluator!r}, parallel={self.parallel}, "
            f"max_workers={self.max_workers})"
        )
