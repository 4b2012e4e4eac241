from __future__ import annotations

import itertools
import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np

from .evaluation import SearchBudget
from .genetic_algorithm import GeneticSearch, mutate
from .parameter_space.algorithm_space import build_search_space
from .records import ImprovementRecord
from .strategy import select_strategy
from .utils.common import AlgorithmType, ImprovementType, OptimizationMethod
from .utils.config import OptimizerConfig
from .utils.utils import optimization_confidence, relative_improvement, to_builtin

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from .errors import EvaluationFailure
    from .evaluation import BatchEvaluationResult, CandidateEvaluator
    from .parameter_space.parameter_space import SearchSpace
    from .records import AlgorithmRecord
    from .registry import PerformanceStore

    BatchEvaluate = Callable[[list[dict[str, Any]]], BatchEvaluationResult]

logger = logging.getLogger(__name__)




@dataclass
class HyperparameterResult:
    """Outcome of one hyperparameter optimization call.

    Attributes:
        algorithm_id: Optimized algorithm.
        prior_parameters: Parameters before the call.
        new_parameters: Current-best parameters after the call (the prior
            parameters when nothing better was found).
        improvement: ``(best - prior) / max(prior, EPS)``; may be <= 0.
        confidence: Confidence in [0, 1].
        validation_score: Held-out score of ``new_parameters``.
        method: Strategy used.
        iterations: Evaluations spent by the search (never above the budget).
        elapsed_time: Wall-clock seconds.
        prior_score: Target metric recorded before the call.
        best_score: Best score found by the search (prior score if none).
        best_candidate: Best parameters found by the search, even if rejected.
        applied: Whether the registry now holds ``new_parameters``.
        validated: Whether the held-out score confirmed the search result.
        budget_exhausted: Whether the search stopped on its budget or deadline.
        n_failures: Candidates discarded because evaluation failed.
        version: Registry version committed for this call.
    """

    algorithm_id: str
    prior_parameters: dict[str, Any]
    new_parameters: dict[str, Any]
    improvement: float
    confidence: float
    validation_score: float
    method: OptimizationMethod
    iterations: int
    elapsed_time: float
    prior_score: float = 0.0
    best_score: float = 0.0
    best_candidate: dict[str, Any] | None = None
    applied: bool = False
    validated: bool = True
    budget_exhausted: bool = False
    n_failures: int = 0
    version: int = 0

    def to_dict(self) -> dict[str, Any]:
        return to_builtin(
            {
                "algorithm_id": self.algorithm_id,
                "prior_parameters": self.prior_parameters,
                "new_parameters": self.new_parameters,
                "improvement": self.improvement,
                "confidence": self.confidence,
                "validation_score": self.validation_score,
                "method": self.method.value,
                "iterations": self.iterations,
                "elapsed_time": self.elapsed_time,
                "prior_score": self.prior_score,
                "best_score": self.best_score,
                "applied": self.applied,
                "validated": self.validated,
                "budget_exhausted": self.budget_exhausted,
                "n_failures": self.n_failures,
                "version": self.version,
            }
        )


@dataclass
class SearchOutcome:
    """Best-seen tracking shared by all strategies."""

    best_parameters: dict[str, Any] | None = None
    best_score: float = float("-inf")
    iterations: int = 0
    budget_exhausted: bool = False
    failures: list[EvaluationFailure] = field(default_factory=list)
    trace: list[float] = field(default_factory=list)

    def update(self, batch: BatchEvaluationResult) -> bool:
        """Fold a batch in; returns True if the best improved."""
        self.iterations += len(batch.scores)
        self.failures.extend(batch.failures)
        improved = False
        for result in batch.results:
            if result.success and result.score > self.best_score:
                self.best_score = result.score
                self.best_parameters = dict(result.parameters)
                improved = True
            if result.success or self.trace:
                self.trace.append(self.best_score)
        return improved

    @property
    def found(self) -> bool:
        return self.best_parameters is not None




class MetaKnowledge:
    """Cross-run statistics used to seed meta-learned searches.

    Keeps, per algorithm type, the best parameter sets seen so far and, per
    method, how often a run improved its algorithm. Thread-safe.
    """

    def __init__(self, max_entries: int = 20) -> None:
        self.max_entries = max_entries
        self._lock = threading.Lock()
        self._best: dict[AlgorithmType, list[tuple[float, dict[str, Any]]]] = defaultdict(list)
        self._methods: dict[str, list[float]] = defaultdict(list)

    def record(
        self,
        algorithm_type: AlgorithmType,
        method: str,
        parameters: dict[str, Any] | None,
        score: float,
        improvement: float,
    ) -> None:
        with self._lock:
            self._methods[method].append(improvement)
            if parameters is not None and np.isfinite(score):
                entries = self._best[algorithm_type]
                entries.append((score, dict(parameters)))
                entries.sort(key=lambda e: e[0], reverse=True)
                del entries[self.max_entries :]

    def best_parameters(self, algorithm_type: AlgorithmType, k: int = 5) -> list[dict[str, Any]]:
        with self._lock:
            return [dict(p) for _, p in self._best.get(algorithm_type, [])[:k]]

    def method_statistics(self) -> dict[str, dict[str, float]]:
        with self._lock:
            return {
                method: {
                    "runs": len(values),
                    "success_rate": float(np.mean([v > 0 for v in values])),
                    "mean_improvement": float(np.mean(values)),
                }
                for method, values in self._methods.items()
                if values
            }

    def seeds(self, algorithm_type: AlgorithmType, space: SearchSpace, n: int) -> list[dict[str, Any]]:
        """Up to ``n`` seed configurations: historical bests and their perturbations."""
        elites = [space.clamp(p) for p in self.best_parameters(algorithm_type)]
        if not elites:
            return []
        seeds = list(elites[:n])
        for parent in itertools.cycle(elites):
            if len(seeds) >= n:
                break
            child, _ = mutate(parent, space, mutation_rate=0.5, mutation_strength=0.2)
            seeds.append(child)
        return seeds

    def __len__(self) -> int:
        with self._lock:
            return sum(len(v) for v in self._methods.values())




class SearchStrategy(ABC):
    """Base class for hyperparameter search strategies."""

    method: OptimizationMethod

    def __init__(self, config: OptimizerConfig | None = None) -> None:
        self.config = config or OptimizerConfig()

    @abstractmethod
    def search(
        self,
        space: SearchSpace,
        evaluate: BatchEvaluate,
        budget: SearchBudget,
        seeds: Sequence[dict[str, Any]] = (),
    ) -> SearchOutcome:
        """Search ``space`` within ``budget``.

        Args:
            space: Frozen search space.
            evaluate: Batch evaluation callable.
            budget: Evaluation budget; exhaustion is a soft stop.
            seeds: Configurations to try first (strategy dependent).

        Returns:
            SearchOutcome with the best-seen configuration.

        Raises:
            OptimizationFailed: If every candidate of a batch fails.
        """

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class RandomSearch(SearchStrategy):
    """Uniform sampling; nothing but the best-seen carries over between batches."""

    method = OptimizationMethod.RANDOM

    def search(
        self,
        space: SearchSpace,
        evaluate: BatchEvaluate,
        budget: SearchBudget,
        seeds: Sequence[dict[str, Any]] = (),
    ) -> SearchOutcome:
        outcome = SearchOutcome()
        while True:
            n = budget.take(self.config.batch_size)
            if n == 0:
                break
            outcome.update(evaluate(space.sample_n(n)))
        outcome.budget_exhausted = budget.exhausted
        return outcome


class GridSearch(SearchStrategy):
    """Lazy enumeration of the discretized grid, capped by the budget."""

    method = OptimizationMethod.GRID

    def __init__(self, config: OptimizerConfig | None = None, points_per_dimension: int = 3) -> None:
        super().__init__(config)
        self.points_per_dimension = points_per_dimension

    def search(
        self,
        space: SearchSpace,
        evaluate: BatchEvaluate,
        budget: SearchBudget,
        seeds: Sequence[dict[str, Any]] = (),
    ) -> SearchOutcome:
        outcome = SearchOutcome()
        grid = space.iter_grid(self.points_per_dimension)
        while True:
            n = budget.take(self.config.batch_size)
            batch = list(itertools.islice(grid, n))
            budget.refund(n - len(batch))
            if not batch:
                break
            outcome.update(evaluate(batch))
        outcome.budget_exhausted = budget.exhausted
        return outcome


class BayesianSearch(SearchStrategy):
    """Successive narrowing around the best configuration.

    A Latin Hypercube initial design is followed by rounds sampled from a
    space narrowed around the current best, shrinking by ``shrink_factor``
    per round down to ``min_fraction``. Stops early once the best score
    improved by less than ``early_stop_threshold`` (relative) over the last
    ``early_stop_window`` evaluations.
    """

    method = OptimizationMethod.BAYESIAN

    def _stalled(self, trace: list[float]) -> bool:
        window = self.config.bayesian.early_stop_window
        if len(trace) <= window:
            return False
        gain = relative_improvement(trace[-1], trace[-1 - window])
        return gain < self.config.bayesian.early_stop_threshold

    def search(
        self,
        space: SearchSpace,
        evaluate: BatchEvaluate,
        budget: SearchBudget,
        seeds: Sequence[dict[str, Any]] = (),
    ) -> SearchOutcome:
        cfg = self.config.bayesian
        outcome = SearchOutcome()

        n = budget.take(cfg.initial_design)
        if n == 0:
            outcome.budget_exhausted = True
            return outcome
        initial = [space.clamp(s) for s in seeds][:n]
        if len(initial) < n:
            initial.extend(space.sample_latin_hypercube(n - len(initial)))
        outcome.update(evaluate(initial))

        fraction = 1.0
        while not self._stalled(outcome.trace):
            n = budget.take(self.config.batch_size)
            if n == 0:
                break
            fraction = max(cfg.min_fraction, fraction * cfg.shrink_factor)
            region = space.narrow(outcome.best_parameters, fraction) if outcome.found else space
            improved = outcome.update(evaluate(region.sample_latin_hypercube(n)))
            if improved:
                logger.debug("Narrowing to %.3f of the range around %.4f", fraction, outcome.best_score)

        outcome.budget_exhausted = budget.exhausted
        return outcome


class EvolutionarySearch(SearchStrategy):
    """Generational search with tournament selection, uniform crossover and elitism.

    The seeds (normally the current parameters) join the first generation.
    """

    method = OptimizationMethod.EVOLUTIONARY

    def search(
        self,
        space: SearchSpace,
        evaluate: BatchEvaluate,
        budget: SearchBudget,
        seeds: Sequence[dict[str, Any]] = (),
    ) -> SearchOutcome:
        result = GeneticSearch(space, evaluate, self.config.evolution, budget=budget, id_prefix="hp").run(seeds)
        outcome = SearchOutcome(iterations=result.n_evaluations, failures=list(result.failures))
        if result.best is not None:
            outcome.best_parameters = dict(result.best.config)
            outcome.best_score = result.best.fitness
        outcome.trace = [g.best_fitness for g in result.history]
        outcome.budget_exhausted = result.budget_exhausted
        return outcome


class MetaLearnedSearch(EvolutionarySearch):
    """Evolutionary engine whose first generation comes from :class:`MetaKnowledge`."""

    method = OptimizationMethod.META_LEARNED

    def __init__(
        self,
        config: OptimizerConfig | None = None,
        meta_knowledge: MetaKnowledge | None = None,
        algorithm_type: AlgorithmType = AlgorithmType.NEURAL,
    ) -> None:
        super().__init__(config)
        self.meta_knowledge = meta_knowledge or MetaKnowledge()
        self.algorithm_type = algorithm_type

    def search(
        self,
        space: SearchSpace,
        evaluate: BatchEvaluate,
        budget: SearchBudget,
        seeds: Sequence[dict[str, Any]] = (),
    ) -> SearchOutcome:
        n_meta = self.config.evolution.population_size - len(seeds)
        meta_seeds = self.meta_knowledge.seeds(self.algorithm_type, space, max(0, n_meta))
        logger.debug("Seeding meta-learned search with %d historical configurations", len(meta_seeds))
        return super().search(space, evaluate, budget, [*seeds, *meta_seeds])


def create_search_strategy(
    method: OptimizationMethod | str,
    config: OptimizerConfig | None = None,
    meta_knowledge: MetaKnowledge | None = None,
    algorithm_type: AlgorithmType = AlgorithmType.NEURAL,
) -> SearchStrategy:
    """Create a search strategy by method.

    Raises:
        ValueError: If the method is unknown.
    """
    method = OptimizationMethod(method)
    if method is OptimizationMethod.RANDOM:
        return RandomSearch(config)
    if method is OptimizationMethod.GRID:
        return GridSearch(config)
    if method is OptimizationMethod.BAYESIAN:
        return BayesianSearch(config)
    if method is OptimizationMethod.EVOLUTIONARY:
        return EvolutionarySearch(config)
    return MetaLearnedSearch(config, meta_knowledge, algorithm_type)




class HyperparameterOptimizer:
    """Finds better parameters for a registered algorithm.

    Steps per call: lease the id, build the search space, select a strategy,
    search within the budget, validate the best candidate on held-out folds,
    then commit one atomic registry update. When nothing better is found the
    registry keeps the old parameters and only records the attempt.

    Example:
        >>> optimizer = HyperparameterOptimizer(store, CandidateEvaluator(SeededEvaluator()))
        >>> result = optimizer.optimize("neural_network", "accuracy")
        >>> result.improvement >= 0 or not result.applied
        True
    """

    def __init__(
        self,
        store: PerformanceStore,
        evaluator: CandidateEvaluator,
        config: OptimizerConfig | None = None,
        meta_knowledge: MetaKnowledge | None = None,
    ) -> None:
        self.store = store
        self.evaluator = evaluator
        self.config = config or OptimizerConfig()
        self.meta_knowledge = meta_knowledge or MetaKnowledge()

    def optimize(
        self,
        algorithm_id: str,
        target_metric: str = "accuracy",
        method: OptimizationMethod | str | None = None,
        budget: int | None = None,
    ) -> HyperparameterResult:
        """Optimize the hyperparameters of ``algorithm_id``.

        Args:
            algorithm_id: Registered algorithm.
            target_metric: Metric to maximize.
            method: Force a strategy instead of the selection rule.
            budget: Evaluation budget (defaults to ``optimization_budget``).

        Returns:
            HyperparameterResult.

        Raises:
            AlgorithmNotFound: If the id is not registered.
            AlreadyOptimizing: If another run holds the id.
            OptimizationFailed: If a whole batch of candidates failed.
        """
        with self.store.lease(algorithm_id) as record:
            return self._optimize(record, target_metric, method, budget)

    def _optimize(
        self,
        record: AlgorithmRecord,
        target_metric: str,
        method: OptimizationMethod | str | None,
        budget: int | None,
    ) -> HyperparameterResult:
        start = time.perf_counter()
        algorithm_id = record.algorithm_id
        max_evaluations = self.config.optimization_budget if budget is None else budget

        space = build_search_space(record)
        selected = select_strategy(space, max_evaluations, method)
        strategy = create_search_strategy(selected, self.config, self.meta_knowledge, record.algorithm_type)

        prior_parameters = dict(record.parameters)
        prior_score = record.score(target_metric)
        logger.info(
            "Optimizing '%s' (%s) with %s search, budget %d, prior %s=%.4f",
            algorithm_id,
            record.algorithm_type.value,
            selected.value,
            max_evaluations,
            target_metric,
            prior_score,
        )

        seeds = [space.clamp(prior_parameters)] if prior_parameters else []
        search_budget = SearchBudget(max_evaluations, self.config.deadline_seconds)
        outcome = strategy.search(
            space,
            lambda candidates: self.evaluator.evaluate_batch(algorithm_id, candidates, target_metric),
            search_budget,
            seeds,
        )

        best_score = outcome.best_score if outcome.found else prior_score
        improvement = relative_improvement(best_score, prior_score)
        candidate = {**prior_parameters, **outcome.best_parameters} if outcome.found else prior_parameters

        validated = True
        validation_score = prior_score
        if improvement > 0:
            held_out = self.evaluator.cross_validate(
                algorithm_id, candidate, target_metric, self.config.cross_validation_folds
            )
            # The held-out score is what gets recorded, so it must beat the prior outright.
            validated = held_out is not None and held_out > prior_score
            if validated:
                validation_score = held_out
            else:
                logger.warning(
                    "Held-out score %s for '%s' does not confirm %.4f; keeping prior parameters",
                    held_out,
                    algorithm_id,
                    best_score,
                )

        applied = improvement > 0 and validated
        new_parameters = candidate if applied else prior_parameters
        confidence = optimization_confidence(improvement, outcome.iterations)

        def commit(current: AlgorithmRecord) -> None:
            current.improvement_history.append(
                ImprovementRecord(
                    improvement_type=ImprovementType.HYPERPARAMETER,
                    improvement=improvement,
                    confidence=confidence,
                    method=selected.value,
                    parameters=to_builtin(outcome.best_parameters or {}),
                    applied=applied,
                    version=current.version + 1,
                    details={"target_metric": target_metric, "iterations": outcome.iterations},
                )
            )
            if applied:
                current.parameters = to_builtin(new_parameters)
                current.performance_metrics[target_metric] = validation_score

        committed = self.store.upsert(algorithm_id, commit)
        self.meta_knowledge.record(
            record.algorithm_type, selected.value, outcome.best_parameters, best_score, improvement
        )

        elapsed = time.perf_counter() - start
        logger.info(
            "Finished '%s': improvement %.2f%% (%s) after %d evaluations in %.2fs",
            algorithm_id,
            improvement * 100,
            "applied" if applied else "not applied",
            outcome.iterations,
            elapsed,
        )

        return HyperparameterResult(
            algorithm_id=algorithm_id,
            prior_parameters=prior_parameters,
            new_parameters=dict(new_parameters),
            improvement=improvement,
            confidence=confidence,
            validation_score=validation_score,
            method=selected,
            iterations=outcome.iterations,
            elapsed_time=elapsed,
            prior_score=prior_score,
            best_score=best_score,
            best_candidate=outcome.best_parameters,
            applied=applied,
            validated=validated,
            budget_exhausted=outcome.budget_exhausted,
            n_failures=len(outcome.failures),
            version=committed.version,
        )
