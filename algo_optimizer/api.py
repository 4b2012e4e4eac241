"""High-level API for the self-optimization engine.

This module wires the registry, the evaluator and the individual optimizers
behind one facade, :class:`AlgorithmOptimizer`.

The facade provides:
- Hyperparameter, architecture, learning-rate and feature optimization per id
- Algorithm-level evolution with an explicit commit step
- Cross-algorithm transfer learning
- Batch operations that capture errors per id
- Aggregated insights for dashboards

Example:
    >>> from algo_optimizer import AlgorithmOptimizer
    >>> from algo_optimizer.utils.config import get_quick_config
    >>>
    >>> optimizer = AlgorithmOptimizer(config=get_quick_config())
    >>> result = optimizer.optimize_hyperparameters("genetic_algorithm")
    >>> print(f"Improvement: {result.improvement:.1%}")
    >>>
    >>> run = optimizer.evolve_algorithm("neural_network", population_size=10, generations=5)
    >>> optimizer.apply_best_evolution(run)
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import TYPE_CHECKING, Any, Literal

from .architecture_optimizer import ArchitectureOptimization, ArchitectureOptimizer
from .errors import OptimizerError, as_optimizer_error
from .evaluation import CandidateEvaluator, SeededEvaluator
from .evolution import EvolutionaryDriver, EvolutionRun, Lineage
from .feature_engineering import FeatureEngineer, FeatureEngineering
from .hyperparameter_optimizer import HyperparameterOptimizer, HyperparameterResult, MetaKnowledge
from .insights import InsightsAggregator
from .learning_rate import LearningRateAdapter, LearningRateAdaptation
from .registry import InMemoryPerformanceStore, register_default_algorithms
from .results import BatchRunResult
from .transfer import InsightApplication, TransferEngine, TransferInsight, TransferReport
from .utils.config import OptimizerConfig, configure_logging
from .utils.utils import set_random_seed

if TYPE_CHECKING:
    from collections.abc import Sequence

    from .evaluation import Evaluator
    from .feature_engineering import FeatureSpec
    from .records import AlgorithmRecord, ArchitectureSpec
    from .registry import PerformanceStore
    from .utils.common import ArchitectureSearchMethod, OptimizationMethod

logger = logging.getLogger(__name__)


OptimizationType = Literal["hyperparameter", "architecture", "learning_rate", "comprehensive"]

_COMPREHENSIVE = ("hyperparameter", "architecture", "learning_rate")


class AlgorithmOptimizer:
    """Facade over the self-optimization engine.

    Args:
        store: Performance registry. Defaults to an in-memory store holding
            the default algorithm set.
        evaluator: Scoring function ``(algorithm_id, parameters, metric) -> score``.
            Defaults to a :class:`SeededEvaluator` seeded from the config.
        config: Engine configuration.
    """

    def __init__(
        self,
        store: PerformanceStore | None = None,
        evaluator: Evaluator | None = None,
        config: OptimizerConfig | None = None,
    ) -> None:
        self.config = config or OptimizerConfig()
        configure_logging(self.config)
        if self.config.random_seed is not None:
            set_random_seed(self.config.random_seed)

        if store is None:
            store = InMemoryPerformanceStore()
            register_default_algorithms(store)
        self.store = store

        scorer = evaluator or SeededEvaluator(seed=self.config.random_seed or 0)
        self.evaluator = CandidateEvaluator(
            scorer,
            parallel=self.config.parallel_optimization,
            max_workers=self.config.max_workers,
        )

        self.meta_knowledge = MetaKnowledge()
        self.lineage = Lineage()
        self.hyperparameters = HyperparameterOptimizer(self.store, self.evaluator, self.config, self.meta_knowledge)
        self.architectures = ArchitectureOptimizer(self.store, self.evaluator, self.config)
        self.learning_rates = LearningRateAdapter(self.store, self.evaluator, self.config)
        self.features = FeatureEngineer(self.store, self.evaluator, self.config)
        self.evolution = EvolutionaryDriver(self.store, self.evaluator, self.config, self.lineage)
        self.transfer = TransferEngine(self.store)
        self.insights = InsightsAggregator(self.store, self.meta_knowledge, self.lineage)

        logger.debug("AlgorithmOptimizer ready with %d algorithms", len(self.store.ids()))

    def register_algorithm(self, record: AlgorithmRecord) -> AlgorithmRecord:
        return self.store.register(record)

    def optimize_hyperparameters(
        self,
        algorithm_id: str,
        target_metric: str = "accuracy",
        method: OptimizationMethod | str | None = None,
        budget: int | None = None,
    ) -> HyperparameterResult:
        return self.hyperparameters.optimize(algorithm_id, target_metric, method, budget)

    def optimize_architecture(
        self,
        algorithm_id: str,
        method: ArchitectureSearchMethod | str | None = None,
        budget: int | None = None,
    ) -> ArchitectureOptimization:
        return self.architectures.optimize(algorithm_id, method=method, budget=budget)

    def rollback_architecture(self, algorithm_id: str) -> ArchitectureSpec:
        return self.architectures.rollback(algorithm_id)

    def adapt_learning_rate(
        self,
        algorithm_id: str,
        history: Sequence[float] | None = None,
    ) -> LearningRateAdaptation:
        return self.learning_rates.adapt(algorithm_id, history)

    def engineer_features(self, algorithm_id: str, features: Sequence[FeatureSpec]) -> FeatureEngineering:
        return self.features.engineer(algorithm_id, features)

    def evolve_algorithm(
        self,
        algorithm_id: str,
        population_size: int | None = None,
        generations: int | None = None,
    ) -> EvolutionRun:
        """Evolve without committing; ``run.records`` holds the emitted lineage."""
        return self.evolution.evolve(algorithm_id, population_size, generations)

    def apply_best_evolution(self, run: EvolutionRun) -> AlgorithmRecord:
        return self.evolution.apply_best_evolution(run)

    def get_optimization_insights(self, algorithm_id: str) -> dict[str, Any]:
        return self.insights.get_optimization_insights(algorithm_id)

    def select_algorithms_for_optimization(self, limit: int | None = None) -> list[str]:
        return self.insights.select_algorithms_for_optimization(limit)

    def optimize_many(
        self,
        algorithm_ids: Sequence[str],
        target_metric: str = "accuracy",
        method: OptimizationMethod | str | None = None,
        budget: int | None = None,
    ) -> BatchRunResult:
        """Optimize the hyperparameters of several algorithms concurrently.

        Errors are captured per id and never abort sibling runs.
        """
        results: dict[str, HyperparameterResult] = {}
        errors: dict[str, OptimizerError] = {}

        n_workers = self.config.max_workers if self.config.parallel_optimization else 1
        with ThreadPoolExecutor(max_workers=max(1, min(n_workers, len(algorithm_ids) or 1))) as executor:
            futures = {
                executor.submit(self.optimize_hyperparameters, algorithm_id, target_metric, method, budget): algorithm_id
                for algorithm_id in algorithm_ids
            }
            for future in as_completed(futures):
                algorithm_id = futures[future]
                try:
                    results[algorithm_id] = future.result()
                except Exception as e:
                    errors[algorithm_id] = as_optimizer_error(algorithm_id, e)
                    logger.warning("Optimization of '%s' failed: %s", algorithm_id, errors[algorithm_id])

        logger.info("Optimized %d of %d algorithms", len(results), len(algorithm_ids))
        return BatchRunResult(results=results, errors=errors)

    def evolve_many(
        self,
        algorithm_ids: Sequence[str],
        population_size: int | None = None,
        generations: int | None = None,
    ) -> BatchRunResult:
        return self.evolution.evolve_many(algorithm_ids, population_size, generations)

    def run_transfer_learning(
        self,
        algorithm_ids: Sequence[str] | None = None,
        apply_synergies: bool = False,
    ) -> TransferReport:
        return self.transfer.run(algorithm_ids, apply_synergies)

    def apply_insight(self, insight: TransferInsight) -> InsightApplication:
        return self.transfer.apply_insight(insight)

    def optimize_algorithm(
        self,
        algorithm_id: str,
        optimization_type: OptimizationType = "comprehensive",
    ) -> dict[str, Any]:
        """Run one or all optimizers for ``algorithm_id``.

        Each component contributes either its result or a structured error,
        so a component that does not apply (architecture search on a
        non-neural algorithm) does not hide the others.

        Returns:
            Mapping of component name to ``result.to_dict()`` or ``error.to_dict()``.
        """
        components = _COMPREHENSIVE if optimization_type == "comprehensive" else (optimization_type,)
        unknown = set(components) - set(_COMPREHENSIVE)
        if unknown:
            msg = f"Unknown optimization type: {optimization_type!r}"
            raise ValueError(msg)

        runners = {
            "hyperparameter": lambda: self.optimize_hyperparameters(algorithm_id),
            "architecture": lambda: self.optimize_architecture(algorithm_id),
            "learning_rate": lambda: self.adapt_learning_rate(algorithm_id),
        }

        report: dict[str, Any] = {"algorithm_id": algorithm_id}
        for component in components:
            try:
                report[component] = runners[component]().to_dict()
            except OptimizerError as e:
                logger.info("%s optimization of '%s' skipped: %s", component, algorithm_id, e)
                report[component] = e.to_dict()
        return report

    def __repr__(self) -> str:
        return f"AlgorithmOptimizer(store={self.store!r}, evaluator={self.evaluator!r})"
