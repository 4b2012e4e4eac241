from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import numpy as np

from .results import compute_trend
from .utils.common import AlgorithmType, ImprovementType

if TYPE_CHECKING:
    from .evolution import Lineage
    from .hyperparameter_optimizer import MetaKnowledge
    from .records import AlgorithmRecord
    from .registry import PerformanceStore

logger = logging.getLogger(__name__)

# metric: (threshold, suggested operation)
WEAKNESS_RULES: dict[str, tuple[float, str]] = {
    "accuracy": (0.9, "hyperparameter"),
    "efficiency": (0.85, "architecture"),
    "adaptability": (0.8, "learning_rate"),
}
# Average improvement an engine should reach across its optimizations.
IMPROVEMENT_TARGET = 0.15


def find_weaknesses(record: AlgorithmRecord) -> list[dict[str, Any]]:
    """Metrics below their target, worst shortfall first."""
    weaknesses = []
    for metric, (threshold, _) in WEAKNESS_RULES.items():
        value = record.performance_metrics.get(metric)
        if value is not None and value < threshold:
            weaknesses.append({"metric": metric, "value": value, "threshold": threshold, "gap": threshold - value})
    return sorted(weaknesses, key=lambda w: w["gap"], reverse=True)


def find_opportunities(record: AlgorithmRecord, weaknesses: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Operation suggested for each weakness."""
    opportunities = []
    for weakness in weaknesses:
        operation = WEAKNESS_RULES[weakness["metric"]][1]
        # Only neural algorithms have an architecture to search.
        if operation == "architecture" and record.algorithm_type is not AlgorithmType.NEURAL:
            operation = "feature_engineering"
        opportunities.append(
            {
                "metric": weakness["metric"],
                "operation": operation,
                "potential_gain": weakness["gap"] / max(weakness["value"], 1e-9),
            }
        )
    return opportunities


class InsightsAggregator:
    """Composes read-only summaries from the registry and run statistics."""

    def __init__(
        self,
        store: PerformanceStore,
        meta_knowledge: MetaKnowledge | None = None,
        lineage: Lineage | None = None,
    ) -> None:
        self.store = store
        self.meta_knowledge = meta_knowledge
        self.lineage = lineage

    def get_optimization_insights(self, algorithm_id: str) -> dict[str, Any]:
        """Aggregated summary for ``algorithm_id``.

        Raises:
            AlgorithmNotFound: If the id is not registered.
        """
        record = self.store.get(algorithm_id)
        history = record.improvement_history
        applied = [h for h in history if h.applied]

        tuned = [h for h in record.history_of(ImprovementType.HYPERPARAMETER) if h.applied]
        best_hyperparameters = (
            max(tuned, key=lambda h: h.improvement).parameters if tuned else dict(record.parameters)
        )

        trends = {}
        for improvement_type in ImprovementType:
            series = [h.improvement for h in record.history_of(improvement_type)]
            if series:
                trend = compute_trend(series)
                trends[improvement_type.value] = {**trend, "n_runs": len(series)}

        performance = [
            r.performance_metrics["accuracy"]
            for r in self.store.revisions(algorithm_id)
            if "accuracy" in r.performance_metrics
        ]

        weaknesses = find_weaknesses(record)
        insights = {
            "algorithm_id": algorithm_id,
            "algorithm_type": record.algorithm_type.value,
            "version": record.version,
            "total_optimizations": len(history),
            "applied_optimizations": len(applied),
            "average_improvement": float(np.mean([h.improvement for h in applied])) if applied else 0.0,
            "confidence": float(np.mean([h.confidence for h in applied])) if applied else 0.0,
            "best_hyperparameters": best_hyperparameters,
            "best_architecture": record.architecture.to_dict() if record.architecture else None,
            "trends": trends,
            "performance_trend": compute_trend(performance),
            "weaknesses": weaknesses,
            "opportunities": find_opportunities(record, weaknesses),
            "applied_insights": list(record.applied_insights),
        }

        if self.lineage is not None:
            evolved = self.lineage.for_algorithm(algorithm_id)
            insights["evolution"] = {
                "records": len(evolved),
                "best_fitness": max((r.fitness for r in evolved), default=None),
                "generations": max((r.generation for r in evolved), default=0),
            }

        insights["meta"] = self.meta_summary()
        return insights

    def meta_summary(self) -> dict[str, Any]:
        """Engine-wide statistics across every registered algorithm."""
        improvements = [
            h.improvement
            for algorithm_id in self.store.ids()
            for h in self.store.get(algorithm_id).improvement_history
            if h.applied
        ]
        average = float(np.mean(improvements)) if improvements else 0.0
        return {
            "n_algorithms": len(self.store.ids()),
            "applied_optimizations": len(improvements),
            "average_improvement": average,
            "target_achieved": average >= IMPROVEMENT_TARGET,
            "methods": self.meta_knowledge.method_statistics() if self.meta_knowledge else {},
        }

    def select_algorithms_for_optimization(self, limit: int | None = None) -> list[str]:
        """Ids with at least one weakness, largest total shortfall first."""
        ranked = []
        for algorithm_id in self.store.ids():
            weaknesses = find_weaknesses(self.store.get(algorithm_id))
            if weaknesses:
                ranked.append((sum(w["gap"] for w in weaknesses), algorithm_id))
        ranked.sort(key=lambda item: (-item[0], item[1]))
        selected = [algorithm_id for _, algorithm_id in ranked[:limit]]
        logger.debug("Selected %s for optimization", selected)
        return selected
