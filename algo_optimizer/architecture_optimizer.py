from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np

from .errors import NotApplicable, OperationDisabled
from .evaluation import SearchBudget
from .genetic_algorithm import GeneticSearch, mutate
from .hyperparameter_optimizer import SearchOutcome
from .parameter_space.algorithm_space import build_architecture_space
from .records import (
    ArchitectureSpec,
    ConnectionSpec,
    ImprovementRecord,
    LayerSpec,
    OptimizerSpec,
    RegularizationSpec,
)
from .utils.common import ArchitectureSearchMethod, ImprovementType
from .utils.config import OptimizerConfig
from .utils.utils import optimization_confidence, relative_improvement

if TYPE_CHECKING:
    from collections.abc import Callable

    from .evaluation import BatchEvaluationResult, CandidateEvaluator
    from .parameter_space.parameter_space import SearchSpace
    from .records import AlgorithmRecord
    from .registry import PerformanceStore

logger = logging.getLogger(__name__)

# Parameter count treated as complexity 1.0 (log scale).
REFERENCE_PARAMETER_COUNT = 10_000_000
MIN_LAYER_WIDTH = 8




def decode_genome(genome: dict[str, Any]) -> ArchitectureSpec:
    """Turn a flat genome from the architecture space into an ArchitectureSpec."""
    n_layers = int(genome["n_layers"])
    width = int(genome["width"])
    decay = float(genome["width_decay"])
    kind = genome["layer_kind"]
    dropout = float(genome["dropout"])
    batch_norm = bool(genome["batch_norm"])

    layers: list[LayerSpec] = []
    weighted_positions: list[int] = []
    for i in range(n_layers):
        size = max(MIN_LAYER_WIDTH, int(round(width * decay**i)))
        weighted_positions.append(len(layers))
        layers.append(LayerSpec(kind, size, len(layers)))
        if batch_norm:
            layers.append(LayerSpec("batch_norm", size, len(layers)))
        if dropout > 0 and i < n_layers - 1:
            layers.append(LayerSpec("dropout", 0, len(layers), {"rate": round(dropout, 4)}))

    connections = [ConnectionSpec(i, i + 1) for i in range(len(layers) - 1)]
    pattern = genome["connection_pattern"]
    if pattern == "residual":
        connections.extend(
            ConnectionSpec(a, b, "skip")
            for a, b in zip(weighted_positions, weighted_positions[2:], strict=False)
        )
    if pattern == "recurrent" or kind == "lstm":
        connections.extend(ConnectionSpec(p, p, "recurrent") for p in weighted_positions)

    optimizer_kind = genome["optimizer"]
    optimizer = OptimizerSpec(
        kind=optimizer_kind,
        learning_rate=float(genome["learning_rate"]),
        momentum=0.9 if optimizer_kind == "sgd" else None,
        beta1=0.9 if optimizer_kind == "adam" else None,
        beta2=0.999 if optimizer_kind == "adam" else None,
        epsilon=None if optimizer_kind == "sgd" else 1e-8,
    )

    return ArchitectureSpec(
        layers=tuple(layers),
        connections=tuple(connections),
        activations=tuple([genome["activation"]] * n_layers),
        optimizer=optimizer,
        regularization=RegularizationSpec(l2=float(genome["l2"]), dropout=dropout, batch_norm=batch_norm),
    )


def encode_architecture(architecture: ArchitectureSpec, space: SearchSpace) -> dict[str, Any]:
    """Best-effort genome for an existing architecture, clamped into ``space``."""
    weighted = [layer for layer in architecture.layers if layer.kind not in {"dropout", "batch_norm"}]
    if not weighted:
        return space.clamp({})

    first, last = weighted[0].size, weighted[-1].size
    decay = (last / first) ** (1 / (len(weighted) - 1)) if len(weighted) > 1 and first > 0 else 1.0
    kinds = {c.kind for c in architecture.connections}
    if "skip" in kinds:
        pattern = "residual"
    elif "recurrent" in kinds:
        pattern = "recurrent"
    else:
        pattern = "sequential"

    genome = {
        "n_layers": len(weighted),
        "width": first,
        "width_decay": decay,
        "layer_kind": weighted[0].kind,
        "connection_pattern": pattern,
        "activation": architecture.activations[0] if architecture.activations else "relu",
        "optimizer": architecture.optimizer.kind,
        "learning_rate": architecture.optimizer.learning_rate,
        "dropout": architecture.regularization.dropout,
        "l2": max(architecture.regularization.l2, 1e-6),
        "batch_norm": architecture.regularization.batch_norm,
    }
    return space.clamp(genome)


def normalized_complexity(parameter_count: int) -> float:
    """Parameter count mapped onto [0, 1] on a log scale."""
    return float(np.clip(np.log10(1 + parameter_count) / np.log10(1 + REFERENCE_PARAMETER_COUNT), 0.0, 1.0))


def architecture_efficiency(score: float, parameter_count: int) -> float:
    """Score per unit of normalized complexity, in [0, 1]."""
    return float(score / (1.0 + normalized_complexity(parameter_count)))




@dataclass
class ArchitectureOptimization:
    """Outcome of one architecture optimization call.

    Attributes:
        algorithm_id: Optimized algorithm.
        current_architecture: Architecture before the call.
        optimized_architecture: Architecture after the call (unchanged when
            no candidate beat the current one).
        improvement: Relative improvement of the best candidate's score over
            the current architecture's score.
        complexity: Parameter-count proxy of the optimized architecture.
        efficiency: Score per normalized complexity.
        search_method: Method used.
        prior_score: Score of the current architecture.
        best_score: Best candidate score.
        confidence: Confidence in [0, 1].
        iterations: Evaluations spent by the search.
        applied: Whether the registry now holds the new architecture.
        budget_exhausted: Whether the search stopped on its budget or deadline.
        elapsed_time: Wall-clock seconds.
        version: Registry version committed for this call.
    """

    algorithm_id: str
    current_architecture: ArchitectureSpec
    optimized_architecture: ArchitectureSpec
    improvement: float
    complexity: int
    efficiency: float
    search_method: ArchitectureSearchMethod
    prior_score: float = 0.0
    best_score: float = 0.0
    confidence: float = 0.0
    iterations: int = 0
    applied: bool = False
    budget_exhausted: bool = False
    elapsed_time: float = 0.0
    version: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "algorithm_id": self.algorithm_id,
            "current_architecture": self.current_architecture.to_dict(),
            "optimized_architecture": self.optimized_architecture.to_dict(),
            "improvement": self.improvement,
            "complexity": self.complexity,
            "efficiency": self.efficiency,
            "search_method": self.search_method.value,
            "prior_score": self.prior_score,
            "best_score": self.best_score,
            "confidence": self.confidence,
            "iterations": self.iterations,
            "applied": self.applied,
            "budget_exhausted": self.budget_exhausted,
            "elapsed_time": self.elapsed_time,
            "version": self.version,
        }


class ArchitectureOptimizer:
    """Structural search for neural algorithms.

    Candidates are genomes from :func:`build_architecture_space`, scored
    through the shared evaluator and decoded into :class:`ArchitectureSpec`.
    The current architecture is scored first as the baseline. A better
    architecture replaces the current one, which is pushed onto
    ``architecture_history`` so :meth:`rollback` can restore it.
    """

    def __init__(
        self,
        store: PerformanceStore,
        evaluator: CandidateEvaluator,
        config: OptimizerConfig | None = None,
    ) -> None:
        self.store = store
        self.evaluator = evaluator
        self.config = config or OptimizerConfig()

    def select_method(self, record: AlgorithmRecord, budget: int) -> ArchitectureSearchMethod:
        """meta_learned with enough history, nas on small budgets, else evolutionary."""
        if len(record.architecture_history) >= 3:
            return ArchitectureSearchMethod.META_LEARNED
        if budget < 100:
            return ArchitectureSearchMethod.NAS
        return ArchitectureSearchMethod.EVOLUTIONARY

    def _check_applicable(self, record: AlgorithmRecord) -> None:
        if not self.config.architecture_search_enabled:
            msg = "Architecture search is disabled"
            raise OperationDisabled(msg, record.algorithm_id)
        build_architecture_space(record)

    def optimize(
        self,
        algorithm_id: str,
        method: ArchitectureSearchMethod | str | None = None,
        metric: str = "accuracy",
        budget: int | None = None,
    ) -> ArchitectureOptimization:
        """Search for a better architecture.

        Raises:
            AlgorithmNotFound: If the id is not registered.
            NotApplicable: If the algorithm is not neural.
            OperationDisabled: If architecture search is switched off.
            AlreadyOptimizing: If another run holds the id.
        """
        self._check_applicable(self.store.get(algorithm_id))
        with self.store.lease(algorithm_id) as record:
            return self._optimize(record, method, metric, budget)

    def _optimize(
        self,
        record: AlgorithmRecord,
        method: ArchitectureSearchMethod | str | None,
        metric: str,
        budget: int | None,
    ) -> ArchitectureOptimization:
        start = time.perf_counter()
        algorithm_id = record.algorithm_id
        space = build_architecture_space(record)
        max_evaluations = self.config.optimization_budget if budget is None else budget
        if method is None:
            selected = self.select_method(record, max_evaluations)
        else:
            selected = ArchitectureSearchMethod(method)

        current = record.architecture or ArchitectureSpec.default()
        current_genome = encode_architecture(current, space)
        search_budget = SearchBudget(max_evaluations, self.config.deadline_seconds)

        def evaluate(genomes: list[dict[str, Any]]) -> BatchEvaluationResult:
            return self.evaluator.evaluate_batch(algorithm_id, genomes, metric)

        logger.info("Architecture search for '%s' with %s, budget %d", algorithm_id, selected.value, max_evaluations)

        baseline = SearchOutcome()
        if search_budget.take(1):
            baseline.update(evaluate([current_genome]))
        prior_score = baseline.best_score if baseline.found else record.score(metric)

        outcome = self._run_method(selected, record, space, evaluate, search_budget, current_genome)
        outcome.iterations += baseline.iterations

        best_score = outcome.best_score if outcome.found else prior_score
        improvement = relative_improvement(best_score, prior_score)
        applied = improvement > 0 and outcome.found
        optimized = decode_genome(outcome.best_parameters) if applied else current
        complexity = optimized.parameter_count()
        final_score = best_score if applied else prior_score
        efficiency = architecture_efficiency(final_score, complexity)
        confidence = optimization_confidence(improvement, outcome.iterations)

        def commit(rec: AlgorithmRecord) -> None:
            rec.improvement_history.append(
                ImprovementRecord(
                    improvement_type=ImprovementType.ARCHITECTURE,
                    improvement=improvement,
                    confidence=confidence,
                    method=selected.value,
                    parameters=dict(outcome.best_parameters or {}),
                    applied=applied,
                    version=rec.version + 1,
                    details={"complexity": complexity, "efficiency": efficiency, "metric": metric},
                )
            )
            if applied:
                rec.architecture_history.append(current)
                rec.architecture = optimized

        committed = self.store.upsert(algorithm_id, commit)
        elapsed = time.perf_counter() - start
        logger.info(
            "Architecture search for '%s' finished: improvement %.2f%%, complexity %d, efficiency %.4f",
            algorithm_id,
            improvement * 100,
            complexity,
            efficiency,
        )

        return ArchitectureOptimization(
            algorithm_id=algorithm_id,
            current_architecture=current,
            optimized_architecture=optimized,
            improvement=improvement,
            complexity=complexity,
            efficiency=efficiency,
            search_method=selected,
            prior_score=prior_score,
            best_score=best_score,
            confidence=confidence,
            iterations=outcome.iterations,
            applied=applied,
            budget_exhausted=search_budget.exhausted,
            elapsed_time=elapsed,
            version=committed.version,
        )

    def _run_method(
        self,
        method: ArchitectureSearchMethod,
        record: AlgorithmRecord,
        space: SearchSpace,
        evaluate: Callable[[list[dict[str, Any]]], BatchEvaluationResult],
        budget: SearchBudget,
        current_genome: dict[str, Any],
    ) -> SearchOutcome:
        if method is ArchitectureSearchMethod.NAS:
            return self._sample_search(space, evaluate, budget)
        if method is ArchitectureSearchMethod.GRADIENT_BASED:
            return self._hill_climb(space, evaluate, budget, current_genome)

        seeds = [current_genome]
        if method is ArchitectureSearchMethod.META_LEARNED:
            seeds.extend(encode_architecture(a, space) for a in reversed(record.architecture_history))
        result = GeneticSearch(
            space, evaluate, self.config.evolution, budget=budget, id_prefix=f"{record.algorithm_id}-arch"
        ).run(seeds)
        outcome = SearchOutcome(iterations=result.n_evaluations, failures=list(result.failures))
        if result.best is not None:
            outcome.best_parameters = dict(result.best.config)
            outcome.best_score = result.best.fitness
        return outcome

    def _sample_search(
        self,
        space: SearchSpace,
        evaluate: Callable[[list[dict[str, Any]]], BatchEvaluationResult],
        budget: SearchBudget,
    ) -> SearchOutcome:
        """Latin Hypercube batches over the whole genome space."""
        outcome = SearchOutcome()
        while True:
            n = budget.take(self.config.batch_size)
            if n == 0:
                break
            outcome.update(evaluate(space.sample_latin_hypercube(n)))
        return outcome

    def _hill_climb(
        self,
        space: SearchSpace,
        evaluate: Callable[[list[dict[str, Any]]], BatchEvaluationResult],
        budget: SearchBudget,
        start: dict[str, Any],
        initial_step: float = 0.3,
        min_step: float = 0.01,
    ) -> SearchOutcome:
        """Local search: move to the best neighbour, halve the step when none is better."""
        outcome = SearchOutcome()
        center, center_score = dict(start), float("-inf")
        step = initial_step
        while step >= min_step:
            n = budget.take(self.config.batch_size)
            if n == 0:
                break
            neighbours = [mutate(center, space, mutation_rate=1.0, mutation_strength=step)[0] for _ in range(n)]
            batch = evaluate(neighbours)
            outcome.update(batch)
            if batch.best_score > center_score:
                center, center_score = dict(batch.best_parameters), batch.best_score
            else:
                step /= 2
        return outcome

    def rollback(self, algorithm_id: str) -> ArchitectureSpec:
        """Restore the previous architecture.

        Raises:
            AlgorithmNotFound: If the id is not registered.
            NotApplicable: If there is no previous architecture.
        """
        record = self.store.get(algorithm_id)
        if not record.architecture_history:
            msg = f"No previous architecture recorded for '{algorithm_id}'"
            raise NotApplicable(msg, algorithm_id)

        def restore(rec: AlgorithmRecord) -> None:
            if not rec.architecture_history:
                msg = f"No previous architecture recorded for '{algorithm_id}'"
                raise NotApplicable(msg, algorithm_id)
            rec.architecture = rec.architecture_history.pop()
            rec.improvement_history.append(
                ImprovementRecord(
                    improvement_type=ImprovementType.ARCHITECTURE,
                    improvement=0.0,
                    method="rollback",
                    applied=True,
                    version=rec.version + 1,
                )
            )

        with self.store.lease(algorithm_id):
            committed = self.store.upsert(algorithm_id, restore)
        logger.info("Rolled back architecture of '%s' to version %d", algorithm_id, committed.version)
        return committed.architecture
