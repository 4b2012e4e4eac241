from __future__ import annotations

import logging
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

from .errors import NotApplicable, OptimizerError, as_optimizer_error
from .evaluation import SearchBudget
from .genetic_algorithm import GeneticSearch
from .parameter_space.algorithm_space import build_search_space
from .records import ImprovementRecord
from .results import BatchRunResult
from .utils.common import ImprovementType
from .utils.config import OptimizerConfig
from .utils.utils import optimization_confidence, relative_improvement

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence

    from .errors import EvaluationFailure
    from .evaluation import CandidateEvaluator
    from .genetic_algorithm import Individual
    from .records import AlgorithmRecord
    from .registry import PerformanceStore
    from .results import GenerationStats

logger = logging.getLogger(__name__)




@dataclass(frozen=True)
class Mutation:
    """A single parameter change and its measured effect on fitness."""

    target: str
    change: dict[str, Any]
    measured_impact: float

    def to_dict(self) -> dict[str, Any]:
        return {"target": self.target, "change": dict(self.change), "measured_impact": self.measured_impact}


@dataclass(frozen=True)
class Crossover:
    """Recombination of two parents; ``inherited_traits`` maps parameter to parent version."""

    parents: tuple[str, ...]
    inherited_traits: dict[str, str]

    def to_dict(self) -> dict[str, Any]:
        return {"parents": list(self.parents), "inherited_traits": dict(self.inherited_traits)}


@dataclass(frozen=True)
class EvolutionRecord:
    """Immutable lineage entry for one evaluated individual.

    Attributes:
        evolution_id: Unique identifier of the entry.
        algorithm_id: Evolved algorithm.
        parent_version: Primary parent version.
        evolved_version: Version identifier of this individual.
        mutations: Parameter changes relative to the primary parent.
        crossovers: Recombination events producing this individual.
        fitness: Measured fitness.
        generation: Generation number (1-based).
        parameters: Configuration of the individual.
        parent_versions: All parent versions (two for crossover children).
    """

    evolution_id: str
    algorithm_id: str
    parent_version: str
    evolved_version: str
    mutations: tuple[Mutation, ...]
    crossovers: tuple[Crossover, ...]
    fitness: float
    generation: int
    parameters: dict[str, Any] = field(default_factory=dict)
    parent_versions: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "evolution_id": self.evolution_id,
            "algorithm_id": self.algorithm_id,
            "parent_version": self.parent_version,
            "parent_versions": list(self.parent_versions),
            "evolved_version": self.evolved_version,
            "mutations": [m.to_dict() for m in self.mutations],
            "crossovers": [c.to_dict() for c in self.crossovers],
            "fitness": self.fitness,
            "generation": self.generation,
            "parameters": dict(self.parameters),
        }


def registry_version(record: AlgorithmRecord) -> str:
    """Lineage identifier of a committed registry revision."""
    return f"{record.algorithm_id}@v{record.version}"


class Lineage:
    """Append-only arena of evolution records indexed by evolved version.

    Records reference parents by version identifier, so crossover children
    with two parents form a DAG without any object links between records.
    Parent versions that are registry revisions rather than evolved
    individuals are roots of the graph.
    """

    def __init__(self) -> None:
        self._records: list[EvolutionRecord] = []
        self._index: dict[str, int] = {}
        self._lock = threading.Lock()

    def add(self, record: EvolutionRecord) -> None:
        with self._lock:
            if record.evolved_version in self._index:
                msg = f"Version '{record.evolved_version}' is already in the lineage"
                raise ValueError(msg)
            self._index[record.evolved_version] = len(self._records)
            self._records.append(record)

    def get(self, version: str) -> EvolutionRecord:
        with self._lock:
            return self._records[self._index[version]]

    def __contains__(self, version: str) -> bool:
        with self._lock:
            return version in self._index

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def __iter__(self) -> Iterator[EvolutionRecord]:
        with self._lock:
            return iter(list(self._records))

    def parents_of(self, version: str) -> list[EvolutionRecord]:
        """Parent records of ``version`` that are themselves in the lineage."""
        record = self.get(version)
        return [self.get(p) for p in record.parent_versions if p in self]

    def ancestors(self, version: str) -> list[EvolutionRecord]:
        """Every evolved ancestor of ``version``, nearest first."""
        seen: set[str] = set()
        frontier = [version]
        ancestors = []
        while frontier:
            next_frontier = []
            for current in frontier:
                for parent in self.parents_of(current):
                    if parent.evolved_version not in seen:
                        seen.add(parent.evolved_version)
                        ancestors.append(parent)
                        next_frontier.append(parent.evolved_version)
            frontier = next_frontier
        return ancestors

    def roots(self) -> list[str]:
        """Parent versions outside the lineage (registry revisions)."""
        with self._lock:
            records = list(self._records)
            index = dict(self._index)
        return sorted({p for r in records for p in r.parent_versions if p not in index})

    def for_algorithm(self, algorithm_id: str) -> list[EvolutionRecord]:
        return [r for r in self if r.algorithm_id == algorithm_id]




@dataclass
class EvolutionRun:
    """Outcome of one evolutionary run; nothing is committed until applied.

    Attributes:
        algorithm_id: Evolved algorithm.
        base_version: Registry revision the run started from.
        baseline_score: Recorded score of the base revision.
        metric: Fitness metric.
        records: Lineage entries emitted by the run, in order.
        best: Best entry across all generations.
        converged: Whether the run stopped on convergence.
        generations_run: Generations evaluated.
        budget_exhausted: Whether the run stopped on its deadline.
        failures: Discarded individuals.
        history: Per-generation statistics.
    """

    algorithm_id: str
    base_version: str
    baseline_score: float
    metric: str
    records: list[EvolutionRecord]
    best: EvolutionRecord | None
    converged: bool
    generations_run: int
    budget_exhausted: bool = False
    failures: list[EvaluationFailure] = field(default_factory=list)
    history: list[GenerationStats] = field(default_factory=list)

    @property
    def improvement(self) -> float:
        if self.best is None:
            return 0.0
        return relative_improvement(self.best.fitness, self.baseline_score)

    def to_dict(self) -> dict[str, Any]:
        return {
            "algorithm_id": self.algorithm_id,
            "base_version": self.base_version,
            "baseline_score": self.baseline_score,
            "metric": self.metric,
            "records": [r.to_dict() for r in self.records],
            "best": self.best.to_dict() if self.best else None,
            "improvement": self.improvement,
            "converged": self.converged,
            "generations_run": self.generations_run,
            "budget_exhausted": self.budget_exhausted,
            "n_failures": len(self.failures),
            "history": [h.to_dict() for h in self.history],
        }


class EvolutionaryDriver:
    """Runs population-based evolution over whole algorithm configurations.

    Each run evaluates generations of configurations drawn from the
    algorithm's search space and appends one :class:`EvolutionRecord` per
    successfully evaluated individual to the shared :class:`Lineage`.
    Committing the best individual is a separate step,
    :meth:`apply_best_evolution`.
    """

    def __init__(
        self,
        store: PerformanceStore,
        evaluator: CandidateEvaluator,
        config: OptimizerConfig | None = None,
        lineage: Lineage | None = None,
    ) -> None:
        self.store = store
        self.evaluator = evaluator
        self.config = config or OptimizerConfig()
        self.lineage = lineage if lineage is not None else Lineage()

    def _to_record(
        self,
        algorithm_id: str,
        individual: Individual,
        base_version: str,
        baseline_score: float,
    ) -> EvolutionRecord:
        parent_versions = individual.parents or (base_version,)
        reference = individual.parent_fitness if individual.parent_fitness is not None else baseline_score
        impact = individual.fitness - reference
        crossovers = ()
        if individual.is_crossover:
            crossovers = (Crossover(individual.parents, dict(individual.inherited)),)
        return EvolutionRecord(
            evolution_id=f"evo-{uuid.uuid4().hex[:12]}",
            algorithm_id=algorithm_id,
            parent_version=parent_versions[0],
            evolved_version=individual.individual_id,
            mutations=tuple(
                Mutation(name, {"from": old, "to": new}, impact) for name, old, new in individual.mutations
            ),
            crossovers=crossovers,
            fitness=individual.fitness,
            generation=individual.generation,
            parameters=dict(individual.config),
            parent_versions=tuple(parent_versions),
        )

    def evolve(
        self,
        algorithm_id: str,
        population_size: int | None = None,
        generations: int | None = None,
        metric: str = "accuracy",
        deadline_seconds: float | None = None,
    ) -> EvolutionRun:
        """Evolve ``algorithm_id`` without committing the result.

        Args:
            algorithm_id: Registered algorithm.
            population_size: Individuals per generation.
            generations: Maximum number of generations.
            metric: Fitness metric.
            deadline_seconds: Wall-clock limit; the best-so-far is returned
                when it expires.

        Raises:
            AlgorithmNotFound: If the id is not registered.
            AlreadyOptimizing: If another run holds the id.
            OptimizationFailed: If every individual of a generation fails.
            ValueError: If population_size or generations is out of range.
        """
        overrides = {}
        if population_size is not None:
            overrides["population_size"] = population_size
        if generations is not None:
            overrides["max_generations"] = generations
        evolution_config = replace(self.config.evolution, **overrides)
        deadline = deadline_seconds if deadline_seconds is not None else self.config.deadline_seconds

        with self.store.lease(algorithm_id) as record:
            space = build_search_space(record)
            base_version = registry_version(record)
            baseline_score = record.score(metric)
            base = space.clamp(record.parameters)
            records: list[EvolutionRecord] = []

            def emit(generation: int, individuals: list[Individual]) -> None:
                for individual in individuals:
                    entry = self._to_record(algorithm_id, individual, base_version, baseline_score)
                    self.lineage.add(entry)
                    records.append(entry)
                logger.debug("Generation %d of '%s': %d records", generation, algorithm_id, len(individuals))

            search = GeneticSearch(
                space,
                lambda candidates: self.evaluator.evaluate_batch(algorithm_id, candidates, metric),
                evolution_config,
                budget=SearchBudget(
                    evolution_config.population_size * evolution_config.max_generations, deadline
                ),
                id_prefix=f"{algorithm_id}-evo",
                on_generation=emit,
            )
            logger.info(
                "Evolving '%s' from %s: population %d, up to %d generations",
                algorithm_id,
                base_version,
                evolution_config.population_size,
                evolution_config.max_generations,
            )
            result = search.run(initial=[base], parents=(base_version,), base=base)

        best = None
        if result.best is not None:
            best = next(r for r in records if r.evolved_version == result.best.individual_id)

        run = EvolutionRun(
            algorithm_id=algorithm_id,
            base_version=base_version,
            baseline_score=baseline_score,
            metric=metric,
            records=records,
            best=best,
            converged=result.converged,
            generations_run=result.generations_run,
            budget_exhausted=result.budget_exhausted,
            failures=result.failures,
            history=result.history,
        )
        logger.info(
            "Evolution of '%s' finished after %d generations: best %.4f (%d records, %d failures)",
            algorithm_id,
            run.generations_run,
            best.fitness if best else float("nan"),
            len(records),
            len(run.failures),
        )
        return run

    def apply_best_evolution(self, run: EvolutionRun) -> AlgorithmRecord:
        """Commit the best individual of ``run`` to the registry.

        The configuration replaces the current parameters only when its
        fitness beats the currently recorded score; either way an evolution
        event is appended to the history.

        Raises:
            NotApplicable: If the run produced no evaluated individual.
            AlreadyOptimizing: If another run holds the id.
        """
        best = run.best
        if best is None:
            msg = "Evolution run has no evaluated individual to apply"
            raise NotApplicable(msg, run.algorithm_id)

        with self.store.lease(run.algorithm_id) as record:
            if registry_version(record) != run.base_version:
                logger.warning(
                    "Applying evolution of '%s' started at %s onto %s",
                    run.algorithm_id,
                    run.base_version,
                    registry_version(record),
                )
            current = record.score(run.metric)
            improvement = relative_improvement(best.fitness, current)
            applied = improvement > 0
            confidence = optimization_confidence(improvement, len(run.records))

            def commit(rec: AlgorithmRecord) -> None:
                if applied:
                    rec.parameters = {**rec.parameters, **best.parameters}
                    rec.performance_metrics[run.metric] = best.fitness
                rec.improvement_history.append(
                    ImprovementRecord(
                        improvement_type=ImprovementType.EVOLUTION,
                        improvement=improvement if applied else 0.0,
                        confidence=confidence,
                        method="evolutionary",
                        parameters=dict(best.parameters),
                        applied=applied,
                        version=rec.version + 1,
                        details={
                            "evolution_id": best.evolution_id,
                            "evolved_version": best.evolved_version,
                            "generation": best.generation,
                            "fitness": best.fitness,
                        },
                    )
                )

            updated = self.store.upsert(run.algorithm_id, commit)

        logger.info(
            "%s evolution %s for '%s' (fitness %.4f vs %.4f)",
            "Applied" if applied else "Recorded",
            best.evolved_version,
            run.algorithm_id,
            best.fitness,
            current,
        )
        return updated

    def evolve_many(
        self,
        algorithm_ids: Sequence[str],
        population_size: int | None = None,
        generations: int | None = None,
        metric: str = "accuracy",
    ) -> BatchRunResult:
        """Evolve several algorithms; a failing id does not abort its siblings."""
        results: dict[str, EvolutionRun] = {}
        errors: dict[str, OptimizerError] = {}

        def run_one(algorithm_id: str) -> EvolutionRun:
            return self.evolve(algorithm_id, population_size, generations, metric)

        n_workers = self.config.max_workers if self.config.parallel_optimization else 1
        with ThreadPoolExecutor(max_workers=max(1, min(n_workers, len(algorithm_ids) or 1))) as executor:
            futures = {executor.submit(run_one, algorithm_id): algorithm_id for algorithm_id in algorithm_ids}
            for future in as_completed(futures):
                algorithm_id = futures[future]
                try:
                    results[algorithm_id] = future.result()
                except Exception as e:
                    errors[algorithm_id] = as_optimizer_error(algorithm_id, e)
                    logger.warning("Evolution of '%s' failed: %s", algorithm_id, errors[algorithm_id])

        return BatchRunResult(results=results, errors=errors)

