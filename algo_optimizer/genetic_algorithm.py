from __future__ import annotations

import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np
from numpy.typing import NDArray

from .results import GenerationStats, compute_diversity
from .utils.config import EvolutionConfig
from .utils.utils import get_rng

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from .errors import EvaluationFailure
    from .evaluation import BatchEvaluationResult, SearchBudget
    from .parameter_space.parameter_space import SearchSpace

logger = logging.getLogger(__name__)




@dataclass
class Individual:
    """One member of a population.

    Attributes:
        config: Parameter configuration.
        generation: Generation in which the individual was created.
        individual_id: Unique version identifier.
        parents: Identifiers of the parent individuals.
        parent_fitness: Fitness of the primary parent (None for seeds).
        mutations: ``(parameter, old_value, new_value)`` changes applied.
        inherited: Parameter name to the parent id it was inherited from.
        fitness: Fitness, NaN until successfully evaluated.
    """

    config: dict[str, Any]
    generation: int
    individual_id: str
    parents: tuple[str, ...] = ()
    parent_fitness: float | None = None
    mutations: list[tuple[str, Any, Any]] = field(default_factory=list)
    inherited: dict[str, str] = field(default_factory=dict)
    fitness: float = float("nan")

    @property
    def evaluated(self) -> bool:
        return bool(np.isfinite(self.fitness))

    @property
    def is_crossover(self) -> bool:
        return len(self.parents) > 1


def make_individual_id(prefix: str, generation: int) -> str:
    return f"{prefix}-g{generation}-{uuid.uuid4().hex[:8]}"




class SelectionStrategy(ABC):
    """Abstract base class for parent selection strategies."""

    @abstractmethod
    def select(self, fitness: NDArray[np.float64], n_select: int) -> NDArray[np.intp]:
        """Select individuals.

        Args:
            fitness: Fitness per individual (NaN entries are never selected).
            n_select: Number of individuals to select.

        Returns:
            Indices of the selected individuals.
        """

    @staticmethod
    def _validate_inputs(fitness: NDArray[np.float64], n_select: int) -> NDArray[np.intp]:
        if n_select < 0:
            msg = f"n_select must be >= 0, got {n_select}"
            raise ValueError(msg)
        valid = np.flatnonzero(np.isfinite(fitness))
        if len(valid) == 0:
            msg = "Cannot select from a population without evaluated individuals"
            raise ValueError(msg)
        return valid


class TournamentSelection(SelectionStrategy):
    """Tournament selection.

    All tournaments are run at once with vectorized operations: each row of
    a ``(n_select, k)`` index matrix is one tournament, won by the fittest.
    """

    def __init__(self, tournament_size: int = 3) -> None:
        if tournament_size < 1:
            msg = f"tournament_size must be >= 1, got {tournament_size}"
            raise ValueError(msg)
        self.tournament_size = tournament_size

    def select(self, fitness: NDArray[np.float64], n_select: int) -> NDArray[np.intp]:
        valid = self._validate_inputs(fitness, n_select)
        rng = get_rng()

        actual_k = min(self.tournament_size, len(valid))
        tournament_indices = valid[rng.integers(0, len(valid), size=(n_select, actual_k))]
        tournament_fitness = fitness[tournament_indices]
        winner_positions = np.argmax(tournament_fitness, axis=1)
        return tournament_indices[np.arange(n_select), winner_positions]

    def __repr__(self) -> str:
        return f"TournamentSelection(tournament_size={self.tournament_size})"


class RouletteWheelSelection(SelectionStrategy):
    """Roulette wheel (fitness-proportionate) selection."""

    def __init__(self, min_fitness_offset: float = 1e-6) -> None:
        self.min_fitness_offset = min_fitness_offset

    def select(self, fitness: NDArray[np.float64], n_select: int) -> NDArray[np.intp]:
        valid = self._validate_inputs(fitness, n_select)
        rng = get_rng()

        valid_fitness = fitness[valid]
        min_fit = np.min(valid_fitness)
        offset = abs(min_fit) + self.min_fitness_offset if min_fit <= 0 else self.min_fitness_offset

        adjusted = valid_fitness + offset
        probs = adjusted / np.sum(adjusted)
        return valid[rng.choice(len(valid), size=n_select, p=probs, replace=True)]

    def __repr__(self) -> str:
        return f"RouletteWheelSelection(offset={self.min_fitness_offset})"


def create_selection_strategy(method: str = "tournament", tournament_size: int = 3) -> SelectionStrategy:
    """Create a selection strategy by name.

    Args:
        method: 'tournament' or 'roulette'.
        tournament_size: Tournament size for tournament selection.

    Raises:
        ValueError: If method is unknown.
    """
    if method == "tournament":
        return TournamentSelection(tournament_size)
    if method == "roulette":
        return RouletteWheelSelection()
    msg = f"Unknown selection method: {method}"
    raise ValueError(msg)




def uniform_crossover(
    parent_a: Individual,
    parent_b: Individual,
    space: SearchSpace,
) -> tuple[dict[str, Any], dict[str, str]]:
    """Uniform crossover: each parameter is taken from either parent with p=0.5.

    Returns:
        The child configuration and the parameter to parent-id map.
    """
    rng = get_rng()
    mask = rng.random(len(space)) < 0.5
    child: dict[str, Any] = {}
    inherited: dict[str, str] = {}
    for take_b, name in zip(mask, space.names, strict=True):
        source = parent_b if take_b else parent_a
        child[name] = source.config.get(name, parent_a.config.get(name))
        inherited[name] = source.individual_id
    return child, inherited


def mutate(
    config: dict[str, Any],
    space: SearchSpace,
    mutation_rate: float,
    mutation_strength: float,
) -> tuple[dict[str, Any], list[tuple[str, Any, Any]]]:
    """Per-parameter mutation.

    Each parameter mutates with probability ``mutation_rate`` scaled by
    ``0.5 + importance``, so high-importance parameters are explored more.

    Returns:
        The mutated configuration and the list of changes.
    """
    rng = get_rng()
    child = space.clamp(config)
    changes: list[tuple[str, Any, Any]] = []
    for name in space.names:
        param = space[name]
        if rng.random() >= min(1.0, mutation_rate * (0.5 + param.importance)):
            continue
        old = child[name]
        new = param.perturb(old, mutation_strength)
        if new != old:
            child[name] = new
            changes.append((name, old, new))
    return child, changes


def diff_config(
    base: dict[str, Any],
    config: dict[str, Any],
) -> list[tuple[str, Any, Any]]:
    """Changes needed to go from ``base`` to ``config``."""
    return [
        (name, base.get(name), value)
        for name, value in config.items()
        if base.get(name) != value
    ]




@dataclass
class GeneticSearchResult:
    """Outcome of a :class:`GeneticSearch` run.

    Attributes:
        best: Best individual across all generations (None if none evaluated).
        generations_run: Number of generations evaluated.
        converged: Whether the run stopped on convergence.
        budget_exhausted: Whether the run stopped on its budget or deadline.
        n_evaluations: Evaluations attempted.
        history: Per-generation statistics.
        evaluated: Every successfully evaluated individual in creation order.
        failures: Per-candidate evaluation failures.
    """

    best: Individual | None
    generations_run: int
    converged: bool
    budget_exhausted: bool
    n_evaluations: int
    history: list[GenerationStats] = field(default_factory=list)
    evaluated: list[Individual] = field(default_factory=list)
    failures: list[EvaluationFailure] = field(default_factory=list)

    @property
    def best_fitness(self) -> float:
        return self.best.fitness if self.best is not None else float("nan")


class GeneticSearch:
    """Generational genetic search over a :class:`SearchSpace`.

    Loop: evaluate the new individuals, drop failures, record statistics,
    check convergence, then breed the next generation with elitism,
    selection, crossover and per-parameter mutation. Stops at
    ``max_generations``, on convergence (fitness variance below
    ``variance_epsilon`` or no improvement for ``patience`` generations) or
    when the budget grants no more evaluations.

    Example:
        >>> search = GeneticSearch(space, evaluate_fn, EvolutionConfig())
        >>> result = search.run(initial=[current_params])
        >>> result.best.config
    """

    def __init__(
        self,
        space: SearchSpace,
        evaluate: Callable[[list[dict[str, Any]]], BatchEvaluationResult],
        config: EvolutionConfig | None = None,
        budget: SearchBudget | None = None,
        id_prefix: str = "ind",
        on_generation: Callable[[int, list[Individual]], None] | None = None,
    ) -> None:
        """Initialize genetic search.

        Args:
            space: Search space the individuals live in.
            evaluate: Batch evaluation callable (may raise OptimizationFailed).
            config: Evolution settings.
            budget: Optional evaluation budget shared with the caller.
            id_prefix: Prefix for generated individual identifiers.
            on_generation: Called with the generation number and its
                successfully evaluated new individuals.
        """
        self.space = space
        self.evaluate = evaluate
        self.config = config or EvolutionConfig()
        self.budget = budget
        self.id_prefix = id_prefix
        self.on_generation = on_generation
        self.selection = create_selection_strategy(
            self.config.selection_method, self.config.tournament_size
        )

    def initial_population(
        self,
        seeds: Sequence[dict[str, Any]] = (),
        parents: tuple[str, ...] = (),
        base: dict[str, Any] | None = None,
    ) -> list[Individual]:
        """Seed configurations first, then random samples up to population size."""
        population = []
        for config in list(seeds)[: self.config.population_size]:
            population.append(self.space.clamp(config))
        n_random = self.config.population_size - len(population)
        if n_random > 0:
            population.extend(self.space.sample_n(n_random))

        return [
            Individual(
                config=config,
                generation=1,
                individual_id=make_individual_id(self.id_prefix, 1),
                parents=parents,
                mutations=diff_config(base, config) if base is not None else [],
            )
            for config in population
        ]

    def _evaluate(self, individuals: list[Individual]) -> tuple[list[Individual], int, list[EvaluationFailure]]:
        pending = [ind for ind in individuals if not ind.evaluated]
        granted = len(pending) if self.budget is None else self.budget.take(len(pending))
        pending = pending[:granted]
        if not pending:
            return [], 0, []

        batch = self.evaluate([ind.config for ind in pending])
        for ind, score in zip(pending, batch.scores, strict=True):
            ind.fitness = float(score)
        return [ind for ind in pending if ind.evaluated], len(pending), batch.failures

    def _breed(self, survivors: list[Individual], generation: int) -> list[Individual]:
        rng = get_rng()
        cfg = self.config
        fitness = np.array([ind.fitness for ind in survivors], dtype=np.float64)
        order = np.argsort(fitness)[::-1]

        next_population = [survivors[i] for i in order[: cfg.elitism_count]]
        n_offspring = cfg.population_size - len(next_population)
        parent_indices = self.selection.select(fitness, 2 * n_offspring)

        for k in range(n_offspring):
            parent_a = survivors[parent_indices[2 * k]]
            parent_b = survivors[parent_indices[2 * k + 1]]
            child_id = make_individual_id(self.id_prefix, generation)

            if parent_a is not parent_b and rng.random() < cfg.crossover_rate:
                child_config, inherited = uniform_crossover(parent_a, parent_b, self.space)
                parents = (parent_a.individual_id, parent_b.individual_id)
            else:
                child_config, inherited = dict(parent_a.config), {}
                parents = (parent_a.individual_id,)

            child_config, mutations = mutate(
                child_config, self.space, cfg.mutation_rate, cfg.mutation_strength
            )
            next_population.append(
                Individual(
                    config=child_config,
                    generation=generation,
                    individual_id=child_id,
                    parents=parents,
                    parent_fitness=parent_a.fitness,
                    mutations=mutations,
                    inherited=inherited,
                )
            )
        return next_population

    def run(
        self,
        initial: Sequence[dict[str, Any]] = (),
        parents: tuple[str, ...] = (),
        base: dict[str, Any] | None = None,
    ) -> GeneticSearchResult:
        """Run the generational loop.

        Args:
            initial: Seed configurations for the first generation.
            parents: Parent identifiers recorded on the first generation.
            base: Configuration the first generation's changes are measured from.

        Returns:
            GeneticSearchResult with the best individual across generations.

        Raises:
            OptimizationFailed: If every new individual of a generation fails.
        """
        cfg = self.config
        population = self.initial_population(initial, parents, base)

        best: Individual | None = None
        stall = 0
        converged = False
        budget_exhausted = False
        n_evaluations = 0
        history: list[GenerationStats] = []
        evaluated: list[Individual] = []
        failures: list[EvaluationFailure] = []

        for generation in range(1, cfg.max_generations + 1):
            start = time.perf_counter()
            new_survivors, attempted, batch_failures = self._evaluate(population)
            n_evaluations += attempted
            failures.extend(batch_failures)
            if attempted == 0:
                budget_exhausted = True
                break

            evaluated.extend(new_survivors)
            if self.on_generation is not None:
                self.on_generation(generation, new_survivors)

            survivors = [ind for ind in population if ind.evaluated]
            fitness = np.array([ind.fitness for ind in survivors], dtype=np.float64)
            diversity = compute_diversity(np.array([self.space.to_array(ind.config) for ind in survivors]))
            stats = GenerationStats.from_fitness(
                generation,
                fitness,
                diversity=diversity,
                n_failed=len(batch_failures),
                elapsed_time=time.perf_counter() - start,
            )
            history.append(stats)

            generation_best = survivors[int(np.argmax(fitness))]
            if best is None or generation_best.fitness > best.fitness + cfg.improvement_tolerance:
                best = generation_best
                stall = 0
                logger.debug("Generation %d: new best %.4f", generation, best.fitness)
            else:
                stall += 1

            logger.debug(
                "Generation %d: best=%.4f mean=%.4f std=%.4f evaluated=%d failed=%d",
                generation,
                stats.best_fitness,
                stats.mean_fitness,
                stats.std_fitness,
                stats.n_evaluated,
                stats.n_failed,
            )

            if len(survivors) > 1 and np.var(fitness) < cfg.variance_epsilon:
                logger.info("Converged at generation %d: fitness variance below epsilon", generation)
                converged = True
                break
            if stall >= cfg.patience:
                logger.info("Converged at generation %d: no improvement for %d generations", generation, stall)
                converged = True
                break
            if generation == cfg.max_generations:
                break
            if self.budget is not None and self.budget.exhausted:
                budget_exhausted = True
                break
            population = self._breed(survivors, generation + 1)

        return GeneticSearchResult(
            best=best,
            generations_run=len(history),
            converged=converged,
            budget_exhausted=budget_exhausted,
            n_evaluations=n_evaluations,
            history=history,
            evaluated=evaluated,
            failures=failures,
        )

    def __repr__(self) -> str:
        return (
            f"GeneticSearch(pop={self.config.population_size}, "
            f"gens={self.config.max_generations}, selection={self.selection!r})"
        )
