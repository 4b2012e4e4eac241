"""Tests for the genetic search engine."""

import numpy as np
import pytest

from algo_optimizer.errors import OptimizationFailed
from algo_optimizer.evaluation import CandidateEvaluator, SearchBudget
from algo_optimizer.genetic_algorithm import (
    GeneticSearch,
    Individual,
    RouletteWheelSelection,
    TournamentSelection,
    create_selection_strategy,
    diff_config,
    mutate,
    uniform_crossover,
)
from algo_optimizer.parameter_space.parameter_space import (
    CategoricalSpace,
    ContinuousSpace,
    DiscreteSpace,
    SearchSpace,
)
from algo_optimizer.utils.config import EvolutionConfig


@pytest.fixture
def space():
    return SearchSpace(
        [
            ContinuousSpace("x", 0.0, 1.0, importance=0.9),
            DiscreteSpace("n", [1, 2, 4, 8]),
            CategoricalSpace("kind", ["a", "b", "c"]),
        ]
    ).freeze()


def batch_evaluator(scorer):
    evaluator = CandidateEvaluator(lambda algorithm_id, parameters, metric: scorer(parameters), parallel=False)
    return lambda candidates: evaluator.evaluate_batch("algo", candidates, "accuracy")


class DecreasingScorer:
    """Each call scores a little lower than the previous one."""

    def __init__(self, start=0.9, step=0.01):
        self.next_score = start
        self.step = step

    def __call__(self, parameters):
        score = self.next_score
        self.next_score -= self.step
        return score


class TestSelection:
    """Test parent selection strategies."""

    def test_tournament_favors_fitter_individuals(self):
        fitness = np.array([0.1, 0.7, 0.3])
        counts = np.bincount(TournamentSelection(tournament_size=3).select(fitness, 1000), minlength=3)
        assert counts[1] > counts[2] > counts[0]

    def test_failed_individuals_are_never_selected(self):
        fitness = np.array([np.nan, 0.2, np.nan, 0.4])
        for strategy in (TournamentSelection(2), RouletteWheelSelection()):
            selected = strategy.select(fitness, 100)
            assert set(selected.tolist()) <= {1, 3}

    def test_no_evaluated_individuals(self):
        with pytest.raises(ValueError):
            TournamentSelection().select(np.array([np.nan, np.nan]), 2)

    def test_factory(self):
        assert isinstance(create_selection_strategy("roulette"), RouletteWheelSelection)
        with pytest.raises(ValueError):
            create_selection_strategy("rank")


class TestOperators:
    """Test crossover and mutation."""

    def test_uniform_crossover_takes_each_gene_from_a_parent(self, space):
        a = Individual({"x": 0.1, "n": 1, "kind": "a"}, 1, "a")
        b = Individual({"x": 0.9, "n": 8, "kind": "c"}, 1, "b")
        child, inherited = uniform_crossover(a, b, space)
        assert set(inherited) == set(space.names)
        for name, source in inherited.items():
            assert child[name] == (a if source == "a" else b).config[name]

    def test_mutation_stays_in_space(self, space):
        config = space.sample()
        for _ in range(50):
            config, changes = mutate(config, space, mutation_rate=1.0, mutation_strength=0.5)
            assert space.contains(config)
            for name, old, new in changes:
                assert old != new

    def test_zero_rate_mutation_is_identity(self, space):
        config = space.sample()
        child, changes = mutate(config, space, mutation_rate=0.0, mutation_strength=0.5)
        assert child == config
        assert changes == []

    def test_diff_config(self):
        changes = diff_config({"x": 1, "y": 2}, {"x": 1, "y": 3, "z": 0})
        assert changes == [("y", 2, 3), ("z", None, 0)]


class TestGeneticSearch:
    """Test the generational loop."""

    def test_constant_fitness_converges_in_first_generation(self, space):
        search = GeneticSearch(space, batch_evaluator(lambda p: 0.5), EvolutionConfig(population_size=8))
        result = search.run()
        assert result.converged
        assert result.generations_run == 1
        assert result.n_evaluations == 8

    def test_stalled_search_stops_after_patience(self, space):
        config = EvolutionConfig(population_size=6, max_generations=10, patience=3)
        result = GeneticSearch(space, batch_evaluator(DecreasingScorer()), config).run()
        assert result.converged
        assert result.generations_run == 4
        assert result.best.fitness == pytest.approx(0.9)

    def test_best_is_maximum_of_evaluated(self, space):
        config = EvolutionConfig(population_size=10, max_generations=5)
        result = GeneticSearch(space, batch_evaluator(lambda p: p["x"]), config).run()
        assert result.best.fitness == max(ind.fitness for ind in result.evaluated)
        assert len(result.history) == result.generations_run

    def test_budget_caps_evaluations(self, space):
        budget = SearchBudget(20)
        config = EvolutionConfig(population_size=8, max_generations=10)
        result = GeneticSearch(space, batch_evaluator(lambda p: p["x"]), config, budget=budget).run()
        assert result.n_evaluations == 20
        assert budget.used == 20
        assert result.budget_exhausted

    def test_full_run_without_budget_pressure(self, space):
        budget = SearchBudget(1000)
        config = EvolutionConfig(population_size=6, max_generations=2, patience=5)
        result = GeneticSearch(space, batch_evaluator(lambda p: p["x"]), config, budget=budget).run()
        assert not result.budget_exhausted

    def test_seeds_join_first_generation(self, space):
        seed = {"x": 0.42, "n": 4, "kind": "b"}
        search = GeneticSearch(space, batch_evaluator(lambda p: 0.5), EvolutionConfig(population_size=4))
        population = search.initial_population([seed], parents=("base@v1",), base=seed)
        assert population[0].config == seed
        assert population[0].mutations == []
        assert all(ind.parents == ("base@v1",) for ind in population)

    def test_offspring_record_lineage(self, space):
        config = EvolutionConfig(population_size=6, max_generations=3, patience=5)
        result = GeneticSearch(space, batch_evaluator(lambda p: p["x"]), config).run()
        later = [ind for ind in result.evaluated if ind.generation > 1]
        assert later
        assert all(ind.parents and ind.parent_fitness is not None for ind in later)

    def test_on_generation_receives_new_individuals(self, space):
        seen = []
        config = EvolutionConfig(population_size=5, max_generations=3, patience=5)
        GeneticSearch(
            space,
            batch_evaluator(lambda p: p["x"]),
            config,
            on_generation=lambda generation, individuals: seen.append((generation, len(individuals))),
        ).run()
        assert seen[0] == (1, 5)
        assert all(n == 4 for _, n in seen[1:])

    def test_all_failures_raise(self, space):
        def broken(parameters):
            raise RuntimeError("no trainer")

        with pytest.raises(OptimizationFailed):
            GeneticSearch(space, batch_evaluator(broken), EvolutionConfig(population_size=4)).run()
