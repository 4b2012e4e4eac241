"""Tests for hyperparameter optimization."""

import threading

import pytest

from algo_optimizer.errors import AlgorithmNotFound, AlreadyOptimizing, OptimizationFailed
from algo_optimizer.evaluation import CandidateEvaluator, SearchBudget, SeededEvaluator
from algo_optimizer.hyperparameter_optimizer import (
    BayesianSearch,
    GridSearch,
    HyperparameterOptimizer,
    MetaKnowledge,
    MetaLearnedSearch,
    RandomSearch,
    create_search_strategy,
)
from algo_optimizer.parameter_space.algorithm_space import build_search_space
from algo_optimizer.parameter_space.parameter_space import DiscreteSpace, SearchSpace
from algo_optimizer.utils.common import AlgorithmType, ImprovementType, OptimizationMethod


def set_accuracy(store, algorithm_id, value):
    store.upsert(algorithm_id, lambda r: r.performance_metrics.update(accuracy=value))


class TestHyperparameterOptimizer:
    """Test the optimize operation end to end."""

    def test_constant_scorer_improvement_and_confidence(self, store, config, constant_evaluator):
        set_accuracy(store, "genetic_algorithm", 0.70)
        optimizer = HyperparameterOptimizer(store, constant_evaluator(0.82), config)

        result = optimizer.optimize("genetic_algorithm", "accuracy", method="random", budget=50)

        assert result.improvement == pytest.approx(0.1714, abs=1e-4)
        assert result.iterations <= 50
        assert result.confidence == pytest.approx(0.4214, abs=1e-4)
        assert result.applied
        assert result.method is OptimizationMethod.RANDOM

        record = store.get("genetic_algorithm")
        assert record.performance_metrics["accuracy"] == pytest.approx(0.82)
        assert record.parameters == result.new_parameters
        assert record.version == result.version == 3

    def test_equal_score_is_exactly_zero_and_not_applied(self, store, config, constant_evaluator):
        set_accuracy(store, "ml_models", 0.70)
        before = store.get("ml_models")
        optimizer = HyperparameterOptimizer(store, constant_evaluator(0.70), config)

        result = optimizer.optimize("ml_models", method="random", budget=20)

        assert result.improvement == 0.0
        assert not result.applied
        assert result.new_parameters == before.parameters

        record = store.get("ml_models")
        assert record.parameters == before.parameters
        event = record.improvement_history[-1]
        assert event.improvement_type is ImprovementType.HYPERPARAMETER
        assert not event.applied

    def test_worse_candidates_keep_prior_parameters(self, store, config, constant_evaluator):
        optimizer = HyperparameterOptimizer(store, constant_evaluator(0.5), config)
        result = optimizer.optimize("neural_network", method="random", budget=20)
        assert result.improvement < 0
        assert not result.applied
        assert store.get("neural_network").performance_metrics["accuracy"] == 0.85

    def test_held_out_rejection(self, store, config):
        def overfit(algorithm_id, parameters, metric):
            return 0.2 if "cv_fold" in parameters else 0.95

        optimizer = HyperparameterOptimizer(store, CandidateEvaluator(overfit, parallel=False), config)
        result = optimizer.optimize("neural_network", method="random", budget=20)

        assert result.improvement > 0
        assert not result.validated
        assert not result.applied
        assert store.get("neural_network").performance_metrics["accuracy"] == 0.85

    def test_held_out_score_slightly_below_prior_is_rejected(self, store, config):
        set_accuracy(store, "genetic_algorithm", 0.70)

        def slight_regression(algorithm_id, parameters, metric):
            return 0.695 if "cv_fold" in parameters else 0.90

        optimizer = HyperparameterOptimizer(store, CandidateEvaluator(slight_regression, parallel=False), config)
        result = optimizer.optimize("genetic_algorithm", method="random", budget=20)

        assert not result.validated
        assert not result.applied
        record = store.get("genetic_algorithm")
        assert record.performance_metrics["accuracy"] == 0.70
        assert not record.improvement_history[-1].applied

    def test_applied_result_never_lowers_recorded_score(self, store, config):
        set_accuracy(store, "genetic_algorithm", 0.70)

        def modest_gain(algorithm_id, parameters, metric):
            return 0.72 if "cv_fold" in parameters else 0.90

        optimizer = HyperparameterOptimizer(store, CandidateEvaluator(modest_gain, parallel=False), config)
        result = optimizer.optimize("genetic_algorithm", method="random", budget=20)

        assert result.applied
        assert store.get("genetic_algorithm").performance_metrics["accuracy"] == pytest.approx(0.72)

    @pytest.mark.parametrize("method", [m.value for m in OptimizationMethod])
    def test_every_method_respects_budget(self, store, config, evaluator, method):
        optimizer = HyperparameterOptimizer(store, evaluator, config)
        result = optimizer.optimize("neural_network", method=method, budget=30)
        assert 0 < result.iterations <= 30
        assert result.method.value == method
        assert 0.0 <= result.confidence <= 1.0

    def test_default_selection_uses_random_for_small_budgets(self, store, config, evaluator):
        optimizer = HyperparameterOptimizer(store, evaluator, config)
        result = optimizer.optimize("neural_network", budget=40)
        assert result.method is OptimizationMethod.RANDOM

    def test_default_selection_uses_evolutionary_for_large_budgets(self, store, config, evaluator):
        optimizer = HyperparameterOptimizer(store, evaluator, config)
        result = optimizer.optimize("neural_network", budget=100)
        assert result.method is OptimizationMethod.EVOLUTIONARY

    def test_unknown_algorithm(self, store, config, evaluator):
        with pytest.raises(AlgorithmNotFound):
            HyperparameterOptimizer(store, evaluator, config).optimize("missing")

    def test_every_candidate_failing(self, store, config, flaky_scorer):
        optimizer = HyperparameterOptimizer(store, CandidateEvaluator(flaky_scorer(10_000), parallel=False), config)
        with pytest.raises(OptimizationFailed):
            optimizer.optimize("neural_network", method="random", budget=20)
        assert store.get("neural_network").version == 1
        assert not store.is_leased("neural_network")

    def test_concurrent_call_on_same_id_fails_fast(self, store, config):
        started = threading.Event()
        release = threading.Event()

        def slow(algorithm_id, parameters, metric):
            if algorithm_id == "neural_network":
                started.set()
                release.wait(5)
            return 0.5

        optimizer = HyperparameterOptimizer(store, CandidateEvaluator(slow, parallel=False), config)
        worker = threading.Thread(target=optimizer.optimize, args=("neural_network",), kwargs={"budget": 1})
        worker.start()
        try:
            assert started.wait(5)
            with pytest.raises(AlreadyOptimizing):
                optimizer.optimize("neural_network", budget=1)
            other = optimizer.optimize("ml_models", method="random", budget=1)
            assert other.iterations == 1
        finally:
            release.set()
            worker.join(5)
        assert store.get("neural_network").version == 2

    def test_readers_see_parameters_and_history_from_one_revision(self, store, config):
        lock = threading.Lock()
        calls = [0]

        def rising(algorithm_id, parameters, metric):
            with lock:
                calls[0] += 1
                return min(0.999, 0.86 + 1e-4 * calls[0])

        optimizer = HyperparameterOptimizer(store, CandidateEvaluator(rising, parallel=False), config)
        done = threading.Event()
        mismatches = []

        def read():
            while not done.is_set():
                record = store.get("neural_network")
                if not record.improvement_history:
                    continue
                event = record.improvement_history[-1]
                if event.version != record.version:
                    mismatches.append((record.version, event.version))
                if event.applied and any(record.parameters.get(k) != v for k, v in event.parameters.items()):
                    mismatches.append((record.version, event.parameters))

        reader = threading.Thread(target=read)
        reader.start()
        try:
            results = [optimizer.optimize("neural_network", method="random", budget=5) for _ in range(10)]
        finally:
            done.set()
            reader.join(5)

        assert mismatches == []
        assert all(r.applied for r in results)
        assert store.get("neural_network").version == 11
        assert len(store.get("neural_network").improvement_history) == 10

    def test_meta_knowledge_accumulates(self, store, config, evaluator):
        meta = MetaKnowledge()
        optimizer = HyperparameterOptimizer(store, evaluator, config, meta)
        optimizer.optimize("neural_network", method="random", budget=20)
        optimizer.optimize("neural_network", method="bayesian", budget=20)

        assert len(meta.best_parameters(AlgorithmType.NEURAL)) == 2
        stats = meta.method_statistics()
        assert set(stats) == {"random", "bayesian"}
        assert stats["random"]["runs"] == 1

    def test_result_to_dict(self, store, config, evaluator):
        result = HyperparameterOptimizer(store, evaluator, config).optimize("ml_models", method="random", budget=10)
        data = result.to_dict()
        assert data["method"] == "random"
        assert data["algorithm_id"] == "ml_models"
        assert {"improvement", "confidence", "applied", "validation_score"} <= set(data)


class TestStrategies:
    """Test the search strategies directly."""

    @pytest.fixture
    def space(self, store):
        return build_search_space(store.get("neural_network"))

    @pytest.fixture
    def evaluate(self):
        evaluator = CandidateEvaluator(SeededEvaluator(seed=9), parallel=False)
        return lambda candidates: evaluator.evaluate_batch("neural_network", candidates, "accuracy")

    def test_factory(self, config):
        assert isinstance(create_search_strategy("random", config), RandomSearch)
        assert isinstance(create_search_strategy("grid", config), GridSearch)
        assert isinstance(create_search_strategy("bayesian", config), BayesianSearch)
        assert isinstance(create_search_strategy("meta_learned", config), MetaLearnedSearch)
        with pytest.raises(ValueError):
            create_search_strategy("annealing", config)

    def test_random_search_spends_budget(self, config, space, evaluate):
        outcome = RandomSearch(config).search(space, evaluate, SearchBudget(25))
        assert outcome.iterations == 25
        assert outcome.budget_exhausted
        assert space.contains(outcome.best_parameters)

    def test_grid_search_refunds_unused_budget(self, config, evaluate):
        small = SearchSpace([DiscreteSpace("hidden_layers", [1, 2]), DiscreteSpace("batch_size", [16, 32])]).freeze()
        budget = SearchBudget(100)
        outcome = GridSearch(config).search(small, evaluate, budget)
        assert outcome.iterations == 4
        assert budget.used == 4
        assert not outcome.budget_exhausted

    def test_bayesian_trace_is_monotone(self, config, space, evaluate):
        outcome = BayesianSearch(config).search(space, evaluate, SearchBudget(40))
        assert outcome.trace == sorted(outcome.trace)
        assert outcome.iterations <= 40

    def test_bayesian_with_no_budget(self, config, space, evaluate):
        outcome = BayesianSearch(config).search(space, evaluate, SearchBudget(0))
        assert not outcome.found
        assert outcome.budget_exhausted

    def test_meta_learned_uses_history(self, config, space, evaluate):
        meta = MetaKnowledge()
        elite = space.sample()
        meta.record(AlgorithmType.NEURAL, "random", elite, 0.99, 0.1)
        seeds = meta.seeds(AlgorithmType.NEURAL, space, 4)
        assert seeds[0] == space.clamp(elite)
        assert len(seeds) == 4
        assert all(space.contains(s) for s in seeds)

        outcome = MetaLearnedSearch(config, meta).search(space, evaluate, SearchBudget(20))
        assert outcome.found
