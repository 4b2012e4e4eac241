"""Shared fixtures for the optimizer test suite."""

import threading

import pytest

from algo_optimizer.evaluation import CandidateEvaluator, SeededEvaluator
from algo_optimizer.records import AlgorithmRecord
from algo_optimizer.registry import InMemoryPerformanceStore, register_default_algorithms
from algo_optimizer.utils.common import AlgorithmType
from algo_optimizer.utils.config import EvolutionConfig, OptimizerConfig
from algo_optimizer.utils.utils import set_random_seed


@pytest.fixture(autouse=True)
def seeded_rng():
    set_random_seed(1234)


@pytest.fixture
def store():
    store = InMemoryPerformanceStore()
    register_default_algorithms(store)
    return store


@pytest.fixture
def config():
    return OptimizerConfig(
        optimization_budget=60,
        parallel_optimization=False,
        cross_validation_folds=2,
        batch_size=10,
        verbosity=0,
        evolution=EvolutionConfig(population_size=8, max_generations=4),
    )


@pytest.fixture
def evaluator():
    return CandidateEvaluator(SeededEvaluator(seed=3), parallel=False)


@pytest.fixture
def constant_evaluator():
    """Factory for evaluators that score every candidate the same."""

    def make(score):
        return CandidateEvaluator(lambda algorithm_id, parameters, metric: score, parallel=False)

    return make


class FlakyScorer:
    """Raises for the first ``n_failures`` calls, then delegates."""

    def __init__(self, n_failures, inner=None):
        self.n_failures = n_failures
        self.inner = inner or SeededEvaluator(seed=5)
        self.calls = 0
        self._lock = threading.Lock()

    def __call__(self, algorithm_id, parameters, metric):
        with self._lock:
            self.calls += 1
            call = self.calls
        if call <= self.n_failures:
            raise RuntimeError(f"trainer crashed on call {call}")
        return self.inner(algorithm_id, parameters, metric)


@pytest.fixture
def flaky_scorer():
    return FlakyScorer


@pytest.fixture
def statistical_record():
    return AlgorithmRecord(
        algorithm_id="stat_model_1",
        algorithm_type=AlgorithmType.STATISTICAL,
        performance_metrics={"accuracy": 0.8, "efficiency": 0.9},
        parameters={"learning_rate": 0.01, "regularization": 0.1},
    )
