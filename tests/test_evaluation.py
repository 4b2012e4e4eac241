"""Tests for candidate evaluation, budgets and strategy selection."""

import numpy as np
import pytest

from algo_optimizer.errors import OptimizationFailed
from algo_optimizer.evaluation import CandidateEvaluator, SearchBudget, SeededEvaluator
from algo_optimizer.parameter_space.parameter_space import ContinuousSpace, SearchSpace
from algo_optimizer.strategy import select_strategy
from algo_optimizer.utils.common import OptimizationMethod


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestSeededEvaluator:
    """Test the deterministic scorer."""

    def test_deterministic(self):
        evaluator = SeededEvaluator(seed=1)
        params = {"learning_rate": 0.01, "batch_size": 32}
        assert evaluator("nn", params, "accuracy") == evaluator("nn", params, "accuracy")

    def test_scores_in_unit_interval(self):
        evaluator = SeededEvaluator(seed=2)
        rng = np.random.default_rng(0)
        for _ in range(50):
            params = {"learning_rate": float(rng.uniform(1e-4, 0.1)), "optimizer": "adam"}
            assert 0.0 <= evaluator("nn", params, "accuracy") <= 1.0

    def test_seed_changes_scores(self):
        params = {"learning_rate": 0.01}
        assert SeededEvaluator(seed=1)("nn", params, "accuracy") != SeededEvaluator(seed=2)("nn", params, "accuracy")


class TestCandidateEvaluator:
    """Test batch evaluation and failure handling."""

    def test_batch_picks_best(self):
        scores = {1: 0.2, 2: 0.9, 3: 0.5}
        evaluator = CandidateEvaluator(lambda a, p, m: scores[p["x"]], parallel=False)
        batch = evaluator.evaluate_batch("algo", [{"x": 1}, {"x": 2}, {"x": 3}], "accuracy")
        assert batch.best_idx == 1
        assert batch.best_score == 0.9
        assert batch.best_parameters == {"x": 2}

    def test_parallel_batch_keeps_candidate_order(self):
        evaluator = CandidateEvaluator(lambda a, p, m: p["x"] / 10, parallel=True, max_workers=4)
        batch = evaluator.evaluate_batch("algo", [{"x": i} for i in range(8)], "accuracy")
        assert batch.scores.tolist() == pytest.approx([i / 10 for i in range(8)])
        assert batch.best_parameters == {"x": 7}

    def test_failed_candidates_are_discarded(self, flaky_scorer):
        evaluator = CandidateEvaluator(flaky_scorer(2), parallel=False)
        batch = evaluator.evaluate_batch("algo", [{"x": i} for i in range(5)], "accuracy")
        assert batch.n_failed == 2
        assert batch.n_successful == 3
        assert len(batch.failures) == 2
        assert batch.best_idx >= 2

    def test_all_failed_raises_with_cause(self, flaky_scorer):
        evaluator = CandidateEvaluator(flaky_scorer(10), parallel=False)
        with pytest.raises(OptimizationFailed) as excinfo:
            evaluator.evaluate_batch("algo", [{"x": 1}, {"x": 2}], "accuracy")
        assert len(excinfo.value.failures) == 2
        assert isinstance(excinfo.value.__cause__, RuntimeError)

    def test_non_finite_score_is_a_failure(self):
        evaluator = CandidateEvaluator(lambda a, p, m: float("nan"), parallel=False)
        result = evaluator.evaluate("algo", {}, "accuracy")
        assert not result.success
        assert result.error is not None

    def test_out_of_range_score_is_clipped(self):
        evaluator = CandidateEvaluator(lambda a, p, m: 1.5, parallel=False)
        assert evaluator.evaluate("algo", {}, "accuracy").score == 1.0

    def test_empty_batch(self, evaluator):
        batch = evaluator.evaluate_batch("algo", [], "accuracy")
        assert batch.best_idx == -1
        assert batch.best_parameters is None

    def test_cross_validate_uses_folds(self):
        seen = []

        def scorer(algorithm_id, parameters, metric):
            seen.append(parameters["cv_fold"])
            return 0.5 + 0.1 * parameters["cv_fold"]

        evaluator = CandidateEvaluator(scorer, parallel=False)
        assert evaluator.cross_validate("algo", {"x": 1}, "accuracy", 3) == pytest.approx(0.6)
        assert seen == [0, 1, 2]

    def test_cross_validate_all_folds_fail(self, flaky_scorer):
        evaluator = CandidateEvaluator(flaky_scorer(10), parallel=False)
        assert evaluator.cross_validate("algo", {}, "accuracy", 3) is None

    def test_counts_evaluations(self, evaluator):
        evaluator.evaluate_batch("algo", [{"x": 1}, {"x": 2}], "accuracy")
        assert evaluator.n_evaluations == 2


class TestSearchBudget:
    """Test evaluation and deadline accounting."""

    def test_take_is_capped(self):
        budget = SearchBudget(10)
        assert budget.take(7) == 7
        assert budget.take(7) == 3
        assert budget.exhausted

    def test_refund(self):
        budget = SearchBudget(10)
        budget.take(10)
        budget.refund(4)
        assert budget.remaining == 4

    def test_deadline(self):
        clock = FakeClock()
        budget = SearchBudget(100, deadline_seconds=5.0, clock=clock)
        assert budget.take(1) == 1
        clock.now = 5.0
        assert budget.expired
        assert budget.take(1) == 0

    def test_negative_budget_rejected(self):
        with pytest.raises(ValueError):
            SearchBudget(-1)


class TestStrategySelection:
    """Test the search strategy rules."""

    @staticmethod
    def space(n_params):
        return SearchSpace([ContinuousSpace(f"p{i}", 0.0, 1.0) for i in range(n_params)])

    def test_many_parameters_use_bayesian(self):
        assert select_strategy(self.space(11), 1000) is OptimizationMethod.BAYESIAN

    def test_small_budget_uses_random(self):
        assert select_strategy(self.space(6), 50) is OptimizationMethod.RANDOM

    def test_otherwise_evolutionary(self):
        assert select_strategy(self.space(6), 100) is OptimizationMethod.EVOLUTIONARY

    def test_parameter_rule_wins_over_budget(self):
        assert select_strategy(self.space(12), 10) is OptimizationMethod.BAYESIAN

    def test_explicit_request(self):
        assert select_strategy(self.space(6), 50, "grid") is OptimizationMethod.GRID
        assert select_strategy(self.space(6), 50, OptimizationMethod.META_LEARNED) is OptimizationMethod.META_LEARNED
