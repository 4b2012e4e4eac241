"""Tests for learning-rate adaptation."""

import numpy as np
import pytest

from algo_optimizer.errors import OperationDisabled
from algo_optimizer.evaluation import CandidateEvaluator
from algo_optimizer.learning_rate import (
    LearningDynamics,
    LearningRateAdapter,
    LearningRateSchedule,
    analyze_learning_dynamics,
    generate_schedule,
    select_adaptation_method,
)
from algo_optimizer.utils.common import AdaptationMethod, ImprovementType, ScheduleKind

IMPROVING = [0.5, 0.55, 0.6, 0.65, 0.7]
PLATEAU = [0.8, 0.8, 0.8, 0.8, 0.8]
VOLATILE = [0.5, 0.8, 0.4, 0.9, 0.3]


def dynamics(direction="plateau", volatility=0.0):
    return LearningDynamics(direction, 0.0, volatility, 0.8, 0.8, 5)


class TestDynamics:
    """Test performance trajectory analysis."""

    def test_improving(self):
        result = analyze_learning_dynamics(IMPROVING)
        assert result.direction == "improving"
        assert result.slope == pytest.approx(0.05)
        assert not result.volatile
        assert result.best == 0.7

    def test_declining(self):
        assert analyze_learning_dynamics(IMPROVING[::-1]).direction == "declining"

    def test_plateau(self):
        result = analyze_learning_dynamics(PLATEAU)
        assert result.direction == "plateau"
        assert result.volatility == 0.0

    def test_volatile(self):
        assert analyze_learning_dynamics(VOLATILE).volatile

    def test_single_point_is_plateau(self):
        result = analyze_learning_dynamics([0.85])
        assert result.direction == "plateau"
        assert result.n_points == 1

    def test_non_finite_values_are_ignored(self):
        assert analyze_learning_dynamics([0.5, float("nan"), 0.6]).n_points == 2

    def test_empty_history(self):
        with pytest.raises(ValueError):
            analyze_learning_dynamics([float("nan")])


class TestMethodSelection:
    """Test adaptation method rules."""

    def test_rules(self):
        assert select_adaptation_method(dynamics(volatility=0.2)) is AdaptationMethod.ADAPTIVE
        assert select_adaptation_method(dynamics("plateau")) is AdaptationMethod.COSINE
        assert select_adaptation_method(dynamics("declining")) is AdaptationMethod.STEP
        assert select_adaptation_method(dynamics("improving")) is AdaptationMethod.EXPONENTIAL

    def test_history_wins(self):
        past = [(0.1, LearningRateSchedule.constant(0.01))] * 3
        assert select_adaptation_method(dynamics(volatility=0.2), past) is AdaptationMethod.META_LEARNED

    def test_meta_learned_reuses_best_shape(self):
        past = [
            (0.05, LearningRateSchedule(ScheduleKind.DECAY, 0.1, {"gamma": 0.9})),
            (0.20, LearningRateSchedule(ScheduleKind.CYCLIC, 0.1, {"period": 8})),
        ]
        schedule = generate_schedule(AdaptationMethod.META_LEARNED, 0.003, dynamics(), past)
        assert schedule.kind is ScheduleKind.CYCLIC
        assert schedule.base_rate == 0.003
        assert schedule.parameters == {"period": 8}


class TestSchedules:
    """Test schedule shapes."""

    def test_decay(self):
        rates = LearningRateSchedule(ScheduleKind.DECAY, 0.1, {"gamma": 0.5}).rates(3)
        assert rates.tolist() == pytest.approx([0.1, 0.05, 0.025])

    def test_step_drops_at_milestones(self):
        schedule = generate_schedule(AdaptationMethod.STEP, 0.1, dynamics("declining"))
        rates = schedule.rates(100)
        assert rates[0] == pytest.approx(0.1)
        assert rates[25] == pytest.approx(0.05)
        assert rates[99] == pytest.approx(0.0125)

    def test_exponential_halves_over_horizon(self):
        schedule = generate_schedule(AdaptationMethod.EXPONENTIAL, 0.1, dynamics("improving"))
        assert schedule.rates(101)[100] == pytest.approx(0.05)

    def test_warm_restart_returns_to_base(self):
        schedule = LearningRateSchedule(ScheduleKind.WARM_RESTART, 0.1, {"period": 10, "t_mult": 2})
        rates = schedule.rates(40)
        assert rates[0] == pytest.approx(0.1)
        assert rates[9] < 0.01
        assert rates[10] == pytest.approx(0.1)
        assert rates[30] == pytest.approx(0.1)

    def test_cyclic(self):
        schedule = LearningRateSchedule(ScheduleKind.CYCLIC, 0.1, {"period": 10, "min_rate": 0.01})
        rates = schedule.rates(11)
        assert rates[0] == pytest.approx(0.1)
        assert rates[5] == pytest.approx(0.01)
        assert rates[10] == pytest.approx(0.1)

    def test_adaptive_reduces_more_when_volatile(self):
        calm = generate_schedule(AdaptationMethod.ADAPTIVE, 0.1, dynamics(volatility=0.06))
        wild = generate_schedule(AdaptationMethod.ADAPTIVE, 0.1, dynamics(volatility=0.15))
        assert wild.mean_rate() < calm.mean_rate()

    def test_rates_are_positive(self):
        for method in AdaptationMethod:
            schedule = generate_schedule(method, 0.01, dynamics(volatility=0.2))
            assert np.all(schedule.rates(200) > 0)

    def test_invalid_schedule(self):
        with pytest.raises(ValueError):
            LearningRateSchedule(ScheduleKind.CONSTANT, 0.0)
        with pytest.raises(ValueError):
            LearningRateSchedule(ScheduleKind.DECAY, 0.1, milestones=[10], factors=[])

    def test_dict_round_trip(self):
        schedule = generate_schedule(AdaptationMethod.STEP, 0.1, dynamics("declining"))
        assert LearningRateSchedule.from_dict(schedule.to_dict()) == schedule


class TestLearningRateAdapter:
    """Test the adapt operation."""

    def test_accepted_schedule(self, store, config, constant_evaluator):
        adapter = LearningRateAdapter(store, constant_evaluator(0.9), config)
        result = adapter.adapt("neural_network", PLATEAU)

        assert result.accepted
        assert result.method is AdaptationMethod.COSINE
        assert result.schedule.kind is ScheduleKind.WARM_RESTART
        assert result.current_rate == 0.001
        assert result.improvement == pytest.approx(0.125)

        record = store.get("neural_network")
        assert record.parameters["learning_rate"] == 0.001
        event = record.history_of(ImprovementType.LEARNING_RATE)[-1]
        assert event.applied
        assert event.details["schedule"] == result.schedule.to_dict()
        assert record.version == 2

    def test_rejected_schedule_falls_back_to_constant(self, store, config, constant_evaluator):
        adapter = LearningRateAdapter(store, constant_evaluator(0.5), config)
        result = adapter.adapt("neural_network", PLATEAU)

        assert not result.accepted
        assert result.schedule == LearningRateSchedule.constant(0.001)
        assert result.proposed_schedule.kind is ScheduleKind.WARM_RESTART
        assert result.improvement == 0.0
        assert not store.get("neural_network").improvement_history[-1].applied

    def test_within_tolerance_is_accepted(self, store, config, constant_evaluator):
        adapter = LearningRateAdapter(store, constant_evaluator(0.79), config)
        assert adapter.adapt("neural_network", PLATEAU).accepted

    def test_failed_prediction_is_rejected(self, store, config, flaky_scorer):
        adapter = LearningRateAdapter(store, CandidateEvaluator(flaky_scorer(100), parallel=False), config)
        result = adapter.adapt("neural_network", PLATEAU)
        assert result.predicted_score is None
        assert not result.accepted

    def test_scored_candidate_carries_schedule(self, store, config):
        scored = []

        def scorer(algorithm_id, parameters, metric):
            scored.append(parameters)
            return 0.9

        LearningRateAdapter(store, CandidateEvaluator(scorer, parallel=False), config).adapt("ml_models", IMPROVING)
        assert scored[0]["lr_schedule"] == ScheduleKind.DECAY.value
        assert scored[0]["learning_rate"] < 0.001

    def test_history_defaults_to_registry(self, store, config, constant_evaluator):
        store.upsert("ml_models", lambda r: r.performance_metrics.update(accuracy=0.9))
        result = LearningRateAdapter(store, constant_evaluator(0.95), config).adapt("ml_models")
        assert result.dynamics.n_points == 2
        assert result.dynamics.direction == "improving"

    def test_repeated_success_switches_to_meta_learned(self, store, config, constant_evaluator):
        adapter = LearningRateAdapter(store, constant_evaluator(0.9), config)
        for _ in range(3):
            assert adapter.adapt("neural_network", PLATEAU).accepted
        result = adapter.adapt("neural_network", PLATEAU)
        assert result.method is AdaptationMethod.META_LEARNED
        assert result.schedule.kind is ScheduleKind.WARM_RESTART

    def test_disabled(self, store, config, evaluator):
        adapter = LearningRateAdapter(store, evaluator, config.with_updates(learning_rate_adaptation=False))
        with pytest.raises(OperationDisabled):
            adapter.adapt("neural_network", PLATEAU)

    def test_invalid_history_releases_lease(self, store, config, evaluator):
        adapter = LearningRateAdapter(store, evaluator, config)
        with pytest.raises(ValueError):
            adapter.adapt("neural_network", [])
        assert not store.is_leased("neural_network")
        assert store.get("neural_network").version == 1
