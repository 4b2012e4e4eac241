"""Tests for algorithm-level evolution and the lineage graph."""

import pytest

from algo_optimizer.errors import AlgorithmNotFound, AlreadyOptimizing, NotApplicable, OptimizationFailed
from algo_optimizer.evaluation import CandidateEvaluator
from algo_optimizer.evolution import (
    EvolutionaryDriver,
    EvolutionRecord,
    Lineage,
    registry_version,
)
from algo_optimizer.utils.common import ImprovementType


def driver_for(store, config, evaluator):
    return EvolutionaryDriver(store, evaluator, config, Lineage())


def make_record(version, parents, algorithm_id="nn"):
    return EvolutionRecord(
        evolution_id=f"evo-{version}",
        algorithm_id=algorithm_id,
        parent_version=parents[0],
        evolved_version=version,
        mutations=(),
        crossovers=(),
        fitness=0.5,
        generation=1,
        parent_versions=tuple(parents),
    )


class TestLineage:
    """Test the lineage arena."""

    def test_ancestors_follow_both_parents(self):
        lineage = Lineage()
        lineage.add(make_record("a", ["nn@v1"]))
        lineage.add(make_record("b", ["nn@v1"]))
        lineage.add(make_record("c", ["a", "b"]))
        lineage.add(make_record("d", ["c"]))

        assert [r.evolved_version for r in lineage.parents_of("c")] == ["a", "b"]
        assert [r.evolved_version for r in lineage.ancestors("d")] == ["c", "a", "b"]
        assert lineage.roots() == ["nn@v1"]

    def test_duplicate_version_rejected(self):
        lineage = Lineage()
        lineage.add(make_record("a", ["nn@v1"]))
        with pytest.raises(ValueError, match="already in the lineage"):
            lineage.add(make_record("a", ["nn@v1"]))

    def test_for_algorithm(self):
        lineage = Lineage()
        lineage.add(make_record("a", ["nn@v1"]))
        lineage.add(make_record("b", ["rf@v1"], algorithm_id="rf"))
        assert [r.evolved_version for r in lineage.for_algorithm("rf")] == ["b"]
        assert len(lineage) == 2


class TestEvolve:
    """Test evolution runs."""

    def test_constant_fitness_converges_within_bound(self, store, config, constant_evaluator):
        driver = driver_for(store, config, constant_evaluator(0.5))
        run = driver.evolve("genetic_algorithm", population_size=20, generations=10)

        assert run.converged
        assert run.generations_run <= 2
        assert len(run.records) <= 20 * 2
        assert len(driver.lineage) == len(run.records)

    def test_failed_individuals_are_dropped(self, store, config, flaky_scorer):
        evaluator = CandidateEvaluator(flaky_scorer(3), parallel=False)
        driver = driver_for(store, config, evaluator)
        run = driver.evolve("genetic_algorithm", population_size=20, generations=1)

        assert len(run.records) == 17
        assert len(run.failures) == 3
        assert run.best is not None

    def test_evolution_continues_past_a_partly_failed_generation(self, store, config, flaky_scorer):
        evaluator = CandidateEvaluator(flaky_scorer(3), parallel=False)
        driver = driver_for(store, config, evaluator)
        run = driver.evolve("genetic_algorithm", population_size=20, generations=3)

        first_generation = [r for r in run.records if r.generation == 1]
        assert len(first_generation) == 17
        assert len(run.failures) == 3
        assert run.generations_run >= 2
        assert any(r.generation > 1 for r in run.records)
        assert not store.is_leased("genetic_algorithm")

    @pytest.mark.parametrize("overrides", [{"population_size": 0}, {"generations": 0}])
    def test_zero_sizes_are_rejected(self, store, config, evaluator, overrides):
        driver = driver_for(store, config, evaluator)
        with pytest.raises(ValueError):
            driver.evolve("genetic_algorithm", **overrides)
        assert len(driver.lineage) == 0
        assert not store.is_leased("genetic_algorithm")

    def test_every_individual_failing(self, store, config, flaky_scorer):
        driver = driver_for(store, config, CandidateEvaluator(flaky_scorer(10_000), parallel=False))
        with pytest.raises(OptimizationFailed):
            driver.evolve("genetic_algorithm", population_size=6, generations=2)
        assert len(driver.lineage) == 0
        assert not store.is_leased("genetic_algorithm")

    def test_expired_deadline_returns_empty_run(self, store, config, evaluator):
        driver = driver_for(store, config, evaluator)
        run = driver.evolve("genetic_algorithm", deadline_seconds=0)

        assert run.budget_exhausted
        assert run.records == []
        assert run.best is None
        with pytest.raises(NotApplicable):
            driver.apply_best_evolution(run)

    def test_records_link_to_registry_revision(self, store, config, evaluator):
        driver = driver_for(store, config, evaluator)
        run = driver.evolve("genetic_algorithm", population_size=6, generations=3)

        assert run.base_version == "genetic_algorithm@v1"
        assert "genetic_algorithm@v1" in driver.lineage.roots()
        first_generation = [r for r in run.records if r.generation == 1]
        assert all(r.parent_version == "genetic_algorithm@v1" for r in first_generation)
        # The current configuration is the first individual and carries no changes.
        assert first_generation[0].mutations == ()

    def test_offspring_have_evolved_ancestors(self, store, config):
        evaluator = CandidateEvaluator(lambda a, p, m: min(1.0, p["dropout_rate"] + 0.4), parallel=False)
        driver = driver_for(store, config, evaluator)
        run = driver.evolve("genetic_algorithm", population_size=6, generations=3)

        later = [r for r in run.records if r.generation > 1]
        assert later
        for record in later:
            assert driver.lineage.ancestors(record.evolved_version)
            if record.crossovers:
                assert len(record.parent_versions) == 2

    def test_run_is_not_committed(self, store, config, evaluator):
        driver_for(store, config, evaluator).evolve("genetic_algorithm", population_size=6, generations=2)
        assert store.get("genetic_algorithm").version == 1

    def test_concurrent_run_rejected(self, store, config, evaluator):
        driver = driver_for(store, config, evaluator)
        with store.lease("genetic_algorithm"):
            with pytest.raises(AlreadyOptimizing):
                driver.evolve("genetic_algorithm")

    def test_to_dict(self, store, config, evaluator):
        run = driver_for(store, config, evaluator).evolve("ml_models", population_size=4, generations=2)
        data = run.to_dict()
        assert data["algorithm_id"] == "ml_models"
        assert len(data["records"]) == len(run.records)
        assert data["improvement"] == run.improvement


class TestApplyBestEvolution:
    """Test committing evolution results."""

    def test_better_individual_is_applied(self, store, config, constant_evaluator):
        driver = driver_for(store, config, constant_evaluator(0.95))
        run = driver.evolve("neural_network", population_size=6, generations=2)
        updated = driver.apply_best_evolution(run)

        assert updated.version == 2
        assert updated.performance_metrics["accuracy"] == 0.95
        for name, value in run.best.parameters.items():
            assert updated.parameters[name] == value
        event = updated.history_of(ImprovementType.EVOLUTION)[-1]
        assert event.applied
        assert event.details["evolved_version"] == run.best.evolved_version
        assert event.improvement == pytest.approx((0.95 - 0.85) / 0.85)

    def test_worse_individual_is_only_recorded(self, store, config, constant_evaluator):
        before = store.get("neural_network")
        driver = driver_for(store, config, constant_evaluator(0.5))
        updated = driver.apply_best_evolution(driver.evolve("neural_network", population_size=6, generations=2))

        assert updated.parameters == before.parameters
        assert updated.performance_metrics == before.performance_metrics
        event = updated.improvement_history[-1]
        assert not event.applied
        assert event.improvement == 0.0

    def test_registry_version_format(self, store):
        assert registry_version(store.get("ml_models")) == "ml_models@v1"


class TestEvolveMany:
    """Test batch evolution."""

    def test_errors_are_captured_per_id(self, store, config, evaluator):
        driver = driver_for(store, config, evaluator)
        batch = driver.evolve_many(["ml_models", "missing", "neural_network"], population_size=4, generations=2)

        assert sorted(batch.succeeded) == ["ml_models", "neural_network"]
        assert batch.failed == ["missing"]
        assert isinstance(batch.errors["missing"], AlgorithmNotFound)
        assert batch.to_dict()["errors"]["missing"]["retryable"] is True

    def test_unexpected_errors_are_captured_per_id(self, store, config, evaluator):
        class FailingLineage(Lineage):
            def add(self, record):
                if record.algorithm_id == "ml_models":
                    raise RuntimeError("lineage storage unavailable")
                super().add(record)

        driver = EvolutionaryDriver(store, evaluator, config, FailingLineage())
        batch = driver.evolve_many(["ml_models", "neural_network"], population_size=4, generations=2)

        assert batch.succeeded == ["neural_network"]
        error = batch.errors["ml_models"]
        assert isinstance(error, OptimizationFailed)
        assert isinstance(error.cause, RuntimeError)
        assert not store.is_leased("ml_models")

    def test_parallel_runs(self, store, config, evaluator):
        driver = driver_for(store, config.with_updates(parallel_optimization=True, max_workers=3), evaluator)
        batch = driver.evolve_many(["ml_models", "neural_network", "genetic_algorithm"], population_size=4, generations=2)
        assert len(batch.results) == 3
        assert not batch.errors
