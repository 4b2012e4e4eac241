"""Tests for architecture search."""

import pytest

from algo_optimizer.architecture_optimizer import (
    REFERENCE_PARAMETER_COUNT,
    ArchitectureOptimizer,
    architecture_efficiency,
    decode_genome,
    encode_architecture,
    normalized_complexity,
)
from algo_optimizer.errors import NotApplicable, OperationDisabled
from algo_optimizer.evaluation import CandidateEvaluator
from algo_optimizer.parameter_space.algorithm_space import build_architecture_space
from algo_optimizer.records import AlgorithmRecord, ArchitectureSpec
from algo_optimizer.utils.common import ArchitectureSearchMethod, ImprovementType


def depth_scorer(algorithm_id, parameters, metric):
    return 0.3 + 0.1 * parameters["n_layers"]


@pytest.fixture
def genome_space(store):
    return build_architecture_space(store.get("neural_network"))


class TestGenome:
    """Test genome encoding and complexity measures."""

    def test_encode_default_architecture(self, genome_space):
        genome = encode_architecture(ArchitectureSpec.default(), genome_space)
        assert genome["n_layers"] == 2
        assert genome["width"] == 128
        assert genome["width_decay"] == pytest.approx(0.5)
        assert genome["connection_pattern"] == "sequential"
        assert genome_space.contains(genome)

    def test_decode_reproduces_layer_sizes(self, genome_space):
        genome = encode_architecture(ArchitectureSpec.default(), genome_space)
        decoded = decode_genome(genome)
        assert [layer.size for layer in decoded.layers if layer.kind == "dense"] == [128, 64]
        assert decoded.depth == 2

    def test_decode_residual_and_recurrent_patterns(self, genome_space):
        genome = {**genome_space.sample(), "n_layers": 4, "layer_kind": "dense", "connection_pattern": "residual"}
        kinds = {c.kind for c in decode_genome(genome).connections}
        assert "skip" in kinds

        genome = {**genome, "connection_pattern": "sequential", "layer_kind": "lstm"}
        kinds = {c.kind for c in decode_genome(genome).connections}
        assert "recurrent" in kinds

    def test_decoded_sample_is_valid(self, genome_space):
        for genome in genome_space.sample_n(20):
            architecture = decode_genome(genome)
            assert architecture.depth == genome["n_layers"]
            assert architecture.parameter_count() > 0

    def test_complexity_bounds(self):
        assert normalized_complexity(0) == 0.0
        assert normalized_complexity(REFERENCE_PARAMETER_COUNT) == pytest.approx(1.0)
        assert normalized_complexity(10 * REFERENCE_PARAMETER_COUNT) == 1.0

    def test_efficiency_penalizes_size(self):
        assert architecture_efficiency(0.8, 0) == pytest.approx(0.8)
        assert architecture_efficiency(0.8, 1_000_000) < architecture_efficiency(0.8, 1_000)


class TestArchitectureOptimizer:
    """Test the optimize and rollback operations."""

    def test_better_architecture_is_applied_and_can_be_rolled_back(self, store, config):
        optimizer = ArchitectureOptimizer(store, CandidateEvaluator(depth_scorer, parallel=False), config)
        result = optimizer.optimize("neural_network", method="nas", budget=30)

        assert result.applied
        assert result.prior_score == pytest.approx(0.5)
        assert result.best_score > 0.5
        assert result.improvement == pytest.approx((result.best_score - 0.5) / 0.5)
        assert result.iterations <= 30
        assert result.complexity == result.optimized_architecture.parameter_count()

        record = store.get("neural_network")
        assert record.architecture == result.optimized_architecture
        assert record.architecture_history == [ArchitectureSpec.default()]
        assert record.history_of(ImprovementType.ARCHITECTURE)[-1].applied

        restored = optimizer.rollback("neural_network")
        assert restored == ArchitectureSpec.default()
        record = store.get("neural_network")
        assert record.architecture == ArchitectureSpec.default()
        assert record.architecture_history == []

    def test_no_better_candidate_keeps_architecture(self, store, config, constant_evaluator):
        optimizer = ArchitectureOptimizer(store, constant_evaluator(0.6), config)
        result = optimizer.optimize("neural_network", method="nas", budget=20)
        assert result.improvement == 0.0
        assert not result.applied
        assert result.optimized_architecture == result.current_architecture
        assert store.get("neural_network").architecture == ArchitectureSpec.default()

    @pytest.mark.parametrize("method", [m.value for m in ArchitectureSearchMethod])
    def test_every_method_respects_budget(self, store, config, evaluator, method):
        optimizer = ArchitectureOptimizer(store, evaluator, config)
        result = optimizer.optimize("neural_network", method=method, budget=30)
        assert 0 < result.iterations <= 30
        assert result.search_method.value == method
        assert 0.0 <= result.efficiency <= 1.0

    def test_non_neural_is_not_applicable(self, store, config, evaluator, statistical_record):
        store.register(statistical_record)
        before = store.revisions("stat_model_1")
        optimizer = ArchitectureOptimizer(store, evaluator, config)

        with pytest.raises(NotApplicable):
            optimizer.optimize("stat_model_1")
        assert store.revisions("stat_model_1") == before
        assert not store.is_leased("stat_model_1")

    def test_disabled(self, store, config, evaluator):
        optimizer = ArchitectureOptimizer(store, evaluator, config.with_updates(architecture_search_enabled=False))
        with pytest.raises(OperationDisabled):
            optimizer.optimize("neural_network")
        assert store.get("neural_network").version == 1

    def test_rollback_without_history(self, store, config, evaluator):
        with pytest.raises(NotApplicable, match="No previous architecture"):
            ArchitectureOptimizer(store, evaluator, config).rollback("neural_network")

    def test_method_selection(self, config, evaluator, store):
        optimizer = ArchitectureOptimizer(store, evaluator, config)
        record = AlgorithmRecord("nn", "neural")
        assert optimizer.select_method(record, 50) is ArchitectureSearchMethod.NAS
        assert optimizer.select_method(record, 500) is ArchitectureSearchMethod.EVOLUTIONARY
        record.architecture_history = [ArchitectureSpec.default()] * 3
        assert optimizer.select_method(record, 50) is ArchitectureSearchMethod.META_LEARNED

    def test_missing_architecture_falls_back_to_default(self, store, config, constant_evaluator):
        store.register(AlgorithmRecord("bare_net", "neural", performance_metrics={"accuracy": 0.5}))
        result = ArchitectureOptimizer(store, constant_evaluator(0.5), config).optimize("bare_net", budget=10)
        assert result.current_architecture == ArchitectureSpec.default()
