from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np
from scipy.spatial import distance

from .records import ImprovementRecord
from .utils.common import AlgorithmType, ImprovementType
from .utils.utils import hash_dict, relative_improvement, unit_clamp

if TYPE_CHECKING:
    from collections.abc import Sequence

    from .records import AlgorithmRecord
    from .registry import PerformanceStore

logger = logging.getLogger(__name__)

# Only insights above this potential are surfaced.
SURFACE_THRESHOLD = 0.5
# Insights above this potential are reported as synergies.
SYNERGY_THRESHOLD = 0.7
# A relative performance gap of 1 / GAP_SCALE counts as the maximum gap.
GAP_SCALE = 5.0
# Minimum metric lead for a capability to be transferable.
CAPABILITY_MARGIN = 0.02

_TYPE_AFFINITY = {
    frozenset({AlgorithmType.NEURAL, AlgorithmType.ENSEMBLE}): 0.6,
    frozenset({AlgorithmType.STATISTICAL, AlgorithmType.ENSEMBLE}): 0.7,
    frozenset({AlgorithmType.NEURAL, AlgorithmType.STATISTICAL}): 0.5,
    frozenset({AlgorithmType.HEURISTIC, AlgorithmType.NEURAL}): 0.4,
}
_DEFAULT_AFFINITY = 0.3


def type_affinity(a: AlgorithmType, b: AlgorithmType) -> float:
    if a is b:
        return 1.0
    return _TYPE_AFFINITY.get(frozenset({a, b}), _DEFAULT_AFFINITY)


def unit_metrics(record: AlgorithmRecord) -> dict[str, float]:
    """Metrics of ``record`` that are scores or rates in [0, 1]."""
    return {
        name: float(value)
        for name, value in record.performance_metrics.items()
        if 0.0 <= value <= 1.0 and name != "error_rate"
    }




@dataclass
class TransferInsight:
    """Transfer opportunity from a stronger to a weaker algorithm.

    Attributes:
        source_algorithm: Algorithm the capabilities come from.
        target_algorithm: Algorithm that would receive them.
        transfer_potential: Estimated likelihood in [0, 1] that the transfer helps.
        transferable_capabilities: Metrics the source leads on and parameters
            the target could adopt.
        expected_improvement: Expected relative improvement of the target.
        shared_patterns: Parameters both algorithms expose.
        implementation_complexity: Estimated effort in [0, 1].
        components: Type affinity, metric similarity and performance gap.
    """

    source_algorithm: str
    target_algorithm: str
    transfer_potential: float
    transferable_capabilities: list[str]
    expected_improvement: float
    shared_patterns: list[str] = field(default_factory=list)
    implementation_complexity: float = 0.0
    components: dict[str, float] = field(default_factory=dict)

    @property
    def key(self) -> str:
        """Identity used to make applying an insight idempotent."""
        digest = hash_dict({"capabilities": sorted(self.transferable_capabilities)})[:12]
        return f"{self.source_algorithm}->{self.target_algorithm}:{digest}"

    @property
    def is_synergy(self) -> bool:
        return self.transfer_potential > SYNERGY_THRESHOLD

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "source_algorithm": self.source_algorithm,
            "target_algorithm": self.target_algorithm,
            "transfer_potential": self.transfer_potential,
            "transferable_capabilities": list(self.transferable_capabilities),
            "expected_improvement": self.expected_improvement,
            "shared_patterns": list(self.shared_patterns),
            "implementation_complexity": self.implementation_complexity,
            "components": dict(self.components),
        }


def analyze_pair(a: AlgorithmRecord, b: AlgorithmRecord) -> TransferInsight:
    """Transfer insight for an unordered pair of algorithms.

    The better performer (higher mean unit metric) becomes the source.
    ``potential = 0.4 * type affinity + 0.3 * metric similarity + 0.3 * gap``
    where similarity is the cosine similarity of the shared metric profiles
    and gap is the relative performance difference scaled into [0, 1].
    """
    metrics_a, metrics_b = unit_metrics(a), unit_metrics(b)
    shared = sorted(set(metrics_a) & set(metrics_b))

    mean_a = float(np.mean(list(metrics_a.values()))) if metrics_a else 0.0
    mean_b = float(np.mean(list(metrics_b.values()))) if metrics_b else 0.0
    if mean_b > mean_a or (mean_b == mean_a and b.algorithm_id < a.algorithm_id):
        a, b = b, a
        metrics_a, metrics_b = metrics_b, metrics_a
        mean_a, mean_b = mean_b, mean_a

    if shared:
        profile_a = np.array([metrics_a[m] for m in shared])
        profile_b = np.array([metrics_b[m] for m in shared])
        if np.any(profile_a) and np.any(profile_b):
            similarity = unit_clamp(1.0 - distance.cosine(profile_a, profile_b))
        else:
            similarity = 0.0
    else:
        similarity = 0.0

    affinity = type_affinity(a.algorithm_type, b.algorithm_type)
    relative_gap = max(0.0, relative_improvement(mean_a, mean_b))
    gap = unit_clamp(relative_gap * GAP_SCALE)
    potential = unit_clamp(0.4 * affinity + 0.3 * similarity + 0.3 * gap)

    shared_parameters = sorted(set(a.parameters) & set(b.parameters))
    capabilities = [m for m in shared if metrics_a[m] - metrics_b[m] > CAPABILITY_MARGIN]
    capabilities += [
        f"parameter:{name}" for name in shared_parameters if a.parameters[name] != b.parameters[name]
    ]

    return TransferInsight(
        source_algorithm=a.algorithm_id,
        target_algorithm=b.algorithm_id,
        transfer_potential=potential,
        transferable_capabilities=capabilities,
        expected_improvement=potential * relative_gap,
        shared_patterns=shared_parameters,
        implementation_complexity=unit_clamp(0.2 + 0.6 * (1.0 - affinity) + 0.05 * len(capabilities)),
        components={"type_affinity": affinity, "metric_similarity": similarity, "performance_gap": gap},
    )


@dataclass
class InsightApplication:
    """Result of applying a :class:`TransferInsight`."""

    key: str
    target_algorithm: str
    applied: bool
    version: int
    transferred_parameters: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "target_algorithm": self.target_algorithm,
            "applied": self.applied,
            "version": self.version,
            "transferred_parameters": dict(self.transferred_parameters),
        }


@dataclass
class TransferReport:
    """Outcome of one transfer-learning pass."""

    insights: list[TransferInsight]
    synergies: list[TransferInsight]
    applications: list[InsightApplication] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "insights": [i.to_dict() for i in self.insights],
            "synergies": [s.to_dict() for s in self.synergies],
            "applications": [a.to_dict() for a in self.applications],
        }


class TransferEngine:
    """Finds and applies insights between registered algorithms."""

    def __init__(self, store: PerformanceStore) -> None:
        self.store = store

    def find_transfer_insights(self, algorithm_ids: Sequence[str] | None = None) -> list[TransferInsight]:
        """Insights with potential above 0.5 for every unordered pair, best first.

        Raises:
            AlgorithmNotFound: If an id is not registered.
        """
        ids = sorted(set(algorithm_ids if algorithm_ids is not None else self.store.ids()))
        records = {algorithm_id: self.store.get(algorithm_id) for algorithm_id in ids}

        insights = []
        for first, second in itertools.combinations(ids, 2):
            insight = analyze_pair(records[first], records[second])
            logger.debug(
                "Transfer %s -> %s: potential %.3f",
                insight.source_algorithm,
                insight.target_algorithm,
                insight.transfer_potential,
            )
            if insight.transfer_potential > SURFACE_THRESHOLD:
                insights.append(insight)

        insights.sort(key=lambda i: i.transfer_potential, reverse=True)
        logger.info("Found %d transfer insights across %d algorithms", len(insights), len(ids))
        return insights

    @staticmethod
    def identify_synergies(insights: Sequence[TransferInsight]) -> list[TransferInsight]:
        return [insight for insight in insights if insight.is_synergy]

    def apply_insight(self, insight: TransferInsight) -> InsightApplication:
        """Apply ``insight`` to its target; a second application is a no-op.

        Parameters listed as capabilities are copied from the source's
        current configuration and a transfer event is recorded.

        Raises:
            AlgorithmNotFound: If source or target is not registered.
            AlreadyOptimizing: If another run holds the target.
        """
        source = self.store.get(insight.source_algorithm)
        with self.store.lease(insight.target_algorithm) as target:
            if insight.key in target.applied_insights:
                logger.info("Insight %s already applied", insight.key)
                return InsightApplication(insight.key, target.algorithm_id, False, target.version)

            transferred = {
                name: source.parameters[name]
                for name in (c.removeprefix("parameter:") for c in insight.transferable_capabilities)
                if name in source.parameters and name in target.parameters
            }

            def commit(rec: AlgorithmRecord) -> None:
                rec.parameters.update(transferred)
                rec.applied_insights.append(insight.key)
                rec.improvement_history.append(
                    ImprovementRecord(
                        improvement_type=ImprovementType.TRANSFER,
                        improvement=insight.expected_improvement,
                        confidence=insight.transfer_potential,
                        method=f"transfer_from:{insight.source_algorithm}",
                        parameters=dict(transferred),
                        applied=True,
                        version=rec.version + 1,
                        details={"insight": insight.to_dict()},
                    )
                )

            updated = self.store.upsert(insight.target_algorithm, commit)

        logger.info(
            "Applied insight %s: %d parameters transferred", insight.key, len(transferred)
        )
        return InsightApplication(insight.key, updated.algorithm_id, True, updated.version, transferred)

    def run(self, algorithm_ids: Sequence[str] | None = None, apply_synergies: bool = False) -> TransferReport:
        """One transfer-learning pass, optionally applying every synergy."""
        insights = self.find_transfer_insights(algorithm_ids)
        synergies = self.identify_synergies(insights)
        applications = [self.apply_insight(s) for s in synergies] if apply_synergies else []
        return TransferReport(insights, synergies, applications)
