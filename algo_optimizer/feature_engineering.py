from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np

from .errors import OperationDisabled, OptimizationFailed
from .records import ImprovementRecord
from .utils.common import EngineeringMethodType, FeatureKind, ImprovementType
from .utils.config import OptimizerConfig
from .utils.utils import hash_dict, optimization_confidence, relative_improvement, validate_probability

if TYPE_CHECKING:
    from collections.abc import Sequence

    from .evaluation import CandidateEvaluator
    from .records import AlgorithmRecord
    from .registry import PerformanceStore

logger = logging.getLogger(__name__)

# Features below this importance are candidates for removal.
LOW_IMPORTANCE = 0.1
# Features of the same kind and transformations closer than this are redundant.
REDUNDANCY_TOLERANCE = 0.02




@dataclass
class FeatureSpec:
    """Input feature description.

    Attributes:
        name: Feature name.
        kind: Feature kind.
        importance: Importance in [0, 1].
        transformations: Ordered transformations applied to the raw input.
        encoding: Encoding of the final value.
    """

    name: str
    kind: FeatureKind
    importance: float
    transformations: list[str] = field(default_factory=list)
    encoding: str = "raw"

    def __post_init__(self) -> None:
        if isinstance(self.kind, str):
            self.kind = FeatureKind(self.kind)
        validate_probability(self.importance, f"importance of '{self.name}'")

    def derive(self, name: str, transformation: str, importance: float, **changes: Any) -> FeatureSpec:
        """New feature built from this one with one more transformation."""
        return FeatureSpec(
            name=name,
            kind=changes.get("kind", FeatureKind.DERIVED),
            importance=float(np.clip(importance, 0.0, 1.0)),
            transformations=[*self.transformations, transformation],
            encoding=changes.get("encoding", self.encoding),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "importance": self.importance,
            "transformations": list(self.transformations),
            "encoding": self.encoding,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FeatureSpec:
        return cls(
            name=data["name"],
            kind=FeatureKind(data["kind"]),
            importance=float(data["importance"]),
            transformations=list(data.get("transformations", [])),
            encoding=data.get("encoding", "raw"),
        )


def feature_set_signature(features: Sequence[FeatureSpec]) -> str:
    """Order-independent identifier of a feature set."""
    return hash_dict({"features": sorted((f.to_dict() for f in features), key=lambda d: d["name"])})


@dataclass
class FeatureAnalysis:
    """Importance and redundancy analysis of a feature set."""

    mean_importance: float
    by_kind: dict[FeatureKind, list[FeatureSpec]]
    low_importance: list[str]
    redundant: list[str]

    def of_kind(self, *kinds: FeatureKind) -> list[FeatureSpec]:
        """Features of the given kinds, most important first."""
        selected = [f for kind in kinds for f in self.by_kind.get(kind, [])]
        return sorted(selected, key=lambda f: f.importance, reverse=True)


def analyze_features(features: Sequence[FeatureSpec]) -> FeatureAnalysis:
    """Group features by kind and flag low-importance and redundant ones.

    A feature is redundant when an earlier feature has the same kind,
    transformations and encoding and an importance within
    ``REDUNDANCY_TOLERANCE``.
    """
    by_kind: dict[FeatureKind, list[FeatureSpec]] = {}
    redundant = []
    for i, feature in enumerate(features):
        by_kind.setdefault(feature.kind, []).append(feature)
        for other in features[:i]:
            if (
                other.kind is feature.kind
                and other.transformations == feature.transformations
                and other.encoding == feature.encoding
                and abs(other.importance - feature.importance) < REDUNDANCY_TOLERANCE
            ):
                redundant.append(feature.name)
                break

    return FeatureAnalysis(
        mean_importance=float(np.mean([f.importance for f in features])),
        by_kind=by_kind,
        low_importance=[f.name for f in features if f.importance < LOW_IMPORTANCE],
        redundant=redundant,
    )




@dataclass
class EngineeringMethod:
    """A feature engineering method with its expected impact and cost.

    Attributes:
        method: Method type.
        parameters: Method parameters.
        impact: Expected impact, scaled by the importance of the affected features.
        computational_cost: Relative computational cost in [0, 1].
    """

    method: EngineeringMethodType
    parameters: dict[str, Any]
    impact: float
    computational_cost: float

    def net_value(self, cost_weight: float) -> float:
        return self.impact - cost_weight * self.computational_cost

    def to_dict(self) -> dict[str, Any]:
        return {
            "method": self.method.value,
            "parameters": dict(self.parameters),
            "impact": self.impact,
            "computational_cost": self.computational_cost,
        }


# method: (base impact, computational cost, applicable feature kinds, default parameters)
METHOD_CATALOG: dict[EngineeringMethodType, tuple[float, float, tuple[FeatureKind, ...], dict[str, Any]]] = {
    EngineeringMethodType.POLYNOMIAL: (0.6, 0.4, (FeatureKind.NUMERICAL,), {"degree": 2, "top_k": 2}),
    EngineeringMethodType.INTERACTION: (0.7, 0.5, (FeatureKind.NUMERICAL, FeatureKind.DERIVED), {"max_pairs": 1}),
    EngineeringMethodType.BINNING: (0.4, 0.1, (FeatureKind.NUMERICAL, FeatureKind.TEMPORAL), {"n_bins": 10}),
    EngineeringMethodType.SCALING: (0.3, 0.05, (FeatureKind.NUMERICAL,), {"method": "standard"}),
    EngineeringMethodType.EMBEDDING: (0.65, 0.6, (FeatureKind.CATEGORICAL, FeatureKind.TEXT), {"dim": 16}),
    EngineeringMethodType.AUTO_FEATURE: (0.8, 0.9, tuple(FeatureKind), {"top_k": 3}),
}


def select_engineering_methods(
    analysis: FeatureAnalysis,
    cost_weight: float = 0.5,
    max_methods: int = 3,
) -> list[EngineeringMethod]:
    """Rank applicable methods by ``impact - cost_weight * cost``.

    Impact is scaled by the mean importance of the features a method applies
    to. Methods with no applicable features or non-positive net value are
    skipped.
    """
    candidates = []
    for method, (impact, cost, kinds, parameters) in METHOD_CATALOG.items():
        applicable = analysis.of_kind(*kinds)
        if not applicable:
            continue
        mean_importance = float(np.mean([f.importance for f in applicable]))
        candidate = EngineeringMethod(method, dict(parameters), impact * (0.5 + mean_importance), cost)
        if candidate.net_value(cost_weight) > 0:
            candidates.append(candidate)

    candidates.sort(key=lambda m: m.net_value(cost_weight), reverse=True)
    return candidates[:max_methods]


def apply_method(
    features: Sequence[FeatureSpec],
    method: EngineeringMethod,
    analysis: FeatureAnalysis,
) -> list[FeatureSpec]:
    """Return the feature set produced by ``method``; the input is not modified."""
    result = list(features)
    params = method.parameters
    kind = method.method

    if kind is EngineeringMethodType.POLYNOMIAL:
        degree = params.get("degree", 2)
        for f in analysis.of_kind(FeatureKind.NUMERICAL)[: params.get("top_k", 2)]:
            result.append(f.derive(f"{f.name}^{degree}", f"polynomial:{degree}", f.importance * 0.6))

    elif kind is EngineeringMethodType.INTERACTION:
        ranked = analysis.of_kind(FeatureKind.NUMERICAL, FeatureKind.DERIVED)
        for a, b in zip(ranked[::2], ranked[1::2], strict=False):
            if len(result) - len(features) >= params.get("max_pairs", 1):
                break
            importance = 0.7 * (a.importance + b.importance) / 2
            result.append(a.derive(f"{a.name}*{b.name}", f"interaction:{b.name}", importance))

    elif kind is EngineeringMethodType.BINNING:
        n_bins = params.get("n_bins", 10)
        for top in analysis.of_kind(FeatureKind.NUMERICAL, FeatureKind.TEMPORAL)[:1]:
            result.append(
                top.derive(
                    f"{top.name}_binned",
                    f"binning:{n_bins}",
                    top.importance * 0.8,
                    kind=FeatureKind.CATEGORICAL,
                    encoding="ordinal",
                )
            )

    elif kind is EngineeringMethodType.SCALING:
        transformation = f"scale:{params.get('method', 'standard')}"
        result = [
            FeatureSpec(f.name, f.kind, f.importance, [*f.transformations, transformation], f.encoding)
            if f.kind is FeatureKind.NUMERICAL and transformation not in f.transformations
            else f
            for f in result
        ]

    elif kind is EngineeringMethodType.EMBEDDING:
        encoding = f"embedding:{params.get('dim', 16)}"
        result = [
            FeatureSpec(f.name, f.kind, f.importance, list(f.transformations), encoding)
            if f.kind in (FeatureKind.CATEGORICAL, FeatureKind.TEXT)
            else f
            for f in result
        ]

    elif kind is EngineeringMethodType.AUTO_FEATURE:
        dropped = set(analysis.redundant) | set(analysis.low_importance)
        kept = [f for f in result if f.name not in dropped] or result
        top = sorted(kept, key=lambda f: f.importance, reverse=True)[: params.get("top_k", 3)]
        importance = 0.5 * float(np.mean([f.importance for f in top]))
        sources = ",".join(f.name for f in top)
        result = [*kept, top[0].derive(f"auto_{top[0].name}", f"aggregate:{sources}", importance)]

    return result




@dataclass
class FeatureEngineering:
    """Outcome of a feature engineering run.

    Attributes:
        algorithm_id: Algorithm whose features were engineered.
        original_features: Input feature set.
        engineered_features: Resulting feature set (the original set when
            no method improved the held-out score).
        methods: Methods whose output was kept.
        considered: Every method that was validated.
        baseline_score: Held-out score of the original set.
        validation_score: Held-out score of the resulting set.
        improvement: Relative improvement of the held-out score.
        confidence: Confidence in [0, 1].
    """

    algorithm_id: str
    original_features: list[FeatureSpec]
    engineered_features: list[FeatureSpec]
    methods: list[EngineeringMethod]
    considered: list[EngineeringMethod]
    baseline_score: float
    validation_score: float
    improvement: float
    confidence: float

    @property
    def applied(self) -> bool:
        return self.improvement > 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "algorithm_id": self.algorithm_id,
            "original_features": [f.to_dict() for f in self.original_features],
            "engineered_features": [f.to_dict() for f in self.engineered_features],
            "methods": [m.to_dict() for m in self.methods],
            "considered": [m.to_dict() for m in self.considered],
            "baseline_score": self.baseline_score,
            "validation_score": self.validation_score,
            "improvement": self.improvement,
            "confidence": self.confidence,
        }


class FeatureEngineer:
    """Proposes engineered feature sets and keeps those that validate.

    Selected methods are tried greedily in order of net value; each one is
    kept only if it raises the held-out score of the current set.
    """

    def __init__(
        self,
        store: PerformanceStore,
        evaluator: CandidateEvaluator,
        config: OptimizerConfig | None = None,
    ) -> None:
        self.store = store
        self.evaluator = evaluator
        self.config = config or OptimizerConfig()

    def _held_out_score(
        self,
        record: AlgorithmRecord,
        features: Sequence[FeatureSpec],
        metric: str,
    ) -> float | None:
        candidate = {
            **record.parameters,
            "feature_set": feature_set_signature(features),
            "n_features": len(features),
        }
        return self.evaluator.cross_validate(
            record.algorithm_id, candidate, metric, self.config.cross_validation_folds
        )

    def engineer(
        self,
        algorithm_id: str,
        features: Sequence[FeatureSpec],
        metric: str = "accuracy",
    ) -> FeatureEngineering:
        """Engineer the feature set of ``algorithm_id``.

        Raises:
            AlgorithmNotFound: If the id is not registered.
            OperationDisabled: If feature engineering is switched off.
            AlreadyOptimizing: If another run holds the id.
            OptimizationFailed: If the original feature set cannot be scored.
            ValueError: If ``features`` is empty.
        """
        if not self.config.feature_engineering_enabled:
            msg = "Feature engineering is disabled"
            raise OperationDisabled(msg, algorithm_id)
        if not features:
            msg = "At least one feature is required"
            raise ValueError(msg)

        original = list(features)
        with self.store.lease(algorithm_id) as record:
            baseline = self._held_out_score(record, original, metric)
            if baseline is None:
                msg = "Original feature set could not be scored"
                raise OptimizationFailed(algorithm_id, msg)

            analysis = analyze_features(original)
            considered = select_engineering_methods(analysis, self.config.feature_cost_weight)
            logger.info(
                "Engineering %d features for '%s' with %s",
                len(original),
                algorithm_id,
                [m.method.value for m in considered],
            )

            current, best_score, kept = original, baseline, []
            for method in considered:
                candidate = apply_method(current, method, analyze_features(current))
                score = self._held_out_score(record, candidate, metric)
                logger.debug("Method %s scored %s (best %.4f)", method.method.value, score, best_score)
                if score is not None and score > best_score:
                    current, best_score = candidate, score
                    kept.append(method)

            improvement = relative_improvement(best_score, baseline) if kept else 0.0
            if not kept:
                current, best_score = original, baseline
            confidence = optimization_confidence(improvement, len(considered) + 1)

            def commit(rec: AlgorithmRecord) -> None:
                rec.improvement_history.append(
                    ImprovementRecord(
                        improvement_type=ImprovementType.FEATURE_ENGINEERING,
                        improvement=improvement,
                        confidence=confidence,
                        method="+".join(m.method.value for m in kept) or "none",
                        parameters={"methods": [m.method.value for m in kept]},
                        applied=bool(kept),
                        version=rec.version + 1,
                        details={
                            "features": [f.to_dict() for f in current],
                            "validation_score": best_score,
                        },
                    )
                )

            self.store.upsert(algorithm_id, commit)

        logger.info("Feature engineering for '%s' finished: improvement %.2f%%", algorithm_id, improvement * 100)
        return FeatureEngineering(
            algorithm_id=algorithm_id,
            original_features=original,
            engineered_features=current,
            methods=kept,
            considered=considered,
            baseline_score=baseline,
            validation_score=best_score,
            improvement=improvement,
            confidence=confidence,
        )
