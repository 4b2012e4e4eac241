"""Persisted record types for algorithms and their optimization history."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

from .utils.common import AlgorithmType, ImprovementType
from .utils.utils import to_builtin

LAYER_KINDS = ("dense", "conv", "lstm", "attention", "dropout", "batch_norm")
CONNECTION_KINDS = ("forward", "skip", "recurrent")
OPTIMIZER_KINDS = ("adam", "sgd", "rmsprop", "adagrad")

# Layer kinds that hold trainable weights.
_WEIGHTED_LAYERS = {"dense": 1.0, "conv": 0.25, "lstm": 4.0, "attention": 3.0}




@dataclass(frozen=True)
class LayerSpec:
    """One layer of a network architecture."""

    kind: str
    size: int
    position: int
    parameters: dict[str, Any] = field(default_factory=dict, hash=False, compare=False)

    def __post_init__(self) -> None:
        if self.kind not in LAYER_KINDS:
            msg = f"Unknown layer kind: {self.kind}"
            raise ValueError(msg)
        if self.size < 0:
            msg = f"Layer size must be >= 0, got {self.size}"
            raise ValueError(msg)


@dataclass(frozen=True)
class ConnectionSpec:
    """Directed connection between two layer positions."""

    source: int
    target: int
    kind: str = "forward"
    weight: float = 1.0

    def __post_init__(self) -> None:
        if self.kind not in CONNECTION_KINDS:
            msg = f"Unknown connection kind: {self.kind}"
            raise ValueError(msg)


@dataclass(frozen=True)
class OptimizerSpec:
    """Training optimizer settings."""

    kind: str = "adam"
    learning_rate: float = 0.001
    momentum: float | None = None
    beta1: float | None = 0.9
    beta2: float | None = 0.999
    epsilon: float | None = 1e-8

    def __post_init__(self) -> None:
        if self.kind not in OPTIMIZER_KINDS:
            msg = f"Unknown optimizer kind: {self.kind}"
            raise ValueError(msg)


@dataclass(frozen=True)
class RegularizationSpec:
    l1: float = 0.0
    l2: float = 0.0
    dropout: float = 0.0
    batch_norm: bool = False
    early_stopping_patience: int = 10


@dataclass(frozen=True)
class ArchitectureSpec:
    """Structural description of a network-like algorithm.

    Attributes:
        layers: Ordered layers.
        connections: Connections between layer positions.
        activations: Activation function per weighted layer.
        optimizer: Training optimizer settings.
        regularization: Regularization settings.
    """

    layers: tuple[LayerSpec, ...]
    connections: tuple[ConnectionSpec, ...] = ()
    activations: tuple[str, ...] = ()
    optimizer: OptimizerSpec = field(default_factory=OptimizerSpec)
    regularization: RegularizationSpec = field(default_factory=RegularizationSpec)

    @property
    def depth(self) -> int:
        return sum(1 for layer in self.layers if layer.kind in _WEIGHTED_LAYERS)

    def parameter_count(self, input_size: int = 64) -> int:
        """Approximate trainable parameter count.

        Weighted layers contribute ``factor * fan_in * size + size``; skip
        connections add a projection when sizes differ.
        """
        total = 0.0
        fan_in = input_size
        sizes: dict[int, int] = {}
        for layer in self.layers:
            factor = _WEIGHTED_LAYERS.get(layer.kind)
            if factor is not None:
                total += factor * fan_in * layer.size + layer.size
                fan_in = layer.size
            elif layer.kind == "batch_norm":
                total += 2 * fan_in
            sizes[layer.position] = fan_in
        for conn in self.connections:
            if conn.kind == "forward":
                continue
            a, b = sizes.get(conn.source, 0), sizes.get(conn.target, 0)
            if a != b:
                total += a * b
        return int(total)

    def to_dict(self) -> dict[str, Any]:
        return {
            "layers": [
                {
                    "kind": layer.kind,
                    "size": layer.size,
                    "position": layer.position,
                    "parameters": dict(layer.parameters),
                }
                for layer in self.layers
            ],
            "connections": [
                {"source": c.source, "target": c.target, "kind": c.kind, "weight": c.weight}
                for c in self.connections
            ],
            "activations": list(self.activations),
            "optimizer": {
                "kind": self.optimizer.kind,
                "learning_rate": self.optimizer.learning_rate,
                "momentum": self.optimizer.momentum,
                "beta1": self.optimizer.beta1,
                "beta2": self.optimizer.beta2,
                "epsilon": self.optimizer.epsilon,
            },
            "regularization": {
                "l1": self.regularization.l1,
                "l2": self.regularization.l2,
                "dropout": self.regularization.dropout,
                "batch_norm": self.regularization.batch_norm,
                "early_stopping_patience": self.regularization.early_stopping_patience,
            },
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ArchitectureSpec:
        return cls(
            layers=tuple(LayerSpec(**layer) for layer in data.get("layers", [])),
            connections=tuple(ConnectionSpec(**c) for c in data.get("connections", [])),
            activations=tuple(data.get("activations", [])),
            optimizer=OptimizerSpec(**data.get("optimizer", {})),
            regularization=RegularizationSpec(**data.get("regularization", {})),
        )

    @classmethod
    def default(cls) -> ArchitectureSpec:
        """Two dense layers with dropout, trained with Adam."""
        return cls(
            layers=(
                LayerSpec("dense", 128, 0),
                LayerSpec("dropout", 0, 1, {"rate": 0.2}),
                LayerSpec("dense", 64, 2),
            ),
            connections=(ConnectionSpec(0, 1), ConnectionSpec(1, 2)),
            activations=("relu", "relu"),
            optimizer=OptimizerSpec(),
            regularization=RegularizationSpec(dropout=0.2),
        )




@dataclass
class ImprovementRecord:
    """One entry of an algorithm's improvement history.

    Attributes:
        improvement_type: Which optimizer produced the entry.
        improvement: Relative improvement ``(new - old) / max(old, EPS)``.
        confidence: Confidence in [0, 1].
        method: Strategy or method used.
        parameters: Parameters (or other payload) proposed by the run.
        applied: Whether the proposal became the current configuration.
        version: Record version the entry was committed with.
        timestamp: Unix time of the entry.
        details: Extra method-specific information.
    """

    improvement_type: ImprovementType
    improvement: float
    confidence: float = 0.0
    method: str = ""
    parameters: dict[str, Any] = field(default_factory=dict)
    applied: bool = True
    version: int = 0
    timestamp: float = field(default_factory=time.time)
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "improvement_type": self.improvement_type.value,
            "improvement": self.improvement,
            "confidence": self.confidence,
            "method": self.method,
            "parameters": to_builtin(self.parameters),
            "applied": self.applied,
            "version": self.version,
            "timestamp": self.timestamp,
            "details": to_builtin(self.details),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ImprovementRecord:
        data = dict(data)
        data["improvement_type"] = ImprovementType(data["improvement_type"])
        return cls(**data)


@dataclass
class AlgorithmRecord:
    """Performance and state snapshot of one optimizable algorithm.

    Attributes:
        algorithm_id: Unique identifier.
        algorithm_type: Algorithm family.
        performance_metrics: Named metric values (scores and rates in [0, 1]).
        parameters: Current best parameters.
        improvement_history: Ordered history of optimization attempts.
        version: Revision number, incremented on every committed update.
        architecture: Current architecture (neural algorithms only).
        architecture_history: Prior architectures, most recent last.
        applied_insights: Keys of transfer insights already applied.
    """

    algorithm_id: str
    algorithm_type: AlgorithmType
    performance_metrics: dict[str, float] = field(default_factory=dict)
    parameters: dict[str, Any] = field(default_factory=dict)
    improvement_history: list[ImprovementRecord] = field(default_factory=list)
    version: int = 1
    architecture: ArchitectureSpec | None = None
    architecture_history: list[ArchitectureSpec] = field(default_factory=list)
    applied_insights: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not self.algorithm_id:
            msg = "algorithm_id cannot be empty"
            raise ValueError(msg)
        self.algorithm_type = AlgorithmType.from_string(self.algorithm_type)

    def score(self, metric: str) -> float:
        """Recorded value of ``metric`` (0 when never measured)."""
        return float(self.performance_metrics.get(metric, 0.0))

    def history_of(self, improvement_type: ImprovementType) -> list[ImprovementRecord]:
        return [h for h in self.improvement_history if h.improvement_type is improvement_type]

    def to_dict(self) -> dict[str, Any]:
        return {
            "algorithm_id": self.algorithm_id,
            "algorithm_type": self.algorithm_type.value,
            "performance_metrics": dict(self.performance_metrics),
            "parameters": to_builtin(self.parameters),
            "improvement_history": [h.to_dict() for h in self.improvement_history],
            "version": self.version,
            "architecture": self.architecture.to_dict() if self.architecture else None,
            "architecture_history": [a.to_dict() for a in self.architecture_history],
            "applied_insights": list(self.applied_insights),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AlgorithmRecord:
        return cls(
            algorithm_id=data["algorithm_id"],
            algorithm_type=AlgorithmType.from_string(data["algorithm_type"]),
            performance_metrics=dict(data.get("performance_metrics", {})),
            parameters=dict(data.get("parameters", {})),
            improvement_history=[
                ImprovementRecord.from_dict(h) for h in data.get("improvement_history", [])
            ],
            version=int(data.get("version", 1)),
            architecture=(
                ArchitectureSpec.from_dict(data["architecture"]) if data.get("architecture") else None
            ),
            architecture_history=[
                ArchitectureSpec.from_dict(a) for a in data.get("architecture_history", [])
            ],
            applied_insights=list(data.get("applied_insights", [])),
        )
