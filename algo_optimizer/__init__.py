"""Self-optimization engine for registered learning algorithms."""

from .api import AlgorithmOptimizer
from .errors import (
    AlgorithmNotFound,
    AlreadyOptimizing,
    EvaluationFailure,
    NotApplicable,
    OperationDisabled,
    OptimizationFailed,
    OptimizerError,
)
from .evaluation import CandidateEvaluator, SearchBudget, SeededEvaluator
from .records import AlgorithmRecord, ArchitectureSpec, ImprovementRecord
from .registry import InMemoryPerformanceStore, JsonPerformanceStore, PerformanceStore
from .utils.config import OptimizerConfig

__all__ = [
    "AlgorithmNotFound",
    "AlgorithmOptimizer",
    "AlgorithmRecord",
    "AlreadyOptimizing",
    "ArchitectureSpec",
    "CandidateEvaluator",
    "EvaluationFailure",
    "ImprovementRecord",
    "InMemoryPerformanceStore",
    "JsonPerformanceStore",
    "NotApplicable",
    "OperationDisabled",
    "OptimizationFailed",
    "OptimizerConfig",
    "OptimizerError",
    "PerformanceStore",
    "SearchBudget",
    "SeededEvaluator",
]
