from __future__ import annotations

from enum import Enum




class AlgorithmType(Enum):
    """Family of an optimizable algorithm."""

    NEURAL = "neural"
    STATISTICAL = "statistical"
    HEURISTIC = "heuristic"
    ENSEMBLE = "ensemble"

    @classmethod
    def from_string(cls, value: str | AlgorithmType) -> AlgorithmType:
        """Create from string value."""
        if isinstance(value, cls):
            return value
        try:
            return cls(value.lower())
        except ValueError:
            msg = f"Unknown algorithm type: {value}"
            raise ValueError(msg) from None


class OptimizationMethod(Enum):
    """Hyperparameter search strategies."""

    GRID = "grid"
    RANDOM = "random"
    BAYESIAN = "bayesian"
    EVOLUTIONARY = "evolutionary"
    META_LEARNED = "meta_learned"


class ArchitectureSearchMethod(Enum):
    """Architecture search strategies."""

    NAS = "nas"
    EVOLUTIONARY = "evolutionary"
    GRADIENT_BASED = "gradient_based"
    META_LEARNED = "meta_learned"


class AdaptationMethod(Enum):
    """Learning-rate adaptation methods."""

    COSINE = "cosine"
    EXPONENTIAL = "exponential"
    STEP = "step"
    ADAPTIVE = "adaptive"
    META_LEARNED = "meta_learned"


class ScheduleKind(Enum):
    """Shape of a learning-rate schedule."""

    CONSTANT = "constant"
    DECAY = "decay"
    CYCLIC = "cyclic"
    WARM_RESTART = "warm_restart"
    ADAPTIVE = "adaptive"


class FeatureKind(Enum):
    """Kinds of input features."""

    NUMERICAL = "numerical"
    CATEGORICAL = "categorical"
    TEXT = "text"
    TEMPORAL = "temporal"
    DERIVED = "derived"


class EngineeringMethodType(Enum):
    """Feature engineering methods."""

    POLYNOMIAL = "polynomial"
    INTERACTION = "interaction"
    BINNING = "binning"
    SCALING = "scaling"
    EMBEDDING = "embedding"
    AUTO_FEATURE = "auto_feature"


class ImprovementType(Enum):
    """Source of an entry in an algorithm's improvement history."""

    HYPERPARAMETER = "hyperparameter"
    ARCHITECTURE = "architecture"
    LEARNING_RATE = "learning_rate"
    FEATURE_ENGINEERING = "feature_engineering"
    EVOLUTION = "evolution"
    TRANSFER = "transfer"


class ParameterKind(Enum):
    """Kind of a search-space parameter."""

    CONTINUOUS = "continuous"
    DISCRETE = "discrete"
    CATEGORICAL = "categorical"


class ParameterScale(Enum):
    """Sampling scale of a search-space parameter."""

    LINEAR = "linear"
    LOG = "log"
    UNIFORM = "uniform"


class OptimizationDirection(Enum):
    """Direction of an objective."""

    MAXIMIZE = "maximize"
    MINIMIZE = "minimize"
