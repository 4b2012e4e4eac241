from __future__ import annotations

import json
import logging
import sys
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class EvolutionConfig:
    """Configuration for population-based search.

    Shared by the evolutionary hyperparameter strategy, the architecture
    search and the algorithm-level evolutionary driver.

    Attributes:
        population_size: Number of individuals per generation.
        max_generations: Maximum number of generations.
        crossover_rate: Probability that two parents are recombined.
        mutation_rate: Per-parameter mutation probability.
        mutation_strength: Perturbation scale relative to a parameter range.
        selection_method: 'tournament' or 'roulette' (fitness-proportionate).
        tournament_size: Tournament size for tournament selection.
        elitism_count: Number of best individuals copied unchanged.
        patience: Generations without improvement before convergence.
        variance_epsilon: Fitness variance below which a generation has converged.
        improvement_tolerance: Minimum gain that counts as an improvement.
    """

    population_size: int = 20
    max_generations: int = 10
    crossover_rate: float = 0.8
    mutation_rate: float = 0.1
    mutation_strength: float = 0.1
    selection_method: str = "tournament"
    tournament_size: int = 3
    elitism_count: int = 1
    patience: int = 3
    variance_epsilon: float = 1e-9
    improvement_tolerance: float = 1e-9

    def __post_init__(self) -> None:
        """Validate evolution configuration."""
        if self.population_size < 2:
            msg = f"population_size must be >= 2, got {self.population_size}"
            raise ValueError(msg)

        if self.max_generations < 1:
            msg = f"max_generations must be >= 1, got {self.max_generations}"
            raise ValueError(msg)

        if not 0.0 <= self.crossover_rate <= 1.0:
            msg = f"crossover_rate must be in [0, 1], got {self.crossover_rate}"
            raise ValueError(msg)

        if not 0.0 <= self.mutation_rate <= 1.0:
            msg = f"mutation_rate must be in [0, 1], got {self.mutation_rate}"
            raise ValueError(msg)

        if self.selection_method not in {"tournament", "roulette"}:
            msg = f"selection_method must be 'tournament' or 'roulette', got {self.selection_method!r}"
            raise ValueError(msg)

        if self.tournament_size < 1:
            msg = f"tournament_size must be >= 1, got {self.tournament_size}"
            raise ValueError(msg)

        if not 0 <= self.elitism_count < self.population_size:
            msg = f"elitism_count ({self.elitism_count}) must be in [0, population_size)"
            raise ValueError(msg)

        if self.patience < 1:
            msg = f"patience must be >= 1, got {self.patience}"
            raise ValueError(msg)


@dataclass
class BayesianConfig:
    """Configuration for the successive-narrowing search.

    Attributes:
        initial_design: Latin Hypercube samples drawn before narrowing.
        shrink_factor: Fraction of the current range kept per narrowing round.
        min_fraction: Smallest fraction of the original range to search.
        early_stop_window: Evaluations over which progress is measured.
        early_stop_threshold: Relative gain below which the search stops.
    """

    initial_design: int = 10
    shrink_factor: float = 0.7
    min_fraction: float = 0.05
    early_stop_window: int = 10
    early_stop_threshold: float = 0.01

    def __post_init__(self) -> None:
        if self.initial_design < 1:
            msg = f"initial_design must be >= 1, got {self.initial_design}"
            raise ValueError(msg)
        if not 0.0 < self.shrink_factor < 1.0:
            msg = f"shrink_factor must be in (0, 1), got {self.shrink_factor}"
            raise ValueError(msg)
        if not 0.0 < self.min_fraction <= 1.0:
            msg = f"min_fraction must be in (0, 1], got {self.min_fraction}"
            raise ValueError(msg)
        if self.early_stop_window < 1:
            msg = f"early_stop_window must be >= 1, got {self.early_stop_window}"
            raise ValueError(msg)


@dataclass
class OptimizerConfig:
    """Main configuration for the self-optimization engine.

    Attributes:
        optimization_budget: Maximum evaluations per optimization call.
        architecture_search_enabled: Allow architecture optimization.
        learning_rate_adaptation: Allow learning-rate adaptation.
        feature_engineering_enabled: Allow feature engineering.
        cross_validation_folds: Folds averaged when validating a result.
        parallel_optimization: Evaluate candidates on a worker pool.
        max_workers: Worker pool size.
        batch_size: Candidates evaluated per batch by sequential strategies.
        deadline_seconds: Wall-clock limit per call (None = unlimited).
        random_seed: Random seed for reproducibility.
        verbosity: Verbosity level (0=warnings, 1=progress, 2=detailed).
        log_file: Log file path (None = no file logging).
        schedule_tolerance: Allowed predicted regression for LR schedules.
        feature_cost_weight: Weight of computational cost in method selection.
        evolution: Population-based search settings.
        bayesian: Successive-narrowing search settings.
    """

    optimization_budget: int = 1000
    architecture_search_enabled: bool = True
    learning_rate_adaptation: bool = True
    feature_engineering_enabled: bool = True
    cross_validation_folds: int = 5
    parallel_optimization: bool = True
    max_workers: int = 4
    batch_size: int = 10
    deadline_seconds: float | None = None
    random_seed: int | None = None
    verbosity: int = 1
    log_file: str | None = None
    schedule_tolerance: float = 0.02
    feature_cost_weight: float = 0.5
    evolution: EvolutionConfig = field(default_factory=EvolutionConfig)
    bayesian: BayesianConfig = field(default_factory=BayesianConfig)

    def __post_init__(self) -> None:
        """Validate and convert nested configs."""
        if isinstance(self.evolution, dict):
            self.evolution = EvolutionConfig(**self.evolution)
        if isinstance(self.bayesian, dict):
            self.bayesian = BayesianConfig(**self.bayesian)

        if self.optimization_budget < 1:
            msg = f"optimization_budget must be >= 1, got {self.optimization_budget}"
            raise ValueError(msg)

        if self.cross_validation_folds < 1:
            msg = f"cross_validation_folds must be >= 1, got {self.cross_validation_folds}"
            raise ValueError(msg)

        if self.max_workers < 1:
            msg = f"max_workers must be >= 1, got {self.max_workers}"
            raise ValueError(msg)

        if self.batch_size < 1:
            msg = f"batch_size must be >= 1, got {self.batch_size}"
            raise ValueError(msg)

        if self.deadline_seconds is not None and self.deadline_seconds < 0:
            msg = f"deadline_seconds must be >= 0, got {self.deadline_seconds}"
            raise ValueError(msg)

        if self.verbosity < 0:
            msg = f"verbosity must be >= 0, got {self.verbosity}"
            raise ValueError(msg)

        if self.schedule_tolerance < 0:
            msg = f"schedule_tolerance must be >= 0, got {self.schedule_tolerance}"
            raise ValueError(msg)

    @property
    def log_level(self) -> int:
        """Logging level implied by verbosity."""
        if self.verbosity <= 0:
            return logging.WARNING
        if self.verbosity == 1:
            return logging.INFO
        return logging.DEBUG

    def to_dict(self) -> dict[str, Any]:
        """Convert configuration to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OptimizerConfig:
        """Create configuration from dictionary."""
        data = dict(data)
        if isinstance(data.get("evolution"), dict):
            data["evolution"] = EvolutionConfig(**data["evolution"])
        if isinstance(data.get("bayesian"), dict):
            data["bayesian"] = BayesianConfig(**data["bayesian"])
        return cls(**data)

    def to_json(self, path: str | Path | None = None) -> str:
        """Serialize configuration to JSON.

        Args:
            path: Optional file path to save to.

        Returns:
            JSON string representation.
        """
        json_str = json.dumps(self.to_dict(), indent=2)

        if path is not None:
            Path(path).write_text(json_str)

        return json_str

    @classmethod
    def from_json(cls, json_str: str | None = None, path: str | Path | None = None) -> OptimizerConfig:
        """Load configuration from JSON.

        Args:
            json_str: JSON string.
            path: File path to load from.

        Returns:
            OptimizerConfig instance.
        """
        if path is not None:
            json_str = Path(path).read_text()

        if json_str is None:
            msg = "Either json_str or path must be provided"
            raise ValueError(msg)

        return cls.from_dict(json.loads(json_str))

    def with_updates(self, **kwargs: Any) -> OptimizerConfig:
        """Create copy with updated values.

        Args:
            **kwargs: Values to update.

        Returns:
            New OptimizerConfig with updates.
        """
        data = self.to_dict()
        data.update(kwargs)
        return OptimizerConfig.from_dict(data)


def get_quick_config() -> OptimizerConfig:
    """Get configuration preset for quick experiments.

    Small budget and population, sequential evaluation.
    """
    return OptimizerConfig(
        optimization_budget=50,
        parallel_optimization=False,
        evolution=EvolutionConfig(population_size=10, max_generations=5),
        bayesian=BayesianConfig(initial_design=5),
    )


def get_thorough_config() -> OptimizerConfig:
    """Get configuration preset for thorough optimization.

    Large budget and population, longer patience.
    """
    return OptimizerConfig(
        optimization_budget=5000,
        max_workers=8,
        batch_size=25,
        evolution=EvolutionConfig(
            population_size=50,
            max_generations=40,
            elitism_count=3,
            patience=5,
        ),
        bayesian=BayesianConfig(initial_design=25, early_stop_window=25),
    )


def configure_logging(config: OptimizerConfig) -> None:
    """Install handlers on the package logger according to ``config``."""
    package_logger = logging.getLogger("algo_optimizer")
    package_logger.setLevel(config.log_level)

    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")

    if not any(isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
               for h in package_logger.handlers):
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setFormatter(formatter)
        package_logger.addHandler(stream_handler)

    log_path = None if config.log_file is None else str(Path(config.log_file).resolve())
    if log_path is not None and not any(
        isinstance(h, logging.FileHandler) and h.baseFilename == log_path for h in package_logger.handlers
    ):
        file_handler = logging.FileHandler(log_path)
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)
