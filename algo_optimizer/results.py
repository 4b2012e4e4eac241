from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np
from numpy.typing import NDArray
from scipy import stats

if TYPE_CHECKING:
    from collections.abc import Sequence

    from .errors import OptimizerError






@dataclass
class GenerationStats:
    """Statistics for a single generation.

    Attributes:
        generation: Generation number (1-based).
        best_fitness: Best fitness in generation.
        mean_fitness: Mean fitness of evaluated individuals.
        std_fitness: Standard deviation of fitness.
        median_fitness: Median fitness.
        min_fitness: Minimum fitness.
        diversity: Mean pairwise distance of normalized configurations.
        n_evaluated: Number of individuals evaluated successfully.
        n_failed: Number of individuals whose evaluation failed.
        elapsed_time: Time for this generation.
    """

    generation: int
    best_fitness: float
    mean_fitness: float
    std_fitness: float
    median_fitness: float
    min_fitness: float
    diversity: float = 0.0
    n_evaluated: int = 0
    n_failed: int = 0
    elapsed_time: float = 0.0

    @classmethod
    def from_fitness(
        cls,
        generation: int,
        fitness: NDArray[np.float64],
        diversity: float = 0.0,
        n_failed: int = 0,
        elapsed_time: float = 0.0,
    ) -> GenerationStats:
        """Build statistics from the finite fitness values of a generation."""
        valid = fitness[np.isfinite(fitness)]
        if len(valid) == 0:
            nan = float("nan")
            return cls(generation, nan, nan, nan, nan, nan, diversity, 0, n_failed, elapsed_time)
        return cls(
            generation=generation,
            best_fitness=float(np.max(valid)),
            mean_fitness=float(np.mean(valid)),
            std_fitness=float(np.std(valid)),
            median_fitness=float(np.median(valid)),
            min_fitness=float(np.min(valid)),
            diversity=diversity,
            n_evaluated=len(valid),
            n_failed=n_failed,
            elapsed_time=elapsed_time,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "generation": self.generation,
            "best_fitness": self.best_fitness,
            "mean_fitness": self.mean_fitness,
            "std_fitness": self.std_fitness,
            "median_fitness": self.median_fitness,
            "min_fitness": self.min_fitness,
            "diversity": self.diversity,
            "n_evaluated": self.n_evaluated,
            "n_failed": self.n_failed,
            "elapsed_time": self.elapsed_time,
        }




def compute_trend(values: Sequence[float]) -> dict[str, float | str]:
    """Linear trend of a series.

    Returns:
        Dictionary with ``slope``, ``r_value`` and ``direction``
        (improving, declining or plateau).
    """
    series = np.asarray([v for v in values if np.isfinite(v)], dtype=np.float64)
    if len(series) < 2:
        return {"slope": 0.0, "r_value": 0.0, "direction": "plateau"}

    if np.ptp(series) == 0:
        slope, r_value = 0.0, 0.0
    else:
        fit = stats.linregress(np.arange(len(series)), series)
        slope, r_value = float(fit.slope), float(fit.rvalue)

    scale = max(float(np.mean(np.abs(series))), 1e-9)
    if slope / scale > 0.005:
        direction = "improving"
    elif slope / scale < -0.005:
        direction = "declining"
    else:
        direction = "plateau"

    return {"slope": slope, "r_value": r_value, "direction": direction}


def compute_diversity(population: NDArray[np.float64]) -> float:
    """Mean pairwise Euclidean distance of normalized configurations."""
    genes = np.asarray(population, dtype=np.float64)
    if genes.ndim != 2 or genes.shape[0] < 2:
        return 0.0

    diff = genes[:, None, :] - genes[None, :, :]
    distances = np.sqrt(np.sum(diff**2, axis=2))
    return float(np.mean(distances[np.triu_indices(genes.shape[0], k=1)]))


@dataclass
class BatchRunResult:
    """Per-id outcome of an operation run across several algorithms.

    Attributes:
        results: Successful results keyed by algorithm id.
        errors: Errors keyed by algorithm id; siblings are unaffected.
    """

    results: dict[str, Any]
    errors: dict[str, OptimizerError]

    @property
    def succeeded(self) -> list[str]:
        return list(self.results)

    @property
    def failed(self) -> list[str]:
        return list(self.errors)

    def to_dict(self) -> dict[str, Any]:
        return {
            "results": {
                key: value.to_dict() if hasattr(value, "to_dict") else value
                for key, value in self.results.items()
            },
            "errors": {key: error.to_dict() for key, error in self.errors.items()},
        }
