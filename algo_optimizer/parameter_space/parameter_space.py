from __future__ import annotations

import itertools
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import numpy as np
from numpy.typing import NDArray
from scipy.stats import qmc

from ..utils.common import OptimizationDirection, ParameterKind, ParameterScale
from ..utils.utils import (
    get_rng,
    validate_positive_int,
    validate_probability,
)

if TYPE_CHECKING:
    from collections.abc import Iterator, Sequence


class ParameterSpace(ABC):
    """Abstract base class for parameter spaces.

    A parameter space defines the domain of valid values for a hyperparameter,
    along with methods for sampling, validation, and manipulation. Each space
    carries an ``importance`` in [0, 1] that biases mutation and narrowing
    toward high-impact parameters.
    """

    kind: ParameterKind

    def __init__(self, name: str, importance: float = 0.5) -> None:
        """Initialize parameter space.

        Args:
            name: Unique identifier for this parameter.
            importance: Relative impact of the parameter in [0, 1].

        Raises:
            ValueError: If name is empty or importance is out of range.
        """
        if not name or not name.strip():
            msg = "Parameter name cannot be empty"
            raise ValueError(msg)
        validate_probability(importance, "importance")
        self.name = name.strip()
        self.importance = float(importance)

    @abstractmethod
    def sample(self, size: int | None = None) -> Any:
        """Sample random values from this parameter space.

        Args:
            size: Number of samples (None for single value).

        Returns:
            Single value if size is None, else list of values.
        """

    @abstractmethod
    def contains(self, value: Any) -> bool:
        """Check if a value is within this parameter space."""

    @abstractmethod
    def clamp(self, value: Any) -> Any:
        """Map a value onto the nearest valid value."""

    @abstractmethod
    def perturb(self, value: Any, strength: float = 0.1) -> Any:
        """Apply a random perturbation, staying inside the space."""

    @abstractmethod
    def grid_values(self, n: int) -> list[Any]:
        """Return up to ``n`` representative values for grid enumeration."""

    @abstractmethod
    def normalize(self, value: Any) -> float:
        """Map a value into [0, 1]."""

    @abstractmethod
    def denormalize(self, normalized: float) -> Any:
        """Convert a normalized [0, 1] value back to the original scale."""

    @abstractmethod
    def to_spec(self) -> ParameterSpec:
        """Describe this space as a :class:`ParameterSpec`."""

    def narrow(self, center: Any, fraction: float) -> ParameterSpace:
        """Return a space restricted around ``center``.

        Spaces without an ordering are returned unchanged.
        """
        return self

    def __repr__(self) -> str:
        return f"{type(self).__name__}('{self.name}', {self.to_spec().range})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ParameterSpace):
            return False
        return self.to_spec() == other.to_spec()

    def __hash__(self) -> int:
        return hash((self.__class__.__name__, self.name))


class ContinuousSpace(ParameterSpace):
    """Continuous parameter space for float values.

    Supports both uniform and log-uniform sampling.
    """

    kind = ParameterKind.CONTINUOUS

    def __init__(
        self,
        name: str,
        lower: float,
        upper: float,
        log_scale: bool = False,
        importance: float = 0.5,
    ) -> None:
        """Initialize continuous space.

        Args:
            name: Parameter name.
            lower: Lower bound (inclusive).
            upper: Upper bound (inclusive).
            log_scale: If True, sample uniformly in log space.
            importance: Relative impact in [0, 1].
        """
        super().__init__(name, importance)

        if lower >= upper:
            msg = f"Lower bound ({lower}) must be less than upper bound ({upper})"
            raise ValueError(msg)

        if log_scale and (lower <= 0 or upper <= 0):
            msg = "Log scale requires positive bounds"
            raise ValueError(msg)

        self.lower = float(lower)
        self.upper = float(upper)
        self.log_scale = log_scale

        # Pre-computed log bounds
        if log_scale:
            self._log_lower = float(np.log(self.lower))
            self._log_upper = float(np.log(self.upper))
        else:
            self._log_lower = 0.0
            self._log_upper = 0.0

    @property
    def range_size(self) -> float:
        """The size of the parameter range."""
        return self.upper - self.lower

    def sample(self, size: int | None = None) -> float | list[float]:
        """Sample random values."""
        rng = get_rng()

        if self.log_scale:
            result = np.exp(rng.uniform(self._log_lower, self._log_upper, size=size))
        else:
            result = rng.uniform(self.lower, self.upper, size=size)

        result = np.clip(result, self.lower, self.upper)
        return float(result) if size is None else [float(v) for v in result]

    def contains(self, value: Any) -> bool:
        """Check if a value is within the bounds."""
        if isinstance(value, (bool, np.bool_)) or not isinstance(value, (int, float, np.number)):
            return False
        return bool(self.lower <= value <= self.upper)

    def clamp(self, value: Any) -> float:
        """Clamp a value to the bounds."""
        return float(np.clip(float(value), self.lower, self.upper))

    def normalize(self, value: Any) -> float:
        """Normalize a value to [0, 1]."""
        value = float(value)
        if self.log_scale:
            log_val = np.log(max(value, self.lower))
            result = (log_val - self._log_lower) / (self._log_upper - self._log_lower)
        else:
            result = (value - self.lower) / self.range_size
        return float(np.clip(result, 0.0, 1.0))

    def denormalize(self, normalized: float) -> float:
        """Convert a normalized [0, 1] value back to the original scale."""
        normalized = float(np.clip(normalized, 0.0, 1.0))
        if self.log_scale:
            result = np.exp(self._log_lower + normalized * (self._log_upper - self._log_lower))
        else:
            result = self.lower + normalized * self.range_size
        return self.clamp(result)

    def perturb(self, value: Any, strength: float = 0.1) -> float:
        """Apply Gaussian noise scaled to the (log) range."""
        rng = get_rng()
        noisy = self.normalize(value) + rng.normal(0.0, strength)
        return self.denormalize(float(np.clip(noisy, 0.0, 1.0)))

    def grid_values(self, n: int) -> list[float]:
        """Generate n evenly spaced values."""
        validate_positive_int(n, "n")
        if n == 1:
            return [self.denormalize(0.5)]
        if self.log_scale:
            values = np.exp(np.linspace(self._log_lower, self._log_upper, n))
        else:
            values = np.linspace(self.lower, self.upper, n)
        return [self.clamp(v) for v in values]

    def narrow(self, center: Any, fraction: float) -> ContinuousSpace:
        """Restrict to ``fraction`` of the normalized range around ``center``."""
        c = self.normalize(center)
        half = max(fraction, 1e-6) / 2
        lo, hi = max(0.0, c - half), min(1.0, c + half)
        new_lower, new_upper = self.denormalize(lo), self.denormalize(hi)
        if new_upper <= new_lower:
            return self
        return ContinuousSpace(self.name, new_lower, new_upper, self.log_scale, self.importance)

    def to_spec(self) -> ParameterSpec:
        return ParameterSpec(
            name=self.name,
            kind=ParameterKind.CONTINUOUS,
            range=[self.lower, self.upper],
            scale=ParameterScale.LOG if self.log_scale else ParameterScale.LINEAR,
            importance=self.importance,
        )


class DiscreteSpace(ParameterSpace):
    """Ordered set of numeric values (e.g. batch sizes, layer counts)."""

    kind = ParameterKind.DISCRETE

    def __init__(
        self,
        name: str,
        values: Sequence[int | float],
        importance: float = 0.5,
    ) -> None:
        """Initialize discrete space.

        Args:
            name: Parameter name.
            values: Allowed numeric values (duplicates are dropped).
            importance: Relative impact in [0, 1].
        """
        super().__init__(name, importance)
        if not values:
            msg = "Discrete values cannot be empty"
            raise ValueError(msg)
        if any(isinstance(v, (bool, np.bool_)) or not isinstance(v, (int, float, np.number)) for v in values):
            msg = "Discrete values must be numeric"
            raise ValueError(msg)
        self.values = sorted({v.item() if isinstance(v, np.generic) else v for v in values})

    @property
    def n_values(self) -> int:
        return len(self.values)

    def sample(self, size: int | None = None) -> Any:
        """Sample random values."""
        rng = get_rng()
        indices = rng.integers(0, self.n_values, size=size)
        if size is None:
            return self.values[int(indices)]
        return [self.values[int(i)] for i in indices]

    def contains(self, value: Any) -> bool:
        if isinstance(value, (bool, np.bool_)):
            return False
        return value in self.values

    def index_of(self, value: Any) -> int:
        """Index of the allowed value closest to ``value``."""
        return int(np.argmin([abs(v - float(value)) for v in self.values]))

    def clamp(self, value: Any) -> Any:
        """Snap to the nearest allowed value."""
        return self.values[self.index_of(value)]

    def normalize(self, value: Any) -> float:
        if self.n_values == 1:
            return 0.0
        return self.index_of(value) / (self.n_values - 1)

    def denormalize(self, normalized: float) -> Any:
        idx = int(np.rint(float(np.clip(normalized, 0.0, 1.0)) * (self.n_values - 1)))
        return self.values[idx]

    def perturb(self, value: Any, strength: float = 0.1) -> Any:
        """Move by a random number of steps proportional to ``strength``."""
        rng = get_rng()
        max_step = max(1, int(round(strength * self.n_values)))
        step = int(rng.integers(-max_step, max_step + 1))
        idx = int(np.clip(self.index_of(value) + step, 0, self.n_values - 1))
        return self.values[idx]

    def grid_values(self, n: int) -> list[Any]:
        validate_positive_int(n, "n")
        if n >= self.n_values:
            return list(self.values)
        indices = np.unique(np.rint(np.linspace(0, self.n_values - 1, n)).astype(int))
        return [self.values[i] for i in indices]

    def narrow(self, center: Any, fraction: float) -> DiscreteSpace:
        """Keep the values within ``fraction`` of the ordered list around ``center``."""
        idx = self.index_of(center)
        half = max(1, int(math.ceil(fraction * self.n_values / 2)))
        lo, hi = max(0, idx - half), min(self.n_values, idx + half + 1)
        return DiscreteSpace(self.name, self.values[lo:hi], self.importance)

    def to_spec(self) -> ParameterSpec:
        return ParameterSpec(
            name=self.name,
            kind=ParameterKind.DISCRETE,
            range=list(self.values),
            scale=ParameterScale.LINEAR,
            importance=self.importance,
        )


class CategoricalSpace(ParameterSpace):
    """Categorical parameter space."""

    kind = ParameterKind.CATEGORICAL

    def __init__(
        self,
        name: str,
        choices: Sequence[Any],
        importance: float = 0.5,
    ) -> None:
        """Initialize categorical space.

        Args:
            name: Parameter name.
            choices: List of possible values.
            importance: Relative impact in [0, 1].
        """
        super().__init__(name, importance)

        if not choices:
            msg = "Choices cannot be empty"
            raise ValueError(msg)

        self.choices = list(choices)

    @property
    def n_choices(self) -> int:
        """Number of choices."""
        return len(self.choices)

    def sample(self, size: int | None = None) -> Any:
        """Sample random choices"""
        rng = get_rng()
        indices = rng.integers(0, self.n_choices, size=size)
        if size is None:
            return self.choices[int(indices)]
        return [self.choices[int(i)] for i in indices]

    def contains(self, value: Any) -> bool:
        """Check if value is in choices."""
        return value in self.choices

    def index_of(self, value: Any) -> int:
        """Get index of value in choices."""
        return self.choices.index(value)

    def clamp(self, value: Any) -> Any:
        """Keep valid choices, replace anything else with a random choice."""
        return value if self.contains(value) else self.sample()

    def normalize(self, value: Any) -> float:
        if self.n_choices == 1:
            return 0.0
        return self.index_of(value) / (self.n_choices - 1)

    def denormalize(self, normalized: float) -> Any:
        idx = int(np.rint(float(np.clip(normalized, 0.0, 1.0)) * (self.n_choices - 1)))
        return self.choices[idx]

    def perturb(self, value: Any, strength: float = 0.1) -> Any:
        """Resample a different choice with probability ``strength`` scaled up."""
        rng = get_rng()
        if self.n_choices == 1 or rng.random() >= min(1.0, 0.5 + strength):
            return value
        others = [c for c in self.choices if c != value]
        return others[int(rng.integers(0, len(others)))]

    def grid_values(self, n: int) -> list[Any]:
        return list(self.choices)

    def to_spec(self) -> ParameterSpec:
        return ParameterSpec(
            name=self.name,
            kind=ParameterKind.CATEGORICAL,
            range=list(self.choices),
            scale=ParameterScale.UNIFORM,
            importance=self.importance,
        )


class BooleanSpace(CategoricalSpace):
    """Boolean parameter space (a two-choice categorical)."""

    def __init__(self, name: str, importance: float = 0.5) -> None:
        super().__init__(name, [False, True], importance)

    def contains(self, value: Any) -> bool:
        """Check if value is a boolean."""
        return isinstance(value, (bool, np.bool_))


@dataclass(frozen=True)
class ParameterSpec:
    """Declarative description of one search-space parameter.

    Attributes:
        name: Parameter name.
        kind: continuous, discrete or categorical.
        range: ``[lower, upper]`` for continuous, allowed values otherwise.
        scale: linear, log or uniform.
        importance: Relative impact in [0, 1].
    """

    name: str
    kind: ParameterKind
    range: list[Any]
    scale: ParameterScale = ParameterScale.LINEAR
    importance: float = 0.5

    def __hash__(self) -> int:
        return hash((self.name, self.kind, tuple(self.range), self.scale, self.importance))

    def to_space(self) -> ParameterSpace:
        """Build the matching :class:`ParameterSpace`."""
        if self.kind is ParameterKind.CONTINUOUS:
            if len(self.range) != 2:
                msg = f"Continuous parameter '{self.name}' needs [lower, upper], got {self.range}"
                raise ValueError(msg)
            return ContinuousSpace(
                self.name,
                self.range[0],
                self.range[1],
                log_scale=self.scale is ParameterScale.LOG,
                importance=self.importance,
            )
        if self.kind is ParameterKind.DISCRETE:
            return DiscreteSpace(self.name, self.range, self.importance)
        if len(self.range) == 2 and all(isinstance(v, bool) for v in self.range):
            return BooleanSpace(self.name, self.importance)
        return CategoricalSpace(self.name, self.range, self.importance)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "range": list(self.range),
            "scale": self.scale.value,
            "importance": self.importance,
        }


@dataclass(frozen=True)
class Objective:
    """One optimization objective.

    Attributes:
        metric: Metric name.
        direction: maximize or minimize.
        weight: Share of the combined objective (all weights sum to 1).
        tolerance: Change below which the metric is considered unchanged.
    """

    metric: str
    direction: OptimizationDirection = OptimizationDirection.MAXIMIZE
    weight: float = 1.0
    tolerance: float = 0.01

    def __post_init__(self) -> None:
        validate_probability(self.weight, "weight")


@dataclass(frozen=True)
class Constraint:
    """Constraint on a single parameter.

    Attributes:
        parameter: Parameter name.
        operator: One of '<', '<=', '>', '>=', '==', '!='.
        value: Right-hand side of the comparison.
        priority: 'high' constraints are enforced when sampling.
    """

    parameter: str
    operator: str
    value: Any
    priority: str = "medium"

    _OPERATORS = {
        "<": lambda a, b: a < b,
        "<=": lambda a, b: a <= b,
        ">": lambda a, b: a > b,
        ">=": lambda a, b: a >= b,
        "==": lambda a, b: a == b,
        "!=": lambda a, b: a != b,
    }

    def __post_init__(self) -> None:
        if self.operator not in self._OPERATORS:
            msg = f"Unknown constraint operator: {self.operator}"
            raise ValueError(msg)
        if self.priority not in {"high", "medium", "low"}:
            msg = f"priority must be 'high', 'medium' or 'low', got {self.priority}"
            raise ValueError(msg)

    def is_satisfied(self, config: dict[str, Any]) -> bool:
        if self.parameter not in config:
            return True
        return bool(self._OPERATORS[self.operator](config[self.parameter], self.value))


class SearchSpace:
    """Ordered collection of parameter spaces with constraints and objectives.

    Supports several sampling methods:
    - Random sampling
    - Latin Hypercube sampling (SciPy)
    - Lazy grid enumeration
    - Successive narrowing around a center configuration

    A search space is built once per optimization call and then frozen.
    """

    max_sampling_attempts = 100

    def __init__(
        self,
        spaces: Sequence[ParameterSpace] = (),
        constraints: Sequence[Constraint] = (),
        objectives: Sequence[Objective] = (),
    ) -> None:
        """Initialize search space."""
        self._spaces: dict[str, ParameterSpace] = {}
        self._order: list[str] = []
        self._frozen = False
        self.constraints: list[Constraint] = list(constraints)
        self.objectives: list[Objective] = []
        for space in spaces:
            self.add(space)
        if objectives:
            self.set_objectives(objectives)

    @property
    def spaces(self) -> dict[str, ParameterSpace]:
        """Dictionary of parameter spaces."""
        return dict(self._spaces)

    @property
    def names(self) -> list[str]:
        """List of parameter names in order."""
        return list(self._order)

    @property
    def parameters(self) -> list[ParameterSpec]:
        """Declarative description of every parameter."""
        return [self._spaces[name].to_spec() for name in self._order]

    @property
    def frozen(self) -> bool:
        return self._frozen

    def freeze(self) -> SearchSpace:
        """Disallow further changes; returns self."""
        self._frozen = True
        return self

    def _check_mutable(self) -> None:
        if self._frozen:
            msg = "Search space is frozen"
            raise ValueError(msg)

    def add(self, space: ParameterSpace) -> SearchSpace:
        """Add a parameter space.

        Args:
            space: Parameter space to add.

        Returns:
            Self for method chaining.

        Raises:
            ValueError: If parameter name already exists or the space is frozen.
        """
        self._check_mutable()
        if space.name in self._spaces:
            msg = f"Parameter '{space.name}' already exists"
            raise ValueError(msg)

        self._spaces[space.name] = space
        self._order.append(space.name)
        return self

    def add_spec(self, spec: ParameterSpec) -> SearchSpace:
        """Add a parameter from its declarative description."""
        return self.add(spec.to_space())

    def set_objectives(self, objectives: Sequence[Objective]) -> SearchSpace:
        """Replace the objectives; weights must sum to 1."""
        self._check_mutable()
        total = sum(o.weight for o in objectives)
        if objectives and not np.isclose(total, 1.0):
            msg = f"Objective weights must sum to 1, got {total}"
            raise ValueError(msg)
        self.objectives = list(objectives)
        return self

    def get(self, name: str) -> ParameterSpace | None:
        """Get a parameter space by name."""
        return self._spaces.get(name)

    def __getitem__(self, name: str) -> ParameterSpace:
        if name not in self._spaces:
            msg = f"Parameter '{name}' not found"
            raise KeyError(msg)
        return self._spaces[name]

    def __contains__(self, name: str) -> bool:
        return name in self._spaces

    def __len__(self) -> int:
        return len(self._spaces)

    def __iter__(self) -> Iterator[str]:
        return iter(self._order)

    def satisfies_constraints(self, config: dict[str, Any]) -> bool:
        """Check the high-priority constraints."""
        return all(c.is_satisfied(config) for c in self.constraints if c.priority == "high")

    def _sample_unconstrained(self) -> dict[str, Any]:
        return {name: self._spaces[name].sample() for name in self._order}

    def sample(self) -> dict[str, Any]:
        """Sample a single configuration honoring high-priority constraints."""
        config = self._sample_unconstrained()
        for _ in range(self.max_sampling_attempts - 1):
            if self.satisfies_constraints(config):
                break
            config = self._sample_unconstrained()
        return config

    def sample_n(self, n: int) -> list[dict[str, Any]]:
        """Generate n random samples."""
        validate_positive_int(n, "n")
        return [self.sample() for _ in range(n)]

    def sample_latin_hypercube(
        self,
        n: int,
        seed: int | np.random.Generator | None = None,
    ) -> list[dict[str, Any]]:
        """Generate n samples using Latin Hypercube Sampling.

        LHS provides better coverage of the parameter space than random
        sampling. Every parameter is stratified through its normalized
        representation.
        """
        validate_positive_int(n, "n")
        if not self._order:
            return [{} for _ in range(n)]

        if seed is None:
            seed = get_rng()
        sampler = qmc.LatinHypercube(d=len(self._order), rng=seed)
        lhs_samples = sampler.random(n=n)

        return [
            {
                name: self._spaces[name].denormalize(lhs_samples[i, j])
                for j, name in enumerate(self._order)
            }
            for i in range(n)
        ]

    def iter_grid(self, n_samples_per_dim: int = 5) -> Iterator[dict[str, Any]]:
        """Lazily enumerate the grid of discretized ranges."""
        validate_positive_int(n_samples_per_dim, "n_samples_per_dim")
        values = [self._spaces[name].grid_values(n_samples_per_dim) for name in self._order]
        for combo in itertools.product(*values):
            config = dict(zip(self._order, combo, strict=True))
            if self.satisfies_constraints(config):
                yield config

    def grid_size(self, n_samples_per_dim: int = 5) -> int:
        """Number of grid points before constraint filtering."""
        return math.prod(
            len(self._spaces[name].grid_values(n_samples_per_dim)) for name in self._order
        )

    def contains(self, config: dict[str, Any]) -> bool:
        """Check if a configuration is valid."""
        if set(config.keys()) != set(self._spaces.keys()):
            return False
        return all(
            self._spaces[name].contains(config[name]) for name in self._spaces
        )

    def clamp(self, config: dict[str, Any]) -> dict[str, Any]:
        """Clamp all values to valid ranges, sampling missing ones."""
        result = {}
        for name in self._order:
            space = self._spaces[name]
            value = config.get(name)
            if value is None:
                result[name] = space.sample()
            else:
                try:
                    result[name] = space.clamp(value)
                except (TypeError, ValueError):
                    result[name] = space.sample()
        return result

    def narrow(self, center: dict[str, Any], fraction: float) -> SearchSpace:
        """New frozen space restricted to ``fraction`` of each range around ``center``.

        High-importance parameters are narrowed less aggressively so the
        search keeps exploring where it matters most.
        """
        narrowed = SearchSpace(constraints=self.constraints, objectives=self.objectives)
        for name in self._order:
            space = self._spaces[name]
            effective = min(1.0, fraction * (1.0 + 0.5 * space.importance))
            narrowed.add(space.narrow(center[name], effective) if name in center else space)
        return narrowed.freeze()

    def importance_weights(self) -> NDArray[np.float64]:
        """Normalized importance per parameter (uniform if all zero)."""
        weights = np.array([self._spaces[n].importance for n in self._order], dtype=np.float64)
        if weights.sum() == 0:
            return np.full(len(weights), 1.0 / max(1, len(weights)))
        return weights / weights.sum()

    def to_array(self, config: dict[str, Any]) -> NDArray:
        """Convert a configuration to a normalized [0, 1] vector."""
        return np.array(
            [self._spaces[name].normalize(config[name]) for name in self._order],
            dtype=np.float64,
        )

    def distance(self, a: dict[str, Any], b: dict[str, Any]) -> float:
        """Euclidean distance between normalized configurations."""
        return float(np.linalg.norm(self.to_array(a) - self.to_array(b)))

    def copy(self) -> SearchSpace:
        """Create an unfrozen copy of this space."""
        return SearchSpace(
            [self._spaces[name] for name in self._order],
            constraints=self.constraints,
            objectives=self.objectives,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "parameters": [p.to_dict() for p in self.parameters],
            "constraints": [
                {"parameter": c.parameter, "operator": c.operator, "value": c.value, "priority": c.priority}
                for c in self.constraints
            ],
            "objectives": [
                {"metric": o.metric, "direction": o.direction.value, "weight": o.weight, "tolerance": o.tolerance}
                for o in self.objectives
            ],
        }

    def __repr__(self) -> str:
        if not self._spaces:
            return "SearchSpace(empty)"

        spaces_str = "\n  ".join(str(self._spaces[name]) for name in self._order)
        return f"SearchSpace(\n  {spaces_str}\n)"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SearchSpace):
            return False
        return self.parameters == other.parameters
