from __future__ import annotations

import hashlib
import json
from typing import TYPE_CHECKING, Any

import numpy as np

if TYPE_CHECKING:
    from collections.abc import Hashable

# Floor for the denominator of relative improvement.
EPS = 1e-9

_RNG: np.random.Generator | None = None




def set_random_seed(seed: int | None) -> None:
    """Set the global random seed for reproducibility.

    Args:
        seed: Random seed value.
    """
    global _RNG  # noqa: PLW0603
    _RNG = np.random.default_rng(seed)


def get_rng() -> np.random.Generator:
    """Get the global random number generator.

    Returns:
        Random generator instance.
    """
    global _RNG  # noqa: PLW0603
    if _RNG is None:
        _RNG = np.random.default_rng()
    return _RNG




def validate_probability(value: float, name: str = "probability") -> None:
    """Validate that a value is a valid probability in [0, 1].

    Args:
        value: Value to validate.
        name: Parameter name for error messages.

    Raises:
        ValueError: If value is not in [0, 1].
    """
    if not 0.0 <= value <= 1.0:
        msg = f"{name} must be in [0, 1], got {value}"
        raise ValueError(msg)


def validate_positive_int(value: int, name: str = "value") -> None:
    """Validate that a value is a positive integer.

    Args:
        value: Value to validate.
        name: Parameter name for error messages.

    Raises:
        ValueError: If value is not a positive integer.
    """
    if not isinstance(value, (int, np.integer)) or value <= 0:
        msg = f"{name} must be a positive integer, got {value}"
        raise ValueError(msg)




def unit_clamp(value: float) -> float:
    """Clamp a score or rate into [0, 1], mapping NaN to 0."""
    if not np.isfinite(value):
        return 0.0
    return float(min(1.0, max(0.0, value)))


def relative_improvement(new: float, old: float) -> float:
    """Relative change of ``new`` over ``old``.

    The denominator is floored at ``EPS`` so a zero baseline never divides
    by zero; identical values always give exactly 0.

    Examples:
        >>> round(relative_improvement(0.82, 0.70), 3)
        0.171
        >>> relative_improvement(0.5, 0.5)
        0.0
    """
    if new == old:
        return 0.0
    return float((new - old) / max(old, EPS))


def optimization_confidence(improvement: float, iterations: int) -> float:
    """Confidence in an optimization outcome.

    Average of ``min(1, 2 * improvement)`` and ``min(1, iterations / 100)``,
    kept inside [0, 1].
    """
    improvement_confidence = min(1.0, improvement * 2)
    iteration_confidence = min(1.0, iterations / 100)
    return unit_clamp((improvement_confidence + iteration_confidence) / 2)




def hash_dict(d: dict[str, Any]) -> str:
    """Compute a deterministic hash for a dictionary.

    Args:
        d: Dictionary to hash.

    Returns:
        Hexadecimal hash string.
    """

    def make_hashable(obj: Any) -> Hashable:
        if isinstance(obj, dict):
            return tuple(sorted((str(k), make_hashable(v)) for k, v in obj.items()))
        if isinstance(obj, (list, tuple)):
            return tuple(make_hashable(x) for x in obj)
        if isinstance(obj, np.ndarray):
            return tuple(obj.flatten().tolist())
        if isinstance(obj, (np.bool_, bool)):
            return bool(obj)
        if isinstance(obj, (np.integer, np.floating)):
            return float(obj)
        return obj

    hashable = make_hashable(d)
    json_str = json.dumps(hashable, sort_keys=True, default=str)
    return hashlib.md5(json_str.encode(), usedforsecurity=False).hexdigest()


def to_builtin(value: Any) -> Any:
    """Convert numpy scalars (recursively) into plain Python values."""
    if isinstance(value, dict):
        return {k: to_builtin(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_builtin(v) for v in value]
    if isinstance(value, np.bool_):
        return bool(value)
    if isinstance(value, np.integer):
        return int(value)
    if isinstance(value, np.floating):
        return float(value)
    if isinstance(value, np.ndarray):
        return value.tolist()
    return value
