from __future__ import annotations

from collections import Counter
from typing import TYPE_CHECKING

from ..errors import NotApplicable
from ..utils.common import AlgorithmType, ImprovementType, ParameterKind, ParameterScale
from .parameter_space import (
    BooleanSpace,
    CategoricalSpace,
    Constraint,
    ContinuousSpace,
    DiscreteSpace,
    Objective,
    ParameterSpec,
    SearchSpace,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from ..records import AlgorithmRecord


DEFAULT_PARAMETERS: tuple[ParameterSpec, ...] = (
    ParameterSpec("learning_rate", ParameterKind.CONTINUOUS, [0.0001, 0.1], ParameterScale.LOG, 0.9),
    ParameterSpec("batch_size", ParameterKind.DISCRETE, [16, 32, 64, 128, 256], ParameterScale.LINEAR, 0.7),
    ParameterSpec("hidden_layers", ParameterKind.DISCRETE, [1, 2, 3, 4, 5], ParameterScale.LINEAR, 0.8),
    ParameterSpec("dropout_rate", ParameterKind.CONTINUOUS, [0.0, 0.5], ParameterScale.LINEAR, 0.6),
)

DEFAULT_OBJECTIVES: tuple[Objective, ...] = (
    Objective("accuracy", weight=0.7, tolerance=0.01),
    Objective("efficiency", weight=0.3, tolerance=0.05),
)

TYPE_EXTENSIONS: dict[AlgorithmType, tuple[ParameterSpec, ...]] = {
    AlgorithmType.NEURAL: (
        ParameterSpec("optimizer", ParameterKind.CATEGORICAL, ["adam", "sgd", "rmsprop"], ParameterScale.UNIFORM, 0.8),
        ParameterSpec("weight_decay", ParameterKind.CONTINUOUS, [1e-6, 1e-2], ParameterScale.LOG, 0.5),
    ),
    AlgorithmType.STATISTICAL: (
        ParameterSpec("regularization", ParameterKind.CONTINUOUS, [1e-4, 10.0], ParameterScale.LOG, 0.7),
        ParameterSpec("solver", ParameterKind.CATEGORICAL, ["lbfgs", "newton", "sag"], ParameterScale.UNIFORM, 0.4),
    ),
    AlgorithmType.HEURISTIC: (
        ParameterSpec("population_size", ParameterKind.DISCRETE, [10, 20, 50, 100], ParameterScale.LINEAR, 0.6),
        ParameterSpec("mutation_rate", ParameterKind.CONTINUOUS, [0.01, 0.3], ParameterScale.LINEAR, 0.7),
    ),
    AlgorithmType.ENSEMBLE: (
        ParameterSpec("n_estimators", ParameterKind.DISCRETE, [50, 100, 200, 400], ParameterScale.LINEAR, 0.7),
        ParameterSpec("max_depth", ParameterKind.DISCRETE, [3, 4, 5, 6, 8, 10], ParameterScale.LINEAR, 0.6),
    ),
}

# Importance added per past successful change, capped at MAX_IMPORTANCE_BOOST.
IMPORTANCE_BOOST = 0.05
MAX_IMPORTANCE_BOOST = 0.2


def _history_boosts(record: AlgorithmRecord) -> Counter[str]:
    """Count how often each parameter was part of an applied, improving change."""
    counts: Counter[str] = Counter()
    for event in record.history_of(ImprovementType.HYPERPARAMETER):
        if event.applied and event.improvement > 0:
            counts.update(event.parameters.keys())
    return counts


def _with_importance(spec: ParameterSpec, importance: float) -> ParameterSpec:
    return ParameterSpec(spec.name, spec.kind, list(spec.range), spec.scale, min(1.0, importance))


def build_search_space(
    record: AlgorithmRecord,
    defaults: Sequence[ParameterSpec] | None = None,
    constraints: Sequence[Constraint] = (),
    objectives: Sequence[Objective] | None = None,
) -> SearchSpace:
    """Build the frozen hyperparameter space for one optimization call.

    Combines the default space with the extensions for the record's
    algorithm type. Parameters that took part in earlier successful
    improvements get a bounded importance boost, which biases mutation and
    narrowing toward them. The record is only read.

    Args:
        record: Algorithm record.
        defaults: Replacement for the default parameter specs.
        constraints: Constraints to attach.
        objectives: Objectives (default accuracy 0.7, efficiency 0.3).

    Returns:
        A frozen SearchSpace.
    """
    specs = list(DEFAULT_PARAMETERS if defaults is None else defaults)
    known = {spec.name for spec in specs}
    specs.extend(spec for spec in TYPE_EXTENSIONS.get(record.algorithm_type, ()) if spec.name not in known)

    boosts = _history_boosts(record)
    space = SearchSpace(
        constraints=constraints,
        objectives=DEFAULT_OBJECTIVES if objectives is None else objectives,
    )
    for spec in specs:
        boost = min(MAX_IMPORTANCE_BOOST, IMPORTANCE_BOOST * boosts.get(spec.name, 0))
        space.add_spec(_with_importance(spec, spec.importance + boost))
    return space.freeze()


def build_architecture_space(record: AlgorithmRecord) -> SearchSpace:
    """Genome space for architecture search.

    Raises:
        NotApplicable: If the algorithm is not neural.
    """
    if record.algorithm_type is not AlgorithmType.NEURAL:
        msg = (
            f"Architecture search applies to neural algorithms only, "
            f"'{record.algorithm_id}' is {record.algorithm_type.value}"
        )
        raise NotApplicable(msg, record.algorithm_id)

    return SearchSpace(
        [
            DiscreteSpace("n_layers", [1, 2, 3, 4, 5, 6], importance=0.9),
            DiscreteSpace("width", [16, 32, 64, 128, 256, 512], importance=0.8),
            ContinuousSpace("width_decay", 0.25, 1.0, importance=0.4),
            CategoricalSpace("layer_kind", ["dense", "conv", "lstm", "attention"], importance=0.6),
            CategoricalSpace("connection_pattern", ["sequential", "residual", "recurrent"], importance=0.5),
            CategoricalSpace("activation", ["relu", "tanh", "gelu", "elu", "sigmoid"], importance=0.5),
            CategoricalSpace("optimizer", ["adam", "sgd", "rmsprop", "adagrad"], importance=0.7),
            ContinuousSpace("learning_rate", 1e-4, 1e-1, log_scale=True, importance=0.9),
            ContinuousSpace("dropout", 0.0, 0.5, importance=0.5),
            ContinuousSpace("l2", 1e-6, 1e-2, log_scale=True, importance=0.3),
            BooleanSpace("batch_norm", importance=0.3),
        ],
        objectives=DEFAULT_OBJECTIVES,
    ).freeze()
