from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import numpy as np
from numpy.typing import NDArray

from .errors import OperationDisabled
from .records import ImprovementRecord
from .results import compute_trend
from .utils.common import AdaptationMethod, ImprovementType, ScheduleKind
from .utils.config import OptimizerConfig
from .utils.utils import optimization_confidence, relative_improvement, validate_positive_int

if TYPE_CHECKING:
    from collections.abc import Sequence

    from .evaluation import CandidateEvaluator
    from .records import AlgorithmRecord
    from .registry import PerformanceStore

logger = logging.getLogger(__name__)

DEFAULT_LEARNING_RATE = 0.001
# Standard deviation of successive changes above which a series counts as volatile.
VOLATILITY_THRESHOLD = 0.05
# Applied schedules needed before reusing past schedules.
META_HISTORY_THRESHOLD = 3




@dataclass
class LearningDynamics:
    """Summary of a performance trajectory.

    Attributes:
        direction: improving, declining or plateau.
        slope: Least-squares slope per step.
        volatility: Standard deviation of successive changes.
        best: Best score in the series.
        last: Most recent score.
        n_points: Series length.
    """

    direction: str
    slope: float
    volatility: float
    best: float
    last: float
    n_points: int

    @property
    def volatile(self) -> bool:
        return self.volatility > VOLATILITY_THRESHOLD

    def to_dict(self) -> dict[str, Any]:
        return {
            "direction": self.direction,
            "slope": self.slope,
            "volatility": self.volatility,
            "best": self.best,
            "last": self.last,
            "n_points": self.n_points,
        }


def analyze_learning_dynamics(history: Sequence[float]) -> LearningDynamics:
    """Compute trend direction and volatility of a score series.

    Raises:
        ValueError: If the series has no finite values.
    """
    series = np.asarray([h for h in history if np.isfinite(h)], dtype=np.float64)
    if len(series) == 0:
        msg = "Performance history must contain at least one finite score"
        raise ValueError(msg)

    trend = compute_trend(series)
    volatility = float(np.std(np.diff(series))) if len(series) > 2 else 0.0
    return LearningDynamics(
        direction=str(trend["direction"]),
        slope=float(trend["slope"]),
        volatility=volatility,
        best=float(np.max(series)),
        last=float(series[-1]),
        n_points=len(series),
    )




@dataclass
class LearningRateSchedule:
    """Learning-rate schedule.

    Attributes:
        kind: Schedule shape.
        base_rate: Rate at step 0.
        parameters: Shape parameters (``gamma``, ``period``, ``min_rate`` ...).
        milestones: Steps at which ``factors`` are applied.
        factors: Multiplicative factor applied at each milestone.
    """

    kind: ScheduleKind
    base_rate: float
    parameters: dict[str, float] = field(default_factory=dict)
    milestones: list[int] = field(default_factory=list)
    factors: list[float] = field(default_factory=list)

    def __post_init__(self) -> None:
        if self.base_rate <= 0:
            msg = f"base_rate must be positive, got {self.base_rate}"
            raise ValueError(msg)
        if len(self.milestones) != len(self.factors):
            msg = "milestones and factors must have the same length"
            raise ValueError(msg)

    def _milestone_multipliers(self, steps: NDArray[np.int64]) -> NDArray[np.float64]:
        multipliers = np.ones(len(steps), dtype=np.float64)
        for milestone, factor in zip(self.milestones, self.factors, strict=True):
            multipliers[steps >= milestone] *= factor
        return multipliers

    def rates(self, n_steps: int) -> NDArray[np.float64]:
        """Learning rate at each of the first ``n_steps`` steps."""
        validate_positive_int(n_steps, "n_steps")
        steps = np.arange(n_steps)
        base = self.base_rate
        min_rate = self.parameters.get("min_rate", base * 0.01)

        if self.kind is ScheduleKind.DECAY:
            rates = base * self.parameters.get("gamma", 1.0) ** steps
        elif self.kind is ScheduleKind.CYCLIC:
            period = max(2, int(self.parameters.get("period", 10)))
            phase = np.abs((steps % period) / (period / 2) - 1)
            rates = min_rate + (base - min_rate) * phase
        elif self.kind is ScheduleKind.WARM_RESTART:
            period = max(1, int(self.parameters.get("period", 10)))
            t_mult = max(1, int(self.parameters.get("t_mult", 1)))
            position = np.empty(n_steps, dtype=np.float64)
            start, length = 0, period
            while start < n_steps:
                end = min(n_steps, start + length)
                position[start:end] = (steps[start:end] - start) / length
                start, length = start + length, length * t_mult
            rates = min_rate + 0.5 * (base - min_rate) * (1 + np.cos(np.pi * position))
        else:
            rates = np.full(n_steps, base, dtype=np.float64)

        return np.maximum(rates * self._milestone_multipliers(steps), 1e-12)

    def mean_rate(self, n_steps: int = 100) -> float:
        return float(np.mean(self.rates(n_steps)))

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "base_rate": self.base_rate,
            "parameters": dict(self.parameters),
            "milestones": list(self.milestones),
            "factors": list(self.factors),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LearningRateSchedule:
        return cls(
            kind=ScheduleKind(data["kind"]),
            base_rate=float(data["base_rate"]),
            parameters=dict(data.get("parameters", {})),
            milestones=list(data.get("milestones", [])),
            factors=list(data.get("factors", [])),
        )

    @classmethod
    def constant(cls, rate: float) -> LearningRateSchedule:
        return cls(ScheduleKind.CONSTANT, rate)


@dataclass
class LearningRateAdaptation:
    """Outcome of a learning-rate adaptation.

    Attributes:
        algorithm_id: Adapted algorithm.
        current_rate: Learning rate before adaptation.
        schedule: Accepted schedule, or a constant schedule at the current
            rate when the proposal was rejected.
        proposed_schedule: Schedule generated before validation.
        method: Adaptation method used.
        dynamics: Analysis of the input history.
        predicted_score: Evaluator's predicted score for the proposal.
        improvement: Predicted relative improvement over the last score.
        confidence: Confidence in [0, 1].
        accepted: Whether validation accepted the proposal.
    """

    algorithm_id: str
    current_rate: float
    schedule: LearningRateSchedule
    proposed_schedule: LearningRateSchedule
    method: AdaptationMethod
    dynamics: LearningDynamics
    predicted_score: float | None
    improvement: float
    confidence: float
    accepted: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "algorithm_id": self.algorithm_id,
            "current_rate": self.current_rate,
            "schedule": self.schedule.to_dict(),
            "proposed_schedule": self.proposed_schedule.to_dict(),
            "method": self.method.value,
            "dynamics": self.dynamics.to_dict(),
            "predicted_score": self.predicted_score,
            "improvement": self.improvement,
            "confidence": self.confidence,
            "accepted": self.accepted,
        }


def select_adaptation_method(
    dynamics: LearningDynamics,
    past_schedules: Sequence[tuple[float, LearningRateSchedule]] = (),
) -> AdaptationMethod:
    """Choose how to adapt the learning rate.

    Past successful schedules take precedence; otherwise volatile series get
    the adaptive schedule, plateaus get cosine restarts, declining series a
    step drop and improving series a gentle exponential decay.
    """
    if len(past_schedules) >= META_HISTORY_THRESHOLD:
        return AdaptationMethod.META_LEARNED
    if dynamics.volatile:
        return AdaptationMethod.ADAPTIVE
    if dynamics.direction == "plateau":
        return AdaptationMethod.COSINE
    if dynamics.direction == "declining":
        return AdaptationMethod.STEP
    return AdaptationMethod.EXPONENTIAL


def generate_schedule(
    method: AdaptationMethod,
    current_rate: float,
    dynamics: LearningDynamics,
    past_schedules: Sequence[tuple[float, LearningRateSchedule]] = (),
    horizon: int = 100,
) -> LearningRateSchedule:
    """Build the schedule for ``method`` starting at ``current_rate``."""
    if method is AdaptationMethod.META_LEARNED and past_schedules:
        best = max(past_schedules, key=lambda item: item[0])[1]
        return LearningRateSchedule(
            best.kind, current_rate, dict(best.parameters), list(best.milestones), list(best.factors)
        )

    if method is AdaptationMethod.COSINE:
        return LearningRateSchedule(
            ScheduleKind.WARM_RESTART,
            current_rate,
            {"period": max(5, horizon // 5), "t_mult": 2, "min_rate": current_rate * 0.01},
        )
    if method is AdaptationMethod.STEP:
        milestones = [horizon // 4, horizon // 2, 3 * horizon // 4]
        return LearningRateSchedule(ScheduleKind.DECAY, current_rate, {"gamma": 1.0}, milestones, [0.5] * 3)
    if method is AdaptationMethod.ADAPTIVE:
        # Reduce faster the more volatile the series is.
        factor = float(np.clip(1.0 - dynamics.volatility * 5, 0.2, 0.8))
        milestones = list(range(max(1, horizon // 10), horizon, max(1, horizon // 10)))
        return LearningRateSchedule(
            ScheduleKind.ADAPTIVE,
            current_rate,
            {"patience": max(1, horizon // 10), "reduce_factor": factor},
            milestones,
            [factor] * len(milestones),
        )
    if method is AdaptationMethod.EXPONENTIAL:
        # Halve the rate over the horizon.
        return LearningRateSchedule(ScheduleKind.DECAY, current_rate, {"gamma": 0.5 ** (1 / horizon)})
    return LearningRateSchedule.constant(current_rate)




class LearningRateAdapter:
    """Derives a learning-rate schedule from a performance history.

    A proposed schedule is validated with the evaluator's predicted score;
    proposals predicted to fall below the best historical score by more
    than ``schedule_tolerance`` are replaced by a constant schedule at the
    current rate.
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

    @staticmethod
    def current_rate(record: AlgorithmRecord) -> float:
        rate = record.parameters.get("learning_rate", record.performance_metrics.get("learning_rate"))
        return float(rate) if rate and rate > 0 else DEFAULT_LEARNING_RATE

    @staticmethod
    def past_schedules(record: AlgorithmRecord) -> list[tuple[float, LearningRateSchedule]]:
        return [
            (event.improvement, LearningRateSchedule.from_dict(event.details["schedule"]))
            for event in record.history_of(ImprovementType.LEARNING_RATE)
            if event.applied and "schedule" in event.details
        ]

    def history_from_registry(self, algorithm_id: str, metric: str = "accuracy") -> list[float]:
        """Metric values across the stored revisions, oldest first."""
        return [
            r.performance_metrics[metric]
            for r in self.store.revisions(algorithm_id)
            if metric in r.performance_metrics
        ]

    def adapt(
        self,
        algorithm_id: str,
        history: Sequence[float] | None = None,
        metric: str = "accuracy",
    ) -> LearningRateAdaptation:
        """Adapt the learning rate of ``algorithm_id``.

        Args:
            algorithm_id: Registered algorithm.
            history: Ordered performance series (defaults to the metric's
                values across registry revisions).
            metric: Metric the series and the prediction refer to.

        Raises:
            AlgorithmNotFound: If the id is not registered.
            OperationDisabled: If learning-rate adaptation is switched off.
            AlreadyOptimizing: If another run holds the id.
            ValueError: If the history has no finite values.
        """
        if not self.config.learning_rate_adaptation:
            msg = "Learning rate adaptation is disabled"
            raise OperationDisabled(msg, algorithm_id)

        with self.store.lease(algorithm_id) as record:
            if history is None:
                history = self.history_from_registry(algorithm_id, metric)
            dynamics = analyze_learning_dynamics(history)
            current_rate = self.current_rate(record)
            past = self.past_schedules(record)

            method = select_adaptation_method(dynamics, past)
            proposed = generate_schedule(method, current_rate, dynamics, past)
            logger.info(
                "Learning dynamics for '%s': %s (slope %.4f, volatility %.4f); proposing %s",
                algorithm_id,
                dynamics.direction,
                dynamics.slope,
                dynamics.volatility,
                proposed.kind.value,
            )

            trial = {**record.parameters, "learning_rate": proposed.mean_rate(), "lr_schedule": proposed.kind.value}
            prediction = self.evaluator.evaluate(algorithm_id, trial, metric)
            predicted = prediction.score if prediction.success else None

            accepted = predicted is not None and predicted >= dynamics.best - self.config.schedule_tolerance
            if accepted:
                schedule = proposed
                improvement = relative_improvement(predicted, dynamics.last)
            else:
                logger.warning(
                    "Rejected %s schedule for '%s': predicted %s below best %.4f beyond tolerance %.3f",
                    proposed.kind.value,
                    algorithm_id,
                    predicted,
                    dynamics.best,
                    self.config.schedule_tolerance,
                )
                schedule = LearningRateSchedule.constant(current_rate)
                improvement = 0.0
            confidence = optimization_confidence(improvement, dynamics.n_points)

            def commit(rec: AlgorithmRecord) -> None:
                rec.improvement_history.append(
                    ImprovementRecord(
                        improvement_type=ImprovementType.LEARNING_RATE,
                        improvement=improvement,
                        confidence=confidence,
                        method=method.value,
                        parameters={"learning_rate": current_rate},
                        applied=accepted,
                        version=rec.version + 1,
                        details={"schedule": schedule.to_dict(), "predicted_score": predicted},
                    )
                )

            self.store.upsert(algorithm_id, commit)

        return LearningRateAdaptation(
            algorithm_id=algorithm_id,
            current_rate=current_rate,
            schedule=schedule,
            proposed_schedule=proposed,
            method=method,
            dynamics=dynamics,
            predicted_score=predicted,
            improvement=improvement,
            confidence=confidence,
            accepted=accepted,
        )
