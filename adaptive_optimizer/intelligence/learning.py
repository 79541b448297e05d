"""
Learning feedback loop.

Reconciles predicted strategies with what callers actually applied and how
the request performed afterwards, nudging a per (request type, strategy)
weight up or down. The weight scales recommendation confidence; 0.5 is
neutral. Exploration occasionally hands out a lower-ranked candidate so the
alternatives keep receiving feedback.
"""

import logging
import random
import threading
from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from ..config import OptimizerConfig
from ..models import (
    ExecutionSample,
    ModelStatistics,
    OptimizationRecommendation,
    OptimizationStrategy,
    RequestTypeProfile,
)
from ..utils import safe_divide

logger = logging.getLogger(__name__)

CONFIDENCE_BUCKETS = (
    ("0.0-0.2", 0.2),
    ("0.2-0.4", 0.4),
    ("0.4-0.6", 0.6),
    ("0.6-0.8", 0.8),
    ("0.8-1.0", 1.01),
)

FULL_CONFIDENCE_DATA_POINTS = 100


@dataclass(frozen=True)
class PredictionRecord:
    """One recommendation handed out by the engine."""

    request_type: str
    strategy: OptimizationStrategy
    confidence: float
    exploration: bool
    timestamp: datetime


class _TypeLearningState:
    __slots__ = ("lock", "weights", "last_prediction")

    def __init__(self):
        self.lock = threading.Lock()
        self.weights: Dict[OptimizationStrategy, float] = {}
        self.last_prediction: Optional[OptimizationStrategy] = None


class LearningFeedbackLoop:
    """Per request type strategy weights revised from observed outcomes."""

    def __init__(self, config: OptimizerConfig, rng: Optional[random.Random] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.config = config
        self.rng = rng or random.Random()
        self.clock = clock or datetime.now
        self.enabled = config.learning_enabled

        self._registry_lock = threading.Lock()
        self._states: Dict[str, _TypeLearningState] = {}

        self._stats_lock = threading.Lock()
        self._recent = deque(maxlen=config.max_recent_predictions)
        self._total_predictions = 0
        self._reconciliations = 0
        self._exploration_count = 0
        self._true_positives = 0
        self._false_positives = 0
        self._true_negatives = 0
        self._false_negatives = 0
        self._last_update: Optional[datetime] = None

    def _state(self, request_type: str) -> _TypeLearningState:
        with self._registry_lock:
            state = self._states.get(request_type)
            if state is None:
                state = _TypeLearningState()
                self._states[request_type] = state
            return state

    def set_enabled(self, enabled: bool):
        self.enabled = enabled
        logger.info(f"Learning mode {'enabled' if enabled else 'disabled'}")

    def weight(self, request_type: str, strategy: OptimizationStrategy) -> float:
        state = self._state(request_type)
        with state.lock:
            return state.weights.get(strategy, self.config.initial_strategy_weight)

    def weights_for(self, request_type: str) -> Dict[OptimizationStrategy, float]:
        """Learned weights for every strategy, defaulting to the initial weight."""
        state = self._state(request_type)
        initial = self.config.initial_strategy_weight
        with state.lock:
            return {
                strategy: state.weights.get(strategy, initial)
                for strategy in OptimizationStrategy
                if strategy is not OptimizationStrategy.NONE
            }

    def choose(self, request_type: str,
               candidates: Sequence[OptimizationRecommendation]) -> Optional[OptimizationRecommendation]:
        """
        Pick the recommendation to hand out from ranked candidates.

        With probability ``exploration_rate`` a random lower-ranked candidate
        is returned instead of the top one. Explored recommendations are
        never eligible for automatic application.

        Args:
            request_type: Request type identifier
            candidates: Candidates in rank order

        Returns:
            The chosen recommendation, or None when there are no candidates
        """
        if not candidates:
            return None
        top = candidates[0]
        if not self.enabled or len(candidates) < 2:
            return top
        if self.rng.random() >= self.config.exploration_rate:
            return top

        alternative = self.rng.choice(list(candidates[1:]))
        with self._stats_lock:
            self._exploration_count += 1
        logger.debug(
            f"Exploring {alternative.strategy.value} instead of {top.strategy.value} for {request_type}"
        )
        return replace(
            alternative,
            reasoning=f"{alternative.reasoning} (exploring alternative to {top.strategy.value})",
            parameters={**alternative.parameters, "exploration": True},
            auto_apply_eligible=False,
        )

    def record_prediction(self, recommendation: OptimizationRecommendation):
        """Remember what was handed out so a later reconciliation can be scored."""
        state = self._state(recommendation.request_type)
        with state.lock:
            state.last_prediction = recommendation.strategy

        record = PredictionRecord(
            request_type=recommendation.request_type,
            strategy=recommendation.strategy,
            confidence=recommendation.confidence_score,
            exploration=bool(recommendation.parameters.get("exploration", False)),
            timestamp=self.clock(),
        )
        with self._stats_lock:
            self._recent.append(record)
            self._total_predictions += 1

    def reconcile(self, request_type: str, applied_strategies: Iterable[OptimizationStrategy],
                  observed: ExecutionSample, baseline: RequestTypeProfile) -> bool:
        """
        Score an outcome against the last prediction and adjust weights.

        Args:
            request_type: Request type identifier
            applied_strategies: Strategies the caller actually applied
            observed: Execution measured after applying them
            baseline: Profile the outcome is compared against

        Returns:
            bool: True when the reconciliation was applied. Failures are
            logged and skipped, never raised.
        """
        if not self.enabled:
            return False
        try:
            self._reconcile(request_type, applied_strategies, observed, baseline)
            return True
        except Exception as e:
            logger.exception(
                f"Reconciliation failed for {request_type} "
                f"(applied={applied_strategies}, observed={observed}): {e}"
            )
            return False

    def _reconcile(self, request_type, applied_strategies, observed, baseline):
        applied = {s for s in applied_strategies if s is not OptimizationStrategy.NONE}
        improved = observed.success and (
            baseline.sample_count == 0 or observed.duration_ms < baseline.mean_duration_ms
        )
        lr = self.config.learning_rate
        initial = self.config.initial_strategy_weight

        state = self._state(request_type)
        with state.lock:
            predicted = state.last_prediction or OptimizationStrategy.NONE
            weights = state.weights

            for strategy in applied:
                current = weights.get(strategy, initial)
                if improved:
                    weights[strategy] = current + lr * (1.0 - current)
                else:
                    weights[strategy] = current * (1.0 - lr)

            if predicted is not OptimizationStrategy.NONE and predicted not in applied:
                current = weights.get(predicted, initial)
                weights[predicted] = current * (1.0 - lr)

        predicted_positive = predicted is not OptimizationStrategy.NONE
        with self._stats_lock:
            if predicted_positive and predicted in applied and improved:
                self._true_positives += 1
            elif predicted_positive:
                self._false_positives += 1
            elif applied and improved:
                self._false_negatives += 1
            else:
                self._true_negatives += 1
            self._reconciliations += 1
            self._last_update = self.clock()

        logger.debug(
            f"Reconciled {request_type}: predicted={predicted.value}, "
            f"applied={sorted(s.value for s in applied)}, improved={improved}"
        )

    def statistics(self, tracked_request_types: int) -> ModelStatistics:
        with self._stats_lock:
            tp, fp = self._true_positives, self._false_positives
            tn, fn = self._true_negatives, self._false_negatives
            total = self._reconciliations
            recent: List[PredictionRecord] = list(self._recent)
            total_predictions = self._total_predictions
            exploration_count = self._exploration_count
            last_update = self._last_update

        accuracy = safe_divide(tp + tn, total)
        precision = safe_divide(tp, tp + fp)
        recall = safe_divide(tp, tp + fn)
        f1 = safe_divide(2 * precision * recall, precision + recall)
        model_confidence = (0.5 * accuracy + 0.5 * f1) * min(1.0, total / FULL_CONFIDENCE_DATA_POINTS)

        confidence_distribution = {label: 0 for label, _ in CONFIDENCE_BUCKETS}
        strategy_distribution: Dict[str, int] = {}
        for record in recent:
            for label, upper in CONFIDENCE_BUCKETS:
                if record.confidence < upper:
                    confidence_distribution[label] += 1
                    break
            key = record.strategy.value
            strategy_distribution[key] = strategy_distribution.get(key, 0) + 1

        with self._registry_lock:
            states = dict(self._states)
        strategy_weights = {}
        for request_type, state in sorted(states.items()):
            with state.lock:
                if state.weights:
                    strategy_weights[request_type] = {
                        s.value: round(w, 6) for s, w in sorted(state.weights.items(), key=lambda i: i[0].value)
                    }

        return ModelStatistics(
            total_predictions=total_predictions,
            total_reconciliations=total,
            accuracy_score=round(accuracy, 6),
            precision_score=round(precision, 6),
            recall_score=round(recall, 6),
            f1_score=round(f1, 6),
            model_confidence=round(model_confidence, 6),
            training_data_points=total,
            tracked_request_types=tracked_request_types,
            exploration_count=exploration_count,
            learning_enabled=self.enabled,
            confidence_distribution=confidence_distribution,
            strategy_distribution=strategy_distribution,
            strategy_weights=strategy_weights,
            last_model_update=last_update,
        )

    def recent_predictions(self) -> List[PredictionRecord]:
        with self._stats_lock:
            return list(self._recent)

    def reset(self):
        with self._registry_lock:
            self._states = {}
        with self._stats_lock:
            self._recent.clear()
            self._total_predictions = 0
            self._reconciliations = 0
            self._exploration_count = 0
            self._true_positives = self._false_positives = 0
            self._true_negatives = self._false_negatives = 0
            self._last_update = None
