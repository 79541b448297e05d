"""
Confidence, gain, priority and risk scoring shared by the analysis services.
"""

import math
import logging
from typing import Any, Dict, Optional

from ..config import OptimizerConfig
from ..models import (
    OptimizationPriority,
    OptimizationRecommendation,
    OptimizationStrategy,
    RequestTypeProfile,
    RiskLevel,
)
from ..utils import clamp

logger = logging.getLogger(__name__)

BASE_RISK = {
    OptimizationStrategy.NONE: RiskLevel.VERY_LOW,
    OptimizationStrategy.ENABLE_CACHING: RiskLevel.LOW,
    OptimizationStrategy.MEMORY_POOLING: RiskLevel.LOW,
    OptimizationStrategy.BATCH_PROCESSING: RiskLevel.MEDIUM,
    OptimizationStrategy.PARALLEL_PROCESSING: RiskLevel.MEDIUM,
    OptimizationStrategy.DATABASE_OPTIMIZATION: RiskLevel.MEDIUM,
    OptimizationStrategy.CIRCUIT_BREAKER: RiskLevel.HIGH,
}

MIN_SEVERITY = 0.5
MAX_SEVERITY = 1.5
LOW_CONFIDENCE = 0.5


class RecommendationScorer:
    """Turns a triggered rule into a fully scored recommendation."""

    def __init__(self, config: OptimizerConfig):
        self.config = config

    def sample_confidence(self, sample_count: int, cv: float, min_executions: int) -> float:
        """
        Statistical support for a recommendation.

        Grows with the sample count and shrinks with the coefficient of
        variation. Until the sample count reaches twice the minimum, the
        result is additionally scaled by the sample penalty factor.

        Args:
            sample_count: Samples behind the profile
            cv: Coefficient of variation of the triggering metric
            min_executions: Cold-start gate for the request type

        Returns:
            float: Confidence in [0, max_confidence]
        """
        if sample_count <= 0:
            return 0.0
        support = sample_count / (sample_count + 2.0 * min_executions)
        stability = 1.0 / (1.0 + max(0.0, cv))
        confidence = support * stability
        if sample_count < 2 * min_executions:
            confidence *= self.config.sample_penalty_factor
        return clamp(confidence, 0.0, self.config.max_confidence)

    def weighted_confidence(self, confidence: float, weight: Optional[float]) -> float:
        """Scale confidence by a learned strategy weight (0.5 is neutral)."""
        if weight is None:
            weight = self.config.initial_strategy_weight
        return clamp(confidence * 2.0 * weight, 0.0, self.config.max_confidence)

    @staticmethod
    def severity(observed: float, threshold: float) -> float:
        if threshold <= 0 or observed <= 0:
            return MIN_SEVERITY
        return clamp(math.sqrt(observed / threshold), MIN_SEVERITY, MAX_SEVERITY)

    def gain_percentage(self, strategy: OptimizationStrategy, severity: float) -> float:
        base = self.config.expected_improvement(strategy)
        return clamp(base * severity * 100.0, 0.0, self.config.max_gain_percentage)

    def priority(self, confidence: float, gain_percentage: float) -> OptimizationPriority:
        score = confidence * gain_percentage / 100.0
        thresholds = self.config.priority_thresholds
        if score >= thresholds["critical"]:
            return OptimizationPriority.CRITICAL
        if score >= thresholds["high"]:
            return OptimizationPriority.HIGH
        if score >= thresholds["medium"]:
            return OptimizationPriority.MEDIUM
        return OptimizationPriority.LOW

    def risk(self, strategy: OptimizationStrategy, confidence: float,
             sample_count: int, min_executions: int) -> RiskLevel:
        base = BASE_RISK[strategy]
        if strategy is OptimizationStrategy.CIRCUIT_BREAKER:
            return base
        if confidence < LOW_CONFIDENCE or sample_count < 2 * min_executions:
            return base.raised()
        return base

    def auto_apply_eligible(self, confidence: float, risk: RiskLevel) -> bool:
        return (
            confidence >= self.config.confidence_floor
            and risk.rank <= self.config.automatic_risk_ceiling.rank
        )

    def build(
        self,
        request_type: str,
        strategy: OptimizationStrategy,
        profile: RequestTypeProfile,
        severity: float,
        reasoning: str,
        parameters: Dict[str, Any],
        min_executions: int,
        weight: Optional[float] = None,
        confidence: Optional[float] = None,
        confidence_scale: float = 1.0,
        baseline_ms: Optional[float] = None,
    ) -> OptimizationRecommendation:
        """
        Score a triggered strategy.

        Args:
            request_type: Request type identifier
            strategy: Strategy whose rule matched
            profile: Profile snapshot the rule evaluated
            severity: How far the triggering condition exceeds its threshold
            reasoning: Human-readable explanation
            parameters: Strategy-specific parameters
            min_executions: Cold-start gate for the request type
            weight: Learned weight for (request type, strategy)
            confidence: Precomputed statistical confidence, if not derived from the profile
            confidence_scale: Extra factor in [0, 1] applied by the rule
            baseline_ms: Duration the improvement is estimated against

        Returns:
            OptimizationRecommendation: The scored recommendation
        """
        if confidence is None:
            confidence = self.sample_confidence(profile.sample_count, profile.duration_cv, min_executions)
        confidence = self.weighted_confidence(confidence * clamp(confidence_scale, 0.0, 1.0), weight)

        gain = self.gain_percentage(strategy, severity)
        baseline = profile.mean_duration_ms if baseline_ms is None else baseline_ms
        risk = self.risk(strategy, confidence, profile.sample_count, min_executions)

        return OptimizationRecommendation(
            request_type=request_type,
            strategy=strategy,
            confidence_score=round(confidence, 6),
            estimated_improvement_ms=round(baseline * gain / 100.0, 3),
            estimated_gain_percentage=round(gain, 3),
            priority=self.priority(confidence, gain),
            risk=risk,
            reasoning=reasoning,
            parameters=parameters,
            auto_apply_eligible=self.auto_apply_eligible(confidence, risk),
        )
