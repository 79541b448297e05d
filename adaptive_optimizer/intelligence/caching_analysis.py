"""
Caching analysis: decide whether a request type's responses are worth caching.
"""

import logging
from collections import Counter
from typing import List, Optional, Sequence

import numpy as np

from ..cancellation import CancellationToken
from ..config import OptimizerConfig
from ..models import (
    AccessPattern,
    CacheKeyStrategy,
    CacheScope,
    CachingProfile,
    EvictionPolicy,
    OptimizationRecommendation,
    OptimizationStrategy,
    RequestTypeProfile,
)
from ..utils import clamp, coefficient_of_variation
from .scoring import RecommendationScorer

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 900.0
LFU_MAX_MEAN_INTERVAL_SECONDS = 300.0
LRU_MAX_MEAN_INTERVAL_SECONDS = 1800.0
CACHE_KEY_PREFIX = "opt_cache"


class CachingAnalysisService:
    """Access-pattern driven caching recommendations."""

    def __init__(self, config: OptimizerConfig, scorer: Optional[RecommendationScorer] = None):
        self.config = config
        self.scorer = scorer or RecommendationScorer(config)

    def analyze(
        self,
        request_type: str,
        caching_profile: CachingProfile,
        access_patterns: Sequence[AccessPattern],
        profile: Optional[RequestTypeProfile] = None,
        weight: Optional[float] = None,
        token: Optional[CancellationToken] = None,
    ) -> OptimizationRecommendation:
        """
        Analyze access patterns for cache-worthiness.

        Args:
            request_type: Request type identifier
            caching_profile: Accumulated caching state for the request type
            access_patterns: Access events to analyze, in any order
            profile: Execution profile, used as the improvement baseline when
                the patterns carry no execution times
            weight: Learned weight for caching on this request type
            token: Cancellation token

        Returns:
            OptimizationRecommendation: ENABLE_CACHING or a 'none' recommendation
        """
        patterns = sorted(access_patterns, key=lambda p: p.timestamp)
        min_executions = self.config.min_executions_for(request_type)
        if len(patterns) < min_executions:
            return OptimizationRecommendation.no_recommendation(
                request_type,
                f"Insufficient access data: {len(patterns)} of {min_executions} required events",
            )

        if token is not None:
            token.raise_if_cancelled()

        intervals = self.access_intervals(patterns)
        interval_cv = coefficient_of_variation(intervals)
        predicted_hit_rate = self.predict_hit_rate(patterns)
        ttl = self.recommend_ttl(intervals)
        scope, key_strategy = self.choose_scope_and_key_strategy(patterns)
        regular = len(intervals) > 1 and interval_cv <= self.config.cache_regularity_cv_threshold

        if token is not None:
            token.raise_if_cancelled()

        floor = self.config.cache_hit_rate_floor
        if predicted_hit_rate <= floor:
            return OptimizationRecommendation.no_recommendation(
                request_type,
                f"Predicted hit rate {predicted_hit_rate:.1%} does not exceed the {floor:.1%} floor",
                parameters={"predicted_hit_rate": round(predicted_hit_rate, 6)},
            )

        n = len(patterns)
        confidence = predicted_hit_rate * (1.0 / (1.0 + interval_cv)) * (n / (n + min_executions))
        baseline = self._baseline_ms(patterns, profile)
        mean_interval = float(np.mean(intervals)) if intervals else None

        parameters = {
            "ttl_seconds": ttl,
            "cache_scope": scope.value,
            "key_strategy": key_strategy.value,
            "predicted_hit_rate": round(predicted_hit_rate, 6),
            "observed_hit_rate": round(caching_profile.observed_hit_rate, 6),
            "interval_cv": round(interval_cv, 6),
            "regular_access": regular,
            "eviction_policy": self.choose_eviction_policy(patterns, mean_interval).value,
            "cache_key_template": self.cache_key_template(request_type, patterns),
        }

        shape = "periodic" if regular else "irregular"
        reasoning = (
            f"{shape.capitalize()} access (interval CV {interval_cv:.2f}) with predicted hit rate "
            f"{predicted_hit_rate:.1%}; cache for {ttl:.0f}s with {key_strategy.value} keys "
            f"in a {scope.value} cache"
        )

        recommendation = self.scorer.build(
            request_type,
            OptimizationStrategy.ENABLE_CACHING,
            RequestTypeProfile(request_type=request_type, sample_count=n, mean_duration_ms=baseline),
            severity=self.scorer.severity(predicted_hit_rate, floor),
            reasoning=reasoning,
            parameters=parameters,
            min_executions=min_executions,
            weight=weight,
            confidence=confidence,
            baseline_ms=baseline,
        )
        logger.debug(
            f"Caching recommendation for {request_type}: hit rate {predicted_hit_rate:.1%}, TTL {ttl:.0f}s"
        )
        return recommendation

    @staticmethod
    def access_intervals(patterns: Sequence[AccessPattern]) -> List[float]:
        """Positive gaps in seconds between consecutive (time-ordered) accesses."""
        stamps = [p.timestamp for p in patterns]
        gaps = ((later - earlier).total_seconds() for earlier, later in zip(stamps, stamps[1:]))
        return [gap for gap in gaps if gap > 0]

    def predict_hit_rate(self, patterns: Sequence[AccessPattern]) -> float:
        """
        Fraction of accesses in the trailing window whose key was already seen.

        Args:
            patterns: Time-ordered access events

        Returns:
            float: Predicted hit rate in [0, 1]
        """
        window = patterns[-self.config.cache_hit_rate_window:]
        if not window:
            return 0.0
        seen = set()
        repeats = 0
        for pattern in window:
            if pattern.request_key in seen:
                repeats += 1
            else:
                seen.add(pattern.request_key)
        return repeats / len(window)

    def recommend_ttl(self, intervals: Sequence[float]) -> float:
        """Median access interval, clamped to the configured TTL bounds."""
        raw = float(np.median(intervals)) if intervals else DEFAULT_TTL_SECONDS
        return clamp(raw, self.config.min_cache_ttl_seconds, self.config.max_cache_ttl_seconds)

    def choose_scope_and_key_strategy(self, patterns: Sequence[AccessPattern]):
        counts = Counter(p.request_key for p in patterns)
        total = len(patterns)
        unique_ratio = len(counts) / total if total else 0.0
        mean_repeat = total / len(counts) if counts else 0.0

        if unique_ratio > self.config.cache_high_cardinality_ratio and mean_repeat < 2:
            return CacheScope.DISTRIBUTED, CacheKeyStrategy.NORMALIZED
        if mean_repeat >= self.config.cache_high_repeat_count:
            return CacheScope.LOCAL, CacheKeyStrategy.EXACT
        return CacheScope.DISTRIBUTED, CacheKeyStrategy.EXACT

    @staticmethod
    def choose_eviction_policy(patterns: Sequence[AccessPattern],
                               mean_interval: Optional[float]) -> EvictionPolicy:
        if mean_interval is not None and mean_interval < LFU_MAX_MEAN_INTERVAL_SECONDS:
            return EvictionPolicy.LFU
        if mean_interval is not None and mean_interval < LRU_MAX_MEAN_INTERVAL_SECONDS:
            return EvictionPolicy.LRU
        if any(p.user_context for p in patterns):
            return EvictionPolicy.ADAPTIVE
        return EvictionPolicy.TIME_BASED

    @staticmethod
    def cache_key_template(request_type: str, patterns: Sequence[AccessPattern]) -> str:
        template = f"{CACHE_KEY_PREFIX}:{request_type}"
        if any(p.user_context for p in patterns):
            template += ":user:{user}"
        if any(p.region for p in patterns):
            template += ":region:{region}"
        return template

    @staticmethod
    def _baseline_ms(patterns: Sequence[AccessPattern], profile: Optional[RequestTypeProfile]) -> float:
        misses = [p.execution_time_ms for p in patterns if not p.was_cache_hit and p.execution_time_ms > 0]
        if misses:
            return float(np.mean(misses))
        if profile is not None:
            return profile.mean_duration_ms
        return 0.0
