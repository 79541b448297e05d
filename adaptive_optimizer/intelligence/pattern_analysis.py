"""
Pattern analysis: choose an optimization strategy from a request type profile.
"""

import logging
from typing import Callable, List, Mapping, Optional

from ..cancellation import CancellationToken
from ..config import OptimizerConfig, RequestTypeOptions
from ..exceptions import AnalysisError
from ..models import (
    ExecutionSample,
    OptimizationRecommendation,
    OptimizationStrategy,
    RequestTypeProfile,
    SystemLoadMetrics,
)
from ..utils import clamp, format_duration
from .scoring import RecommendationScorer

logger = logging.getLogger(__name__)

LONG_REQUEST_MS = 1000.0
SHORT_REQUEST_MS = 50.0
UNSTABLE_DURATION_CV = 0.5
CIRCUIT_BREAK_DURATION_SECONDS = 30
CIRCUIT_HALF_OPEN_CALLS = 3


class PatternAnalysisService:
    """
    Rule-based strategy selection over a request type profile.

    Rules are evaluated in a fixed priority order: cold-start gate, error
    rate, latency under concurrency, batchable volume, memory pressure and
    database chattiness. The first matching rule wins.
    """

    def __init__(self, config: OptimizerConfig, scorer: Optional[RecommendationScorer] = None):
        self.config = config
        self.scorer = scorer or RecommendationScorer(config)
        self._rules: List[Callable] = [
            self._circuit_breaker_rule,
            self._parallel_processing_rule,
            self._batch_processing_rule,
            self._memory_pooling_rule,
            self._database_optimization_rule,
        ]

    def analyze(
        self,
        request_type: str,
        profile: RequestTypeProfile,
        latest_sample: Optional[ExecutionSample] = None,
        options: Optional[RequestTypeOptions] = None,
        weights: Optional[Mapping[OptimizationStrategy, float]] = None,
        token: Optional[CancellationToken] = None,
    ) -> OptimizationRecommendation:
        """
        Recommend a strategy for a request type.

        Args:
            request_type: Request type identifier
            profile: Profile snapshot to analyze
            latest_sample: Most recent execution, if the caller has one
            options: Per-request-type monitoring options
            weights: Learned weight per strategy for this request type
            token: Cancellation token checked between rules

        Returns:
            OptimizationRecommendation: Best matching strategy, or a 'none' recommendation
        """
        candidates = self.evaluate_candidates(request_type, profile, latest_sample, options, weights, token)
        if candidates:
            return candidates[0]

        min_executions = self.min_executions(request_type, options)
        if profile.sample_count < min_executions:
            return OptimizationRecommendation.no_recommendation(
                request_type,
                f"Insufficient data: {profile.sample_count} of {min_executions} required samples",
            )
        return OptimizationRecommendation.no_recommendation(
            request_type,
            f"No optimization condition met across {profile.sample_count} samples "
            f"(mean {format_duration(profile.mean_duration_ms)}, error rate {profile.error_rate:.1%})",
        )

    def evaluate_candidates(
        self,
        request_type: str,
        profile: RequestTypeProfile,
        latest_sample: Optional[ExecutionSample] = None,
        options: Optional[RequestTypeOptions] = None,
        weights: Optional[Mapping[OptimizationStrategy, float]] = None,
        token: Optional[CancellationToken] = None,
    ) -> List[OptimizationRecommendation]:
        """
        Every strategy whose rule matches, in rule priority order.

        Strategies excluded by the request type's options are skipped. The
        list is empty below the cold-start gate.
        """
        min_executions = self.min_executions(request_type, options)
        if profile.sample_count < min_executions:
            return []

        weights = weights or {}
        candidates = []
        for rule in self._rules:
            if token is not None:
                token.raise_if_cancelled()
            try:
                recommendation = rule(request_type, profile, latest_sample, min_executions, weights)
            except Exception as e:
                raise AnalysisError(f"{rule.__name__} failed for {request_type}: {e}") from e
            if recommendation is None:
                continue
            if options is not None and not options.allows(recommendation.strategy):
                logger.debug(
                    f"Skipping {recommendation.strategy.value} for {request_type}: not allowed by options"
                )
                continue
            candidates.append(recommendation)
        return candidates

    def min_executions(self, request_type: str, options: Optional[RequestTypeOptions]) -> int:
        if options is not None and options.min_executions_for_analysis is not None:
            return options.min_executions_for_analysis
        return self.config.min_executions_for(request_type)

    def _circuit_breaker_rule(self, request_type, profile, latest_sample, min_executions, weights):
        threshold = self.config.error_rate_threshold
        if profile.error_rate <= threshold:
            return None

        overshoot = (profile.error_rate - threshold) / threshold if threshold > 0 else 1.0
        strategy = OptimizationStrategy.CIRCUIT_BREAKER
        return self.scorer.build(
            request_type,
            strategy,
            profile,
            severity=self.scorer.severity(profile.error_rate, threshold),
            reasoning=(
                f"Error rate {profile.error_rate:.1%} exceeds the {threshold:.1%} threshold; "
                f"a circuit breaker will shed calls to the failing dependency"
            ),
            parameters={
                "failure_rate_threshold": threshold,
                "observed_error_rate": round(profile.error_rate, 6),
                "break_duration_seconds": CIRCUIT_BREAK_DURATION_SECONDS,
                "half_open_max_calls": CIRCUIT_HALF_OPEN_CALLS,
                "minimum_throughput": min_executions,
            },
            min_executions=min_executions,
            weight=weights.get(strategy),
            confidence_scale=min(1.0, 0.5 + 0.5 * overshoot),
        )

    def _parallel_processing_rule(self, request_type, profile, latest_sample, min_executions, weights):
        concurrency = profile.concurrency_high_water_mark
        if latest_sample is not None:
            concurrency = max(concurrency, latest_sample.concurrent_executions)

        latency_threshold = self.config.high_execution_time_threshold_ms
        concurrency_threshold = self.config.high_concurrency_threshold
        if profile.mean_duration_ms <= latency_threshold or concurrency <= concurrency_threshold:
            return None

        strategy = OptimizationStrategy.PARALLEL_PROCESSING
        return self.scorer.build(
            request_type,
            strategy,
            profile,
            severity=self.scorer.severity(profile.mean_duration_ms, latency_threshold),
            reasoning=(
                f"Mean duration {format_duration(profile.mean_duration_ms)} exceeds "
                f"{format_duration(latency_threshold)} with up to {concurrency} concurrent executions"
            ),
            parameters={
                "max_degree_of_parallelism": max(2, min(concurrency // 2, concurrency_threshold)),
                "observed_concurrency": concurrency,
                "mean_duration_ms": round(profile.mean_duration_ms, 3),
            },
            min_executions=min_executions,
            weight=weights.get(strategy),
        )

    def _batch_processing_rule(self, request_type, profile, latest_sample, min_executions, weights):
        throughput = profile.throughput_per_second
        config = self.config
        if (
            throughput < config.batch_min_throughput_per_second
            or profile.mean_duration_ms > config.batch_max_duration_ms
            or profile.duration_cv > config.batch_max_duration_cv
        ):
            return None

        batch_size = int(clamp(round(throughput / 10.0), 2, config.max_batch_size))
        strategy = OptimizationStrategy.BATCH_PROCESSING
        return self.scorer.build(
            request_type,
            strategy,
            profile,
            severity=self.scorer.severity(throughput, config.batch_min_throughput_per_second),
            reasoning=(
                f"{throughput:.1f} calls/s of short ({format_duration(profile.mean_duration_ms)}), "
                f"uniform requests can be grouped into batches"
            ),
            parameters={
                "batch_size": batch_size,
                "max_wait_ms": round(batch_size / throughput * 1000.0, 3),
                "observed_throughput_per_second": round(throughput, 3),
            },
            min_executions=min_executions,
            weight=weights.get(strategy),
        )

    def _memory_pooling_rule(self, request_type, profile, latest_sample, min_executions, weights):
        threshold = self.config.high_memory_allocation_threshold_bytes
        if (
            profile.high_memory_ratio < self.config.high_memory_consistency_ratio
            or profile.mean_memory_delta_bytes <= threshold
        ):
            return None

        strategy = OptimizationStrategy.MEMORY_POOLING
        return self.scorer.build(
            request_type,
            strategy,
            profile,
            severity=self.scorer.severity(profile.mean_memory_delta_bytes, threshold),
            reasoning=(
                f"{profile.high_memory_ratio:.0%} of recent calls allocate more than "
                f"{threshold / (1024 * 1024):.1f} MiB (mean {profile.mean_memory_delta_bytes / (1024 * 1024):.1f} MiB)"
            ),
            parameters={
                "pool_size": max(1, profile.concurrency_high_water_mark),
                "buffer_size_bytes": int(profile.mean_memory_delta_bytes),
                "high_memory_ratio": round(profile.high_memory_ratio, 6),
            },
            min_executions=min_executions,
            weight=weights.get(strategy),
            confidence_scale=profile.high_memory_ratio,
        )

    def _database_optimization_rule(self, request_type, profile, latest_sample, min_executions, weights):
        threshold = self.config.high_database_calls_threshold
        if profile.mean_database_calls <= threshold:
            return None

        strategy = OptimizationStrategy.DATABASE_OPTIMIZATION
        return self.scorer.build(
            request_type,
            strategy,
            profile,
            severity=self.scorer.severity(profile.mean_database_calls, threshold),
            reasoning=(
                f"{profile.mean_database_calls:.1f} database calls per request exceed the "
                f"threshold of {threshold:g}; batch queries or add read-through caching"
            ),
            parameters={
                "observed_database_calls": round(profile.mean_database_calls, 3),
                "target_database_calls": threshold,
                "enable_query_batching": True,
            },
            min_executions=min_executions,
            weight=weights.get(strategy),
        )

    def predict_optimal_batch_size(self, profile: RequestTypeProfile, load: SystemLoadMetrics) -> int:
        """
        Predict a batch size for the current system load.

        Args:
            profile: Profile of the request type being batched
            load: Current system load

        Returns:
            int: Batch size in [1, max_batch_size]
        """
        config = self.config
        size = config.default_batch_size * (1.0 - load.cpu_utilization) * (1.0 - load.memory_utilization)

        mean = profile.mean_duration_ms
        if mean > LONG_REQUEST_MS:
            size /= 2.0
        elif 0 < mean < SHORT_REQUEST_MS:
            size *= 2.0

        if profile.duration_cv > UNSTABLE_DURATION_CV:
            size *= 0.7

        # Backlog larger than one second of throughput
        if load.throughput_per_second > 0 and load.queue_depth > load.throughput_per_second:
            size *= min(2.0, load.queue_depth / load.throughput_per_second)

        result = int(clamp(int(size), 1, config.max_batch_size))
        logger.debug(
            f"Predicted batch size {result} for {profile.request_type} "
            f"(cpu={load.cpu_utilization:.0%}, memory={load.memory_utilization:.0%})"
        )
        return result
