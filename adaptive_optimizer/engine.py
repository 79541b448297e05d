"""
Optimization engine facade.

The single entry point used by instrumentation code. Every operation on the
request path is advisory: failures are logged and turned into the last
known good value or a 'none' recommendation, never raised to the caller.
"""

import logging
import random
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from .analytics.store import AnalyticsStore
from .cancellation import CancellationToken
from .config import OptimizerConfig, RequestTypeOptions
from .exceptions import OperationCancelledError
from .intelligence.caching_analysis import CachingAnalysisService
from .intelligence.learning import LearningFeedbackLoop
from .intelligence.pattern_analysis import PatternAnalysisService
from .intelligence.resource_optimization import ResourceOptimizationService
from .intelligence.scoring import RecommendationScorer
from .models import (
    AccessPattern,
    CacheKeyStrategy,
    CacheScope,
    ExecutionSample,
    ModelStatistics,
    OptimizationRecommendation,
    OptimizationStrategy,
    ResourceOptimizationResult,
    SystemLoadMetrics,
    SystemPerformanceInsights,
)
from .monitoring.insights import SystemInsightsAggregator
from .monitoring.scheduler import TaskScheduler
from .monitoring.time_series import TimeSeriesStore

logger = logging.getLogger(__name__)

ACCESS_HISTORY_RETENTION = timedelta(hours=24)

MODEL_UPDATE_TASK = "model-update"
METRICS_COLLECTION_TASK = "metrics-collection"
INSIGHTS_TASK = "insights"


class OptimizationEngine:
    """
    Observes request telemetry and hands out optimization recommendations.

    Example:
        >>> engine = OptimizationEngine(OptimizerConfig())
        >>> engine.record_execution("GetOrder", ExecutionSample(duration_ms=12.5))
        True
        >>> engine.get_recommendation("GetOrder").strategy
        <OptimizationStrategy.NONE: 'none'>
    """

    def __init__(
        self,
        config: Optional[OptimizerConfig] = None,
        rng: Optional[random.Random] = None,
        clock: Optional[Callable[[], datetime]] = None,
        store: Optional[AnalyticsStore] = None,
    ):
        """
        Initialize the engine.

        Args:
            config: Validated configuration; defaults are used when omitted
            rng: Random source for exploration; seed it for reproducible runs
            clock: Callable returning the current time
            store: Analytics store to use instead of a fresh one
        """
        self.config = config or OptimizerConfig()
        self.clock = clock or datetime.now

        self.store = store or AnalyticsStore(self.config)
        self.scorer = RecommendationScorer(self.config)
        self.pattern_service = PatternAnalysisService(self.config, self.scorer)
        self.caching_service = CachingAnalysisService(self.config, self.scorer)
        self.resource_service = ResourceOptimizationService(self.config)
        self.learning = LearningFeedbackLoop(self.config, rng=rng, clock=self.clock)
        self.insights = SystemInsightsAggregator(
            self.config,
            self.store,
            self.resource_service,
            TimeSeriesStore(self.config.time_series_max_points),
            clock=self.clock,
        )

        self._publish_lock = threading.Lock()
        self._recommendations: Dict[str, OptimizationRecommendation] = {}
        self._applied: Set[Tuple[str, OptimizationStrategy]] = set()
        self._latest_load: Optional[SystemLoadMetrics] = None

        self.scheduler = TaskScheduler()
        self.scheduler.add(MODEL_UPDATE_TASK, self.config.model_update_interval_seconds, self._model_update_cycle)
        self.scheduler.add(
            METRICS_COLLECTION_TASK, self.config.metrics_collection_interval_seconds, self.collect_metrics
        )
        self.scheduler.add(INSIGHTS_TASK, self.config.insights_interval_seconds, self._insights_cycle)

        logger.info(
            f"Optimization engine initialized (enabled={self.config.enabled}, "
            f"learning={self.config.learning_enabled}, "
            f"registered request types={len(self.config.request_types)})"
        )

    # Lifecycle

    def start(self):
        """Start the background model update, metrics collection and insights tasks."""
        self.scheduler.start()
        logger.info("Optimization engine background tasks started")

    def stop(self, timeout: Optional[float] = 5.0):
        self.scheduler.stop(timeout)
        logger.info("Optimization engine background tasks stopped")

    def __enter__(self) -> "OptimizationEngine":
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        return False

    def reset(self):
        """Clear all profiles, recommendations, learned weights and metric history."""
        self.store.reset()
        with self._publish_lock:
            self._recommendations = {}
            self._applied = set()
        self.learning.reset()
        self.insights.reset()
        logger.info("Optimization engine reset")

    # Telemetry

    def _options(self, request_type: str) -> Optional[RequestTypeOptions]:
        if not self.config.enabled:
            return None
        options = self.config.options_for(request_type)
        if options is None or not options.monitor:
            return None
        return options

    def record_execution(self, request_type: str, sample: ExecutionSample) -> bool:
        """
        Record one observed execution.

        Args:
            request_type: Request type identifier
            sample: Execution metrics

        Returns:
            bool: True when the sample was recorded; False when the request
            type is not monitored or the sample was rejected
        """
        if self._options(request_type) is None:
            return False
        try:
            self.store.record(request_type, sample)
        except Exception as e:
            logger.warning(f"Rejected execution sample for {request_type} ({sample!r}): {e}")
            return False
        return True

    def record_system_load(self, load: SystemLoadMetrics):
        self._latest_load = load

    @property
    def latest_load(self) -> Optional[SystemLoadMetrics]:
        return self._latest_load

    # Recommendations

    def analyze_request(self, request_type: str, sample: ExecutionSample,
                        token: Optional[CancellationToken] = None) -> OptimizationRecommendation:
        """Record a sample and return the cached recommendation for its type."""
        self.record_execution(request_type, sample)
        return self.get_recommendation(request_type, token)

    def get_recommendation(self, request_type: str,
                           token: Optional[CancellationToken] = None) -> OptimizationRecommendation:
        """
        Return the cached recommendation, computing it on first request.

        Cached recommendations are refreshed by the model update task or
        by ``analyze``.
        """
        cached = self._recommendations.get(request_type)
        if cached is not None:
            return cached
        return self.analyze(request_type, token)

    def analyze(self, request_type: str, token: Optional[CancellationToken] = None) -> OptimizationRecommendation:
        """
        Recompute and publish the recommendation for a request type.

        Args:
            request_type: Request type identifier
            token: Cancellation token

        Returns:
            OptimizationRecommendation: The new recommendation; the previous
            one (or 'none') when analysis is cancelled or fails
        """
        options = self._options(request_type)
        if options is None:
            return OptimizationRecommendation.no_recommendation(
                request_type, "Request type is not monitored"
            )

        try:
            recommendation = self._compute(request_type, options, token or CancellationToken.none())
        except OperationCancelledError:
            logger.warning(f"Analysis of {request_type} cancelled; keeping previous recommendation")
            return self._fallback(request_type, "Analysis cancelled")
        except Exception as e:
            logger.exception(
                f"Analysis failed for {request_type} (profile={self.store.snapshot(request_type)}): {e}"
            )
            return self._fallback(request_type, "Analysis failed")

        with self._publish_lock:
            self._recommendations[request_type] = recommendation
        self.learning.record_prediction(recommendation)
        logger.debug(
            f"Recommendation for {request_type}: {recommendation.strategy.value} "
            f"(confidence {recommendation.confidence_score:.2f}, priority {recommendation.priority.value})"
        )
        return recommendation

    def _fallback(self, request_type: str, reason: str) -> OptimizationRecommendation:
        previous = self._recommendations.get(request_type)
        if previous is not None:
            return previous
        return OptimizationRecommendation.no_recommendation(request_type, reason)

    def _compute(self, request_type: str, options: RequestTypeOptions,
                 token: CancellationToken) -> OptimizationRecommendation:
        profile = self.store.snapshot(request_type)
        latest = self.store.latest_sample(request_type)
        weights = self.learning.weights_for(request_type) if self.learning.enabled else None

        # Access history alone never lifts a type out of cold start
        if profile.sample_count < self.pattern_service.min_executions(request_type, options):
            return self.pattern_service.analyze(request_type, profile, latest, options, weights, token)

        candidates = self.pattern_service.evaluate_candidates(
            request_type, profile, latest, options, weights, token
        )

        caching = self._caching_candidate(request_type, options, profile, weights, token)
        if caching is not None:
            # Circuit breaking outranks caching; caching outranks everything else
            position = 1 if candidates and candidates[0].strategy is OptimizationStrategy.CIRCUIT_BREAKER else 0
            candidates.insert(position, caching)

        token.raise_if_cancelled()
        chosen = self.learning.choose(request_type, candidates)
        if chosen is None:
            return self.pattern_service.analyze(request_type, profile, latest, options, weights, token)
        return chosen

    def _caching_candidate(self, request_type, options, profile, weights,
                           token) -> Optional[OptimizationRecommendation]:
        if not self.config.caching_analysis_enabled or not options.caching_enabled:
            return None
        if not options.allows(OptimizationStrategy.ENABLE_CACHING):
            return None
        history = self.store.access_history(request_type)
        if not history:
            return None
        recommendation = self.caching_service.analyze(
            request_type,
            self.store.caching_snapshot(request_type),
            history,
            profile,
            weight=(weights or {}).get(OptimizationStrategy.ENABLE_CACHING),
            token=token,
        )
        return recommendation if recommendation.should_optimize else None

    def refresh_recommendations(self, token: Optional[CancellationToken] = None) -> int:
        """
        Recompute recommendations for every monitored request type.

        Returns:
            int: Number of request types refreshed
        """
        refreshed = 0
        for request_type in self.store.request_types():
            if token is not None and token.cancelled:
                logger.warning(f"Recommendation refresh cancelled after {refreshed} request types")
                break
            if self._options(request_type) is None:
                continue
            self.analyze(request_type, token)
            refreshed += 1
        return refreshed

    def current_recommendations(self) -> Dict[str, OptimizationRecommendation]:
        with self._publish_lock:
            return dict(self._recommendations)

    # Caching

    def should_cache(self, request_type: str, access_patterns: Sequence[AccessPattern],
                     token: Optional[CancellationToken] = None) -> OptimizationRecommendation:
        """
        Decide whether responses for a request type should be cached.

        The patterns are added to the request type's access history and
        analyzed; the resulting TTL, scope and key strategy are remembered
        on the caching profile.
        """
        options = self._options(request_type)
        if options is None or not self.config.caching_analysis_enabled or not options.caching_enabled:
            return OptimizationRecommendation.no_recommendation(
                request_type, "Caching analysis is disabled for this request type"
            )

        try:
            self.store.record_access(request_type, access_patterns)
            weight = None
            if self.learning.enabled:
                weight = self.learning.weight(request_type, OptimizationStrategy.ENABLE_CACHING)
            recommendation = self.caching_service.analyze(
                request_type,
                self.store.caching_snapshot(request_type),
                access_patterns,
                self.store.snapshot(request_type),
                weight=weight,
                token=token,
            )
        except OperationCancelledError:
            logger.warning(f"Caching analysis of {request_type} cancelled")
            return OptimizationRecommendation.no_recommendation(request_type, "Caching analysis cancelled")
        except Exception as e:
            logger.exception(
                f"Caching analysis failed for {request_type} ({len(access_patterns)} access patterns): {e}"
            )
            return OptimizationRecommendation.no_recommendation(request_type, "Caching analysis failed")

        params = recommendation.parameters
        self.store.update_caching_result(
            request_type,
            predicted_hit_rate=params.get("predicted_hit_rate", 0.0),
            ttl_seconds=params.get("ttl_seconds"),
            scope=CacheScope(params["cache_scope"]) if "cache_scope" in params else None,
            key_strategy=CacheKeyStrategy(params["key_strategy"]) if "key_strategy" in params else None,
        )
        return recommendation

    # Batching and resources

    def predict_optimal_batch_size(self, request_type: str, load: SystemLoadMetrics) -> int:
        try:
            return self.pattern_service.predict_optimal_batch_size(self.store.snapshot(request_type), load)
        except Exception as e:
            logger.exception(f"Batch size prediction failed for {request_type}: {e}")
            return self.config.default_batch_size

    def analyze_resources(self, current_utilization: Mapping[str, float],
                          estimated_capacity: Mapping[str, float],
                          token: Optional[CancellationToken] = None) -> ResourceOptimizationResult:
        """
        Compare resource usage against capacity.

        Invalid usage or capacity values are logged and reported as a
        result with ``should_optimize`` False rather than raised.
        """
        try:
            if token is not None:
                token.raise_if_cancelled()
            return self.resource_service.analyze(current_utilization, estimated_capacity)
        except OperationCancelledError:
            logger.warning("Resource analysis cancelled")
            return ResourceOptimizationResult(should_optimize=False, reasoning="Resource analysis cancelled")
        except Exception as e:
            logger.exception(
                f"Resource analysis failed (usage={dict(current_utilization)}, "
                f"capacity={dict(estimated_capacity)}): {e}"
            )
            return ResourceOptimizationResult(should_optimize=False, reasoning=f"Resource analysis failed: {e}")

    def estimate_connection_limits(self) -> Dict[str, int]:
        return self.resource_service.estimate_connection_limits(
            self.store.snapshots().values(), self._latest_load
        )

    # Learning

    def learn_from_execution(self, request_type: str, applied_strategies: Iterable[OptimizationStrategy],
                             observed: ExecutionSample) -> bool:
        """
        Report what a caller applied and how the request performed afterwards.

        Args:
            request_type: Request type identifier
            applied_strategies: Strategies actually applied
            observed: Metrics measured with the strategies in place

        Returns:
            bool: True when the outcome was folded into the learned weights
        """
        applied = [s for s in applied_strategies if s is not OptimizationStrategy.NONE]
        accepted = self.learning.reconcile(
            request_type, applied, observed, self.store.snapshot(request_type)
        )
        if accepted and applied:
            with self._publish_lock:
                self._applied.update((request_type, s) for s in applied)
        return accepted

    def set_learning_mode(self, enabled: bool):
        self.learning.set_enabled(enabled)

    def get_model_statistics(self) -> ModelStatistics:
        return self.learning.statistics(len(self.store))

    # Insights

    def collect_metrics(self, now: Optional[datetime] = None):
        self.insights.collect(now or self.clock(), self._latest_load)

    def get_system_insights(self, window_seconds: Optional[float] = None,
                            token: Optional[CancellationToken] = None) -> SystemPerformanceInsights:
        """
        Generate a system report over the given window.

        Returns:
            SystemPerformanceInsights: The new report, or the last published
            one when generation is cancelled or fails
        """
        with self._publish_lock:
            applied = set(self._applied)
        return self.insights.generate(
            self.current_recommendations(),
            window_seconds=window_seconds,
            applied=applied,
            load=self._latest_load,
            token=token,
        )

    @property
    def last_insights(self) -> Optional[SystemPerformanceInsights]:
        return self.insights.last_insights

    # Background cycles

    def _model_update_cycle(self):
        refreshed = self.refresh_recommendations()
        pruned = self.store.prune_access_history(self.clock() - ACCESS_HISTORY_RETENTION)
        stats = self.learning.statistics(len(self.store))
        logger.info(
            f"Model update: refreshed {refreshed} request types, pruned {pruned} access events, "
            f"accuracy {stats.accuracy_score:.2f} over {stats.training_data_points} outcomes"
        )

    def _insights_cycle(self):
        self.get_system_insights()

    def monitored_request_types(self) -> List[str]:
        return [rt for rt in self.store.request_types() if self._options(rt) is not None]
