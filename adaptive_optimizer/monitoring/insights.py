"""
System-wide insights: bottlenecks, opportunities, health, seasonality and forecasts.

Runs off the request path. Each generation builds a complete new
SystemPerformanceInsights and publishes it by swapping a single reference.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Collection, Dict, List, Mapping, Optional, Tuple

import numpy as np
import pandas as pd

from ..analytics.store import AnalyticsStore
from ..cancellation import CancellationToken
from ..config import OptimizerConfig
from ..exceptions import OperationCancelledError
from ..intelligence.resource_optimization import ResourceOptimizationService
from ..models import (
    BottleneckSeverity,
    MetricForecast,
    OptimizationOpportunity,
    OptimizationRecommendation,
    OptimizationStrategy,
    PerformanceBottleneck,
    PredictiveAnalysis,
    RequestTypeProfile,
    SeasonalPattern,
    SystemHealthScore,
    SystemLoadMetrics,
    SystemPerformanceInsights,
)
from ..utils import clamp, safe_divide
from .time_series import SYSTEM_COMPONENT, TimeSeriesStore

logger = logging.getLogger(__name__)

MIN_FORECAST_POINTS = 3
MAX_TREND_PENALTY = 20.0

BOTTLENECK_ACTIONS = {
    "mean_duration_ms": (
        "Profile the slowest request types",
        "Consider caching or parallel processing for long-running requests",
    ),
    "error_rate": (
        "Inspect failing dependencies",
        "Add a circuit breaker around unstable downstream calls",
    ),
    "cpu_utilization": (
        "Shed or defer non-critical load",
        "Scale out compute capacity",
    ),
    "memory_utilization": (
        "Pool large buffers",
        "Reduce per-request allocations",
    ),
    "queue_depth": (
        "Apply backpressure at the entry point",
        "Increase batch sizes or worker counts",
    ),
}

STATUS_BANDS = ((90.0, "Excellent"), (75.0, "Good"), (60.0, "Fair"))
GRADE_BANDS = ((90.0, "A"), (80.0, "B"), (70.0, "C"), (60.0, "D"))
CRITICAL_AREA_SCORE = 60.0


def health_status(score: float) -> str:
    for floor, status in STATUS_BANDS:
        if score >= floor:
            return status
    return "Poor"


def performance_grade(score: float) -> str:
    for floor, grade in GRADE_BANDS:
        if score >= floor:
            return grade
    return "F"


def severity_for_overshoot(overshoot: float) -> BottleneckSeverity:
    if overshoot < 0.25:
        return BottleneckSeverity.LOW
    if overshoot < 0.5:
        return BottleneckSeverity.MEDIUM
    if overshoot < 1.0:
        return BottleneckSeverity.HIGH
    return BottleneckSeverity.CRITICAL


def autocorrelation(values: np.ndarray, lag: int) -> float:
    """Pearson correlation between a series and itself shifted by ``lag``."""
    if lag <= 0 or len(values) <= lag + 1:
        return 0.0
    leading = values[:-lag]
    lagged = values[lag:]
    if np.std(leading) == 0 or np.std(lagged) == 0:
        return 0.0
    correlation = np.corrcoef(leading, lagged)[0, 1]
    return float(correlation) if not np.isnan(correlation) else 0.0


class SystemInsightsAggregator:
    """Builds point-in-time system reports from profiles and metric history."""

    def __init__(
        self,
        config: OptimizerConfig,
        store: AnalyticsStore,
        resource_service: ResourceOptimizationService,
        time_series: Optional[TimeSeriesStore] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config
        self.store = store
        self.resource_service = resource_service
        self.time_series = time_series or TimeSeriesStore(config.time_series_max_points)
        self.clock = clock or datetime.now

        self._last_totals: Dict[str, Tuple[int, float]] = {}
        self._last_insights: Optional[SystemPerformanceInsights] = None

    @property
    def last_insights(self) -> Optional[SystemPerformanceInsights]:
        return self._last_insights

    def collect(self, now: Optional[datetime] = None, load: Optional[SystemLoadMetrics] = None):
        """
        Sample every request type (and system load) into the metric history.

        The duration recorded per request type is the mean of the samples
        that arrived since the previous collection, not the lifetime mean.

        Args:
            now: Timestamp for the collected points
            load: Latest system load, if any
        """
        now = now or self.clock()
        for request_type, profile in self.store.snapshots().items():
            total = profile.mean_duration_ms * profile.sample_count
            previous_count, previous_total = self._last_totals.get(request_type, (0, 0.0))
            new_samples = profile.sample_count - previous_count
            if new_samples > 0:
                interval_mean = (total - previous_total) / new_samples
                self.time_series.add(request_type, "mean_duration_ms", max(0.0, interval_mean), now)
            elif new_samples < 0:
                # Store was reset underneath us
                self._last_totals.pop(request_type, None)
                continue
            self.time_series.add(request_type, "error_rate", profile.error_rate, now)
            self.time_series.add(request_type, "p95_duration_ms", profile.p95_proxy_ms, now)
            self._last_totals[request_type] = (profile.sample_count, total)

        if load is not None:
            self.time_series.add_many(
                SYSTEM_COMPONENT,
                {
                    "cpu_utilization": load.cpu_utilization,
                    "memory_utilization": load.memory_utilization,
                    "queue_depth": float(load.queue_depth),
                    "throughput_per_second": load.throughput_per_second,
                },
                now,
            )

    def generate(
        self,
        recommendations: Mapping[str, OptimizationRecommendation],
        window_seconds: Optional[float] = None,
        applied: Collection[Tuple[str, OptimizationStrategy]] = (),
        load: Optional[SystemLoadMetrics] = None,
        token: Optional[CancellationToken] = None,
    ) -> SystemPerformanceInsights:
        """
        Build and publish a new insight report.

        Args:
            recommendations: Current recommendation per request type
            window_seconds: Look-back window; defaults to ``insights_window_seconds``
            applied: (request type, strategy) pairs already applied by callers
            load: Latest system load, used for the resource score
            token: Cancellation token checked between phases

        Returns:
            SystemPerformanceInsights: The new report, or the last published
            report (empty if none) when generation is cancelled or fails
        """
        window = window_seconds or self.config.insights_window_seconds
        try:
            insights = self._generate(recommendations, window, applied, load, token or CancellationToken.none())
        except OperationCancelledError:
            logger.warning("Insights generation cancelled; returning last known report")
            return self._last_insights or SystemPerformanceInsights.empty(window)
        except Exception as e:
            logger.exception(f"Insights generation failed (window={window}s): {e}")
            return self._last_insights or SystemPerformanceInsights.empty(window)

        self._last_insights = insights
        logger.info(
            f"Generated insights: health {insights.health_score.overall:.1f} "
            f"({insights.health_score.grade}), {len(insights.bottlenecks)} bottlenecks, "
            f"{len(insights.opportunities)} opportunities"
        )
        return insights

    def _generate(self, recommendations, window, applied, load, token) -> SystemPerformanceInsights:
        now = self.clock()
        since = now - timedelta(seconds=window)
        profiles = self.store.snapshots()

        token.raise_if_cancelled()
        bottlenecks = self.detect_bottlenecks(since)

        token.raise_if_cancelled()
        opportunities = self.detect_opportunities(recommendations, applied)

        token.raise_if_cancelled()
        health = self.health_score(profiles, since, load)

        token.raise_if_cancelled()
        seasonal = self.detect_seasonality()

        token.raise_if_cancelled()
        predictions = self.forecast(since)

        token.raise_if_cancelled()
        key_metrics = self.key_metrics(profiles, load, bottlenecks, opportunities, health)

        return SystemPerformanceInsights(
            generated_at=now,
            window_seconds=window,
            bottlenecks=tuple(bottlenecks),
            opportunities=tuple(opportunities),
            health_score=health,
            seasonal_patterns=tuple(seasonal),
            predictions=predictions,
            key_metrics=key_metrics,
        )

    def detect_bottlenecks(self, since: datetime) -> List[PerformanceBottleneck]:
        """
        Metrics that stayed above their threshold for the minimum duration.

        The longest consecutive run above threshold inside the window is
        reported, with severity taken from the mean overshoot of that run.
        """
        thresholds = self.config.bottleneck_thresholds
        bottlenecks = []
        for component, metric in self.time_series.keys():
            threshold = thresholds.get(metric)
            if threshold is None:
                continue
            series = self.time_series.series(component, metric, since=since)
            run = self._longest_run_above(series, threshold)
            if run is None:
                continue
            run_values, sustained = run
            if sustained < self.config.min_bottleneck_duration_seconds:
                continue

            observed = float(np.mean(run_values))
            overshoot = (observed - threshold) / threshold
            bottlenecks.append(PerformanceBottleneck(
                component=component,
                metric=metric,
                description=(
                    f"{metric} for {component} averaged {observed:.3g} against a threshold of "
                    f"{threshold:.3g} for {sustained:.0f}s"
                ),
                severity=severity_for_overshoot(overshoot),
                impact=round(clamp(overshoot, 0.0, 1.0), 6),
                observed_value=round(observed, 6),
                threshold=threshold,
                sustained_seconds=sustained,
                recommended_actions=BOTTLENECK_ACTIONS.get(metric, ()),
            ))

        bottlenecks.sort(key=lambda b: (-b.impact, b.component, b.metric))
        return bottlenecks

    @staticmethod
    def _longest_run_above(series: pd.Series, threshold: float):
        best = None
        run_start = None
        run_values: List[float] = []
        timestamps = list(series.index)
        values = list(series.values)

        def _close(end_index: int):
            nonlocal best
            duration = (timestamps[end_index] - timestamps[run_start]).total_seconds()
            if best is None or duration > best[1]:
                best = (list(run_values), duration)

        for i, value in enumerate(values):
            if value > threshold:
                if run_start is None:
                    run_start = i
                    run_values = []
                run_values.append(value)
            elif run_start is not None:
                _close(i - 1)
                run_start = None
        if run_start is not None:
            _close(len(values) - 1)
        return best

    def detect_opportunities(self, recommendations: Mapping[str, OptimizationRecommendation],
                             applied: Collection[Tuple[str, OptimizationStrategy]] = ()
                             ) -> List[OptimizationOpportunity]:
        floor = self.config.confidence_floor
        applied = set(applied)
        opportunities = [
            OptimizationOpportunity(
                request_type=request_type,
                strategy=rec.strategy,
                confidence=rec.confidence_score,
                expected_gain_percentage=rec.estimated_gain_percentage,
                estimated_improvement_ms=rec.estimated_improvement_ms,
                priority=rec.priority,
                risk=rec.risk,
                description=rec.reasoning,
            )
            for request_type, rec in recommendations.items()
            if rec.should_optimize
            and rec.confidence_score >= floor
            and (request_type, rec.strategy) not in applied
        ]
        opportunities.sort(key=lambda o: (-o.expected_gain_percentage, o.request_type))
        return opportunities

    def health_score(self, profiles: Mapping[str, RequestTypeProfile], since: datetime,
                     load: Optional[SystemLoadMetrics] = None) -> SystemHealthScore:
        """
        Weighted health score.

        Performance comes from the sample-weighted mean duration against the
        baseline, reliability from the weighted error rate, both penalized
        when their trend in the window is rising. Resource efficiency comes
        from resource analysis of the latest load; user experience from the
        p95/p99 duration proxies against their targets.
        """
        config = self.config
        active = [p for p in profiles.values() if p.sample_count > 0]
        total = sum(p.sample_count for p in active)

        if total:
            mean_duration = sum(p.mean_duration_ms * p.sample_count for p in active) / total
            error_rate = sum(p.error_rate * p.sample_count for p in active) / total
            p95 = sum(p.p95_proxy_ms * p.sample_count for p in active) / total
            p99 = sum(p.p99_proxy_ms * p.sample_count for p in active) / total
        else:
            mean_duration = error_rate = p95 = p99 = 0.0

        performance = 100.0 * (1.0 - clamp(mean_duration / config.performance_baseline_ms, 0.0, 1.0))
        performance -= self._trend_penalty("mean_duration_ms", since, relative=True)

        reliability = 100.0 * (1.0 - clamp(error_rate, 0.0, 1.0))
        reliability -= self._trend_penalty("error_rate", since, relative=False)

        if load is not None:
            usage, capacity = self.resource_service.utilization_from_load(load)
            resource = self.resource_service.efficiency_score(self.resource_service.analyze(usage, capacity))
        else:
            resource = 100.0

        if p95 > 0 and p99 > 0:
            user_experience = 100.0 * (
                0.6 * min(1.0, config.ux_p95_target_ms / p95)
                + 0.4 * min(1.0, config.ux_p99_target_ms / p99)
            )
        else:
            user_experience = 100.0

        scores = {
            "performance": clamp(performance, 0.0, 100.0),
            "reliability": clamp(reliability, 0.0, 100.0),
            "resource": clamp(resource, 0.0, 100.0),
            "user_experience": clamp(user_experience, 0.0, 100.0),
        }
        overall = clamp(sum(config.health_weights[k] * v for k, v in scores.items()), 0.0, 100.0)

        return SystemHealthScore(
            overall=round(overall, 3),
            performance=round(scores["performance"], 3),
            reliability=round(scores["reliability"], 3),
            resource_efficiency=round(scores["resource"], 3),
            user_experience=round(scores["user_experience"], 3),
            status=health_status(overall),
            grade=performance_grade(overall),
            critical_areas=tuple(k for k, v in scores.items() if v < CRITICAL_AREA_SCORE),
        )

    def _trend_penalty(self, metric: str, since: datetime, relative: bool) -> float:
        """Up to MAX_TREND_PENALTY points for the steepest rising series."""
        worst = 0.0
        for component, name in self.time_series.keys():
            if name != metric:
                continue
            series = self.time_series.series(component, metric, since=since)
            fit = self._linear_fit(series)
            if fit is None:
                continue
            slope, _, _, span = fit
            growth = slope * span
            if relative:
                growth = safe_divide(growth, float(series.iloc[0]) or float(series.mean()))
            worst = max(worst, growth)
        return clamp(worst * MAX_TREND_PENALTY, 0.0, MAX_TREND_PENALTY)

    def detect_seasonality(self) -> List[SeasonalPattern]:
        """
        Test candidate periods by autocorrelation at lag = period.

        Series are resampled into fixed buckets first so that the lag is a
        whole number of buckets; gaps are interpolated.
        """
        bucket = self.config.seasonality_bucket_seconds
        patterns = []
        for component, metric in self.time_series.keys():
            series = self.time_series.series(component, metric)
            if len(series) < 3:
                continue
            resampled = (
                series.resample(f"{int(bucket)}s").mean().interpolate(limit_direction="both").to_numpy()
            )
            for name, period in sorted(self.config.seasonal_candidate_periods.items(), key=lambda i: i[1]):
                lag = int(round(period / bucket))
                if len(resampled) < 2 * lag:
                    continue
                strength = autocorrelation(resampled, lag)
                if strength > self.config.seasonality_threshold:
                    patterns.append(SeasonalPattern(
                        metric=metric,
                        component=component,
                        pattern_type=name,
                        period_seconds=period,
                        strength=round(strength, 6),
                    ))
        return patterns

    @staticmethod
    def _linear_fit(series: pd.Series):
        """(slope per second, intercept, r squared, span seconds) or None."""
        if len(series) < MIN_FORECAST_POINTS:
            return None
        x = (series.index - series.index[0]).total_seconds().to_numpy(dtype=float)
        span = float(x[-1])
        if span <= 0:
            return None
        y = series.to_numpy(dtype=float)
        slope, intercept = np.polyfit(x, y, 1)
        residuals = y - (slope * x + intercept)
        ss_res = float(np.sum(residuals ** 2))
        ss_tot = float(np.sum((y - y.mean()) ** 2))
        if ss_tot == 0:
            r_squared = 1.0 if ss_res == 0 else 0.0
        else:
            r_squared = clamp(1.0 - ss_res / ss_tot, 0.0, 1.0)
        return float(slope), float(intercept), r_squared, span

    def forecast(self, since: datetime) -> PredictiveAnalysis:
        """
        Linear extrapolation of every metric over the forecast horizon.

        Confidence is the fit's r squared, decayed by how far the horizon
        reaches beyond the observed span.
        """
        horizon = self.config.forecast_horizon_seconds
        thresholds = self.config.bottleneck_thresholds
        forecasts = []
        issues = []
        for component, metric in self.time_series.keys():
            series = self.time_series.series(component, metric, since=since)
            fit = self._linear_fit(series)
            if fit is None:
                continue
            slope, intercept, r_squared, span = fit
            current = float(series.iloc[-1])
            predicted = max(0.0, slope * (span + horizon) + intercept)
            confidence = r_squared / (1.0 + horizon / span)
            forecasts.append(MetricForecast(
                metric=metric,
                component=component,
                current_value=round(current, 6),
                forecast_value=round(predicted, 6),
                confidence=round(clamp(confidence, 0.0, 1.0), 6),
                horizon_seconds=horizon,
                slope_per_second=slope,
            ))
            threshold = thresholds.get(metric)
            if threshold is not None and current <= threshold < predicted:
                issues.append(
                    f"{metric} for {component} is projected to reach {predicted:.3g} "
                    f"(threshold {threshold:.3g}) within {horizon:.0f}s"
                )

        overall = float(np.mean([f.confidence for f in forecasts])) if forecasts else 0.0
        return PredictiveAnalysis(
            forecasts=tuple(forecasts),
            horizon_seconds=horizon,
            confidence=round(overall, 6),
            potential_issues=tuple(issues),
        )

    def key_metrics(self, profiles: Mapping[str, RequestTypeProfile], load: Optional[SystemLoadMetrics],
                    bottlenecks, opportunities, health: SystemHealthScore) -> Dict[str, float]:
        active = [p for p in profiles.values() if p.sample_count > 0]
        total = sum(p.sample_count for p in active)
        metrics = {
            "request_types": float(len(profiles)),
            "total_samples": float(total),
            "mean_duration_ms": round(safe_divide(sum(p.mean_duration_ms * p.sample_count for p in active), total), 3),
            "error_rate": round(safe_divide(sum(p.error_rate * p.sample_count for p in active), total), 6),
            "throughput_per_second": round(sum(p.throughput_per_second for p in active), 3),
            "bottlenecks": float(len(bottlenecks)),
            "opportunities": float(len(opportunities)),
            "health_score": health.overall,
        }
        if load is not None:
            metrics.update({
                "cpu_utilization": load.cpu_utilization,
                "memory_utilization": load.memory_utilization,
                "queue_depth": float(load.queue_depth),
                "active_connections": float(load.active_connections),
            })
        limits = self.resource_service.estimate_connection_limits(active, load)
        metrics.update({f"estimated_{name}_connections": float(v) for name, v in limits.items()})
        return metrics

    def reset(self):
        self.time_series.clear()
        self._last_totals = {}
        self._last_insights = None
