"""
Tests for the system insights aggregator.
"""

import math
import numpy as np
import pytest
from datetime import datetime, timedelta
from unittest.mock import patch

from adaptive_optimizer.analytics.store import AnalyticsStore
from adaptive_optimizer.cancellation import CancellationToken
from adaptive_optimizer.intelligence.resource_optimization import ResourceOptimizationService
from adaptive_optimizer.models import (
    BottleneckSeverity,
    OptimizationRecommendation,
    OptimizationStrategy,
    SystemLoadMetrics,
)
from adaptive_optimizer.monitoring.insights import (
    SystemInsightsAggregator,
    autocorrelation,
    health_status,
    performance_grade,
)
from adaptive_optimizer.monitoring.time_series import SYSTEM_COMPONENT, TimeSeriesStore

BASE_TIME = datetime(2024, 1, 1, 12, 0, 0)


def add_series(time_series, component, metric, values, step_seconds=60, end=BASE_TIME):
    """Add values spaced ``step_seconds`` apart, the last one at ``end``."""
    start = end - timedelta(seconds=step_seconds * (len(values) - 1))
    for i, value in enumerate(values):
        time_series.add(component, metric, value, start + timedelta(seconds=step_seconds * i))


@pytest.fixture
def store(config):
    return AnalyticsStore(config)


@pytest.fixture
def aggregator(config, store, clock):
    return SystemInsightsAggregator(
        config, store, ResourceOptimizationService(config), TimeSeriesStore(5000), clock=clock,
    )


@pytest.mark.unit
class TestBands:

    @pytest.mark.parametrize("score,status,grade", [
        (95.0, "Excellent", "A"),
        (85.0, "Good", "B"),
        (76.2, "Good", "C"),
        (65.0, "Fair", "D"),
        (40.0, "Poor", "F"),
    ])
    def test_status_and_grade(self, score, status, grade):
        assert health_status(score) == status
        assert performance_grade(score) == grade

    def test_autocorrelation(self):
        values = [float(i % 4) for i in range(40)]
        arr = np.asarray(values)

        assert autocorrelation(arr, 4) == pytest.approx(1.0)
        assert autocorrelation(arr, 0) == 0.0
        assert autocorrelation(np.ones(20), 2) == 0.0


@pytest.mark.unit
class TestCollect:

    def test_records_interval_mean_duration(self, aggregator, store, make_samples):
        for sample in make_samples(10, duration_ms=100.0):
            store.record("Orders", sample)
        aggregator.collect(BASE_TIME)
        for sample in make_samples(10, duration_ms=300.0):
            store.record("Orders", sample)
        aggregator.collect(BASE_TIME + timedelta(seconds=30))

        series = aggregator.time_series.series("Orders", "mean_duration_ms")

        assert list(series.values) == pytest.approx([100.0, 300.0])
        assert len(aggregator.time_series.series("Orders", "error_rate")) == 2

    def test_idle_interval_records_no_duration(self, aggregator, store, make_samples):
        for sample in make_samples(10):
            store.record("Orders", sample)
        aggregator.collect(BASE_TIME)
        aggregator.collect(BASE_TIME + timedelta(seconds=30))

        assert len(aggregator.time_series.series("Orders", "mean_duration_ms")) == 1

    def test_records_system_load(self, aggregator, idle_load):
        aggregator.collect(BASE_TIME, idle_load)

        assert aggregator.time_series.latest(SYSTEM_COMPONENT, "cpu_utilization") == 0.2
        assert aggregator.time_series.latest(SYSTEM_COMPONENT, "queue_depth") == 0.0


@pytest.mark.unit
class TestBottlenecks:

    def test_sustained_breach(self, aggregator):
        add_series(aggregator.time_series, SYSTEM_COMPONENT, "cpu_utilization", [0.5] + [0.95] * 6, step_seconds=30)
        add_series(aggregator.time_series, "Reports", "mean_duration_ms", [2500.0] * 4)

        bottlenecks = aggregator.detect_bottlenecks(BASE_TIME - timedelta(hours=1))

        assert [(b.component, b.metric) for b in bottlenecks] == [
            ("Reports", "mean_duration_ms"),
            (SYSTEM_COMPONENT, "cpu_utilization"),
        ]
        slow, cpu = bottlenecks
        assert slow.severity is BottleneckSeverity.CRITICAL
        assert slow.sustained_seconds == 180.0
        assert cpu.severity is BottleneckSeverity.LOW
        assert cpu.observed_value == pytest.approx(0.95)
        assert cpu.sustained_seconds == 150.0
        assert cpu.recommended_actions

    def test_short_spike_ignored(self, aggregator):
        add_series(aggregator.time_series, SYSTEM_COMPONENT, "cpu_utilization", [0.5, 0.99, 0.99, 0.5], step_seconds=20)

        assert aggregator.detect_bottlenecks(BASE_TIME - timedelta(hours=1)) == []

    def test_longest_run_is_reported(self, aggregator):
        values = [2000.0, 2000.0, 100.0, 1500.0, 1500.0, 1500.0, 1500.0]
        add_series(aggregator.time_series, "Orders", "mean_duration_ms", values)

        bottleneck, = aggregator.detect_bottlenecks(BASE_TIME - timedelta(hours=1))

        assert bottleneck.sustained_seconds == 180.0
        assert bottleneck.observed_value == pytest.approx(1500.0)
        assert bottleneck.severity is BottleneckSeverity.HIGH

    def test_points_outside_window_ignored(self, aggregator):
        add_series(aggregator.time_series, "Orders", "error_rate", [0.5] * 5, end=BASE_TIME - timedelta(hours=2))

        assert aggregator.detect_bottlenecks(BASE_TIME - timedelta(hours=1)) == []


@pytest.mark.unit
class TestOpportunities:

    def test_confident_unapplied_recommendations(self, aggregator):
        recommendations = {
            "A": OptimizationRecommendation("A", OptimizationStrategy.ENABLE_CACHING, 0.9,
                                            estimated_gain_percentage=50.0),
            "B": OptimizationRecommendation.no_recommendation("B", "nothing to do"),
            "C": OptimizationRecommendation("C", OptimizationStrategy.PARALLEL_PROCESSING, 0.4,
                                            estimated_gain_percentage=80.0),
            "D": OptimizationRecommendation("D", OptimizationStrategy.BATCH_PROCESSING, 0.8,
                                            estimated_gain_percentage=30.0),
            "E": OptimizationRecommendation("E", OptimizationStrategy.MEMORY_POOLING, 0.7,
                                            estimated_gain_percentage=60.0),
        }

        opportunities = aggregator.detect_opportunities(
            recommendations, applied={("D", OptimizationStrategy.BATCH_PROCESSING)}
        )

        assert [o.request_type for o in opportunities] == ["E", "A"]


@pytest.mark.unit
class TestHealthScore:

    def test_no_data_is_healthy(self, aggregator):
        health = aggregator.health_score({}, BASE_TIME - timedelta(hours=1))

        assert health.overall == 100.0
        assert health.status == "Excellent"
        assert health.grade == "A"
        assert health.critical_areas == ()

    def test_slow_requests_lower_performance_and_experience(self, aggregator, store, make_samples):
        for sample in make_samples(100, duration_ms=2500.0):
            store.record("Reports", sample)

        health = aggregator.health_score(store.snapshots(), BASE_TIME - timedelta(hours=1))

        assert health.performance == pytest.approx(50.0)
        assert health.reliability == 100.0
        assert health.user_experience == pytest.approx(56.0)
        assert health.overall == pytest.approx(76.2)
        assert health.status == "Good"
        assert health.grade == "C"
        assert set(health.critical_areas) == {"performance", "user_experience"}

    def test_failures_lower_reliability(self, aggregator, store, make_samples):
        for sample in make_samples(20, failures=range(0, 20, 2)):
            store.record("Orders", sample)

        health = aggregator.health_score(store.snapshots(), BASE_TIME - timedelta(hours=1))

        assert health.reliability == pytest.approx(50.0)

    def test_overloaded_host_lowers_resource_efficiency(self, aggregator):
        load = SystemLoadMetrics(cpu_utilization=0.85)

        health = aggregator.health_score({}, BASE_TIME - timedelta(hours=1), load)

        assert health.resource_efficiency == pytest.approx(50.0)

    def test_rising_trend_is_penalized(self, aggregator, store, make_samples):
        for sample in make_samples(100, duration_ms=500.0):
            store.record("Orders", sample)
        flat = aggregator.health_score(store.snapshots(), BASE_TIME - timedelta(hours=1))

        add_series(aggregator.time_series, "Orders", "mean_duration_ms", [200.0, 300.0, 400.0, 500.0])
        rising = aggregator.health_score(store.snapshots(), BASE_TIME - timedelta(hours=1))

        assert rising.performance < flat.performance
        assert flat.performance - rising.performance <= 20.0

    def test_scores_in_range(self, aggregator, store, make_samples):
        for sample in make_samples(50, duration_ms=60000.0, failures=range(50)):
            store.record("Orders", sample)
        load = SystemLoadMetrics(cpu_utilization=1.0, memory_utilization=1.0, queue_depth=10000)

        health = aggregator.health_score(store.snapshots(), BASE_TIME - timedelta(hours=1), load)

        for value in (health.overall, health.performance, health.reliability,
                      health.resource_efficiency, health.user_experience):
            assert 0.0 <= value <= 100.0
        assert health.grade == "F"


@pytest.mark.unit
class TestSeasonalityAndForecast:

    def test_hourly_cycle_detected(self, aggregator):
        values = [100.0 + 50.0 * math.sin(2 * math.pi * i / 60) for i in range(240)]
        add_series(aggregator.time_series, SYSTEM_COMPONENT, "throughput_per_second", values)

        patterns = aggregator.detect_seasonality()

        assert len(patterns) == 1
        pattern = patterns[0]
        assert pattern.pattern_type == "hourly"
        assert pattern.period_seconds == 3600.0
        assert pattern.strength > 0.9

    def test_flat_series_has_no_pattern(self, aggregator):
        add_series(aggregator.time_series, SYSTEM_COMPONENT, "throughput_per_second", [100.0] * 240)

        assert aggregator.detect_seasonality() == []

    def test_linear_forecast_flags_threshold_crossing(self, aggregator):
        values = [0.5 + 0.01 * i for i in range(31)]
        add_series(aggregator.time_series, SYSTEM_COMPONENT, "cpu_utilization", values)

        analysis = aggregator.forecast(BASE_TIME - timedelta(hours=1))

        forecast, = analysis.forecasts
        assert forecast.current_value == pytest.approx(0.8)
        assert forecast.forecast_value == pytest.approx(1.4)
        assert forecast.confidence == pytest.approx(1.0 / 3.0, abs=1e-6)
        assert analysis.horizon_seconds == 3600.0
        assert len(analysis.potential_issues) == 1
        assert "cpu_utilization" in analysis.potential_issues[0]

    def test_too_few_points_for_forecast(self, aggregator):
        add_series(aggregator.time_series, SYSTEM_COMPONENT, "cpu_utilization", [0.5, 0.6])

        analysis = aggregator.forecast(BASE_TIME - timedelta(hours=1))

        assert analysis.forecasts == ()
        assert analysis.confidence == 0.0


@pytest.mark.unit
class TestGenerate:

    def test_generate_publishes_report(self, aggregator, store, make_samples, idle_load):
        for sample in make_samples(20):
            store.record("Orders", sample)
        aggregator.collect(BASE_TIME, idle_load)

        insights = aggregator.generate({}, load=idle_load)

        assert aggregator.last_insights is insights
        assert insights.window_seconds == 3600.0
        assert insights.generated_at == BASE_TIME
        assert insights.key_metrics["total_samples"] == 20.0
        assert insights.key_metrics["cpu_utilization"] == 0.2
        assert "estimated_http_connections" in insights.key_metrics
        assert "estimated_websocket_connections" in insights.key_metrics

    def test_cancelled_generation_returns_last_report(self, aggregator):
        first = aggregator.generate({})
        token = CancellationToken()
        token.cancel()

        assert aggregator.generate({}, token=token) is first

    def test_cancelled_before_any_report_returns_empty(self, aggregator):
        token = CancellationToken()
        token.cancel()

        insights = aggregator.generate({}, window_seconds=120.0, token=token)

        assert insights.health_score.status == "Unknown"
        assert insights.window_seconds == 120.0
        assert aggregator.last_insights is None

    def test_failure_returns_last_report(self, aggregator):
        first = aggregator.generate({})

        with patch.object(aggregator, "detect_bottlenecks", side_effect=RuntimeError("boom")):
            assert aggregator.generate({}) is first

    def test_reset(self, aggregator, idle_load):
        aggregator.collect(BASE_TIME, idle_load)
        aggregator.generate({})
        aggregator.reset()

        assert len(aggregator.time_series) == 0
        assert aggregator.last_insights is None
