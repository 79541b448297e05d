"""
Integration tests for the optimization engine facade.
"""

import pytest
from datetime import timedelta
from unittest.mock import patch

from adaptive_optimizer import (
    CancellationToken,
    ExecutionSample,
    OptimizationEngine,
    OptimizerConfig,
)
from adaptive_optimizer.engine import ACCESS_HISTORY_RETENTION, MODEL_UPDATE_TASK
from adaptive_optimizer.models import (
    CacheKeyStrategy,
    CacheScope,
    OptimizationStrategy,
    ResourceStrategy,
    RiskLevel,
)

EVEN_FAILURES = {i for i in range(200) if i % 20 in (0, 7, 14)}


@pytest.fixture
def slow_concurrent(make_samples):
    return make_samples(200, duration_ms=500.0, concurrent_executions=60, failures={150})


def feed(engine, request_type, samples):
    for sample in samples:
        assert engine.record_execution(request_type, sample)


@pytest.mark.integration
class TestTelemetryIntake:

    def test_record_execution(self, engine, make_samples):
        feed(engine, "Orders", make_samples(3))

        assert engine.store.snapshot("Orders").sample_count == 3
        assert engine.monitored_request_types() == ["Orders"]

    def test_unregistered_types_ignored_when_opted_out(self, clock, make_samples):
        config = OptimizerConfig(
            monitor_unregistered_types=False,
            request_types={"Orders": {}, "Health": {"monitor": False}},
        )
        engine = OptimizationEngine(config, clock=clock)
        sample = make_samples(1)[0]

        assert engine.record_execution("Orders", sample) is True
        assert engine.record_execution("Health", sample) is False
        assert engine.record_execution("Invoices", sample) is False
        assert "Invoices" not in engine.store

        rec = engine.get_recommendation("Invoices")
        assert rec.strategy is OptimizationStrategy.NONE
        assert rec.reasoning == "Request type is not monitored"

    def test_disabled_engine_is_inert(self, clock, make_samples):
        engine = OptimizationEngine(OptimizerConfig(enabled=False), clock=clock)

        assert engine.record_execution("Orders", make_samples(1)[0]) is False
        assert engine.get_recommendation("Orders").strategy is OptimizationStrategy.NONE
        assert len(engine.store) == 0


@pytest.mark.integration
class TestRecommendations:

    def test_cold_start(self, engine, make_samples):
        feed(engine, "Orders", make_samples(5, duration_ms=900.0, concurrent_executions=80))

        rec = engine.get_recommendation("Orders")

        assert rec.strategy is OptimizationStrategy.NONE
        assert "5 of 10" in rec.reasoning

    def test_parallel_processing(self, engine, slow_concurrent):
        feed(engine, "Orders", slow_concurrent)

        rec = engine.get_recommendation("Orders")

        assert rec.strategy is OptimizationStrategy.PARALLEL_PROCESSING
        assert rec.risk is RiskLevel.MEDIUM
        assert engine.current_recommendations() == {"Orders": rec}

    def test_circuit_breaker(self, engine, make_samples):
        feed(engine, "Payments", make_samples(200, duration_ms=100.0, failures=EVEN_FAILURES))

        rec = engine.get_recommendation("Payments")

        assert rec.strategy is OptimizationStrategy.CIRCUIT_BREAKER
        assert rec.risk is RiskLevel.HIGH

    def test_recommendation_is_cached_until_refreshed(self, engine, make_samples):
        feed(engine, "Orders", make_samples(20, duration_ms=10.0))
        first = engine.get_recommendation("Orders")

        feed(engine, "Orders", make_samples(200, duration_ms=500.0, concurrent_executions=60))

        assert engine.get_recommendation("Orders") is first
        assert engine.analyze("Orders").strategy is OptimizationStrategy.PARALLEL_PROCESSING
        assert engine.get_recommendation("Orders").strategy is OptimizationStrategy.PARALLEL_PROCESSING

    def test_analyze_request(self, engine, slow_concurrent):
        feed(engine, "Orders", slow_concurrent[:-1])

        rec = engine.analyze_request("Orders", slow_concurrent[-1])

        assert engine.store.snapshot("Orders").sample_count == 200
        assert rec.strategy is OptimizationStrategy.PARALLEL_PROCESSING

    def test_refresh_recommendations(self, engine, slow_concurrent, make_samples):
        feed(engine, "Orders", slow_concurrent)
        feed(engine, "Health", make_samples(20, duration_ms=5.0))

        assert engine.refresh_recommendations() == 2
        assert set(engine.current_recommendations()) == {"Orders", "Health"}

    def test_cancelled_analysis_keeps_previous(self, engine, slow_concurrent):
        feed(engine, "Orders", slow_concurrent)
        previous = engine.analyze("Orders")
        token = CancellationToken()
        token.cancel()

        assert engine.analyze("Orders", token) is previous

    def test_cancelled_analysis_without_previous(self, engine, slow_concurrent):
        feed(engine, "Orders", slow_concurrent)
        token = CancellationToken()
        token.cancel()

        rec = engine.analyze("Orders", token)

        assert rec.strategy is OptimizationStrategy.NONE
        assert rec.reasoning == "Analysis cancelled"
        assert engine.current_recommendations() == {}

    def test_analysis_failure_is_contained(self, engine, slow_concurrent):
        feed(engine, "Orders", slow_concurrent)
        previous = engine.analyze("Orders")

        with patch.object(engine.pattern_service, "evaluate_candidates", side_effect=RuntimeError("boom")):
            assert engine.analyze("Orders") is previous
            assert engine.analyze("Invoices").reasoning == "Analysis failed"


@pytest.mark.integration
class TestCaching:

    def test_should_cache_periodic_access(self, engine, make_access_patterns):
        rec = engine.should_cache("Orders", make_access_patterns(100))

        assert rec.strategy is OptimizationStrategy.ENABLE_CACHING
        assert rec.parameters["ttl_seconds"] == 60.0
        assert rec.parameters["predicted_hit_rate"] == pytest.approx(0.95)

        caching = engine.store.caching_snapshot("Orders")
        assert caching.total_accesses == 100
        assert caching.recommended_ttl_seconds == 60.0
        assert caching.predicted_hit_rate == pytest.approx(0.95)
        assert caching.cache_scope is CacheScope.LOCAL
        assert caching.key_strategy is CacheKeyStrategy.EXACT

    def test_access_history_alone_stays_in_cold_start(self, engine, make_access_patterns):
        assert engine.should_cache("Orders", make_access_patterns(100)).should_optimize
        assert engine.store.snapshot("Orders").sample_count == 0

        rec = engine.get_recommendation("Orders")

        assert rec.strategy is OptimizationStrategy.NONE
        assert rec.confidence_score == 0
        assert rec.auto_apply_eligible is False
        assert "Insufficient data: 0 of 10" in rec.reasoning

    def test_unique_keys_are_not_cached(self, engine, make_access_patterns):
        rec = engine.should_cache("Orders", make_access_patterns(50, keys=50))

        assert rec.strategy is OptimizationStrategy.NONE
        assert engine.store.caching_snapshot("Orders").recommended_ttl_seconds is None

    def test_caching_disabled(self, clock, make_access_patterns):
        engine = OptimizationEngine(OptimizerConfig(caching_analysis_enabled=False), clock=clock)

        rec = engine.should_cache("Orders", make_access_patterns(100))

        assert rec.strategy is OptimizationStrategy.NONE
        assert engine.store.access_history("Orders") == []

    def test_caching_outranks_parallel_processing(self, engine, slow_concurrent, make_access_patterns):
        feed(engine, "Orders", slow_concurrent)
        engine.should_cache("Orders", make_access_patterns(100))

        rec = engine.analyze("Orders")

        assert rec.strategy is OptimizationStrategy.ENABLE_CACHING
        assert rec.auto_apply_eligible is True

    def test_circuit_breaker_outranks_caching(self, engine, make_samples, make_access_patterns):
        feed(engine, "Orders", make_samples(200, duration_ms=100.0, failures=EVEN_FAILURES))
        engine.should_cache("Orders", make_access_patterns(100))

        assert engine.analyze("Orders").strategy is OptimizationStrategy.CIRCUIT_BREAKER

    def test_exploration_picks_an_alternative(self, config, clock, stub_rng, slow_concurrent,
                                              make_access_patterns):
        engine = OptimizationEngine(config, rng=stub_rng(value=0.0), clock=clock)
        feed(engine, "Orders", slow_concurrent)
        engine.should_cache("Orders", make_access_patterns(100))

        rec = engine.analyze("Orders")

        assert rec.strategy is OptimizationStrategy.PARALLEL_PROCESSING
        assert rec.parameters["exploration"] is True
        assert rec.auto_apply_eligible is False


@pytest.mark.integration
class TestLearning:

    def test_outcome_updates_weights(self, engine, slow_concurrent, make_access_patterns):
        feed(engine, "Orders", slow_concurrent)
        engine.should_cache("Orders", make_access_patterns(100))
        engine.analyze("Orders")

        accepted = engine.learn_from_execution(
            "Orders", [OptimizationStrategy.ENABLE_CACHING], ExecutionSample(duration_ms=20.0)
        )

        assert accepted is True
        assert engine.learning.weight("Orders", OptimizationStrategy.ENABLE_CACHING) == pytest.approx(0.55)
        stats = engine.get_model_statistics()
        assert stats.total_reconciliations == 1
        assert stats.total_predictions == 1
        assert stats.accuracy_score == 1.0

    def test_applied_strategy_leaves_opportunities(self, engine, slow_concurrent, make_access_patterns):
        feed(engine, "Orders", slow_concurrent)
        engine.should_cache("Orders", make_access_patterns(100))
        engine.analyze("Orders")

        before = engine.get_system_insights()
        engine.learn_from_execution(
            "Orders", [OptimizationStrategy.ENABLE_CACHING], ExecutionSample(duration_ms=20.0)
        )
        after = engine.get_system_insights()

        assert [o.request_type for o in before.opportunities] == ["Orders"]
        assert after.opportunities == ()

    def test_learning_mode_toggle(self, engine, slow_concurrent):
        feed(engine, "Orders", slow_concurrent)
        engine.set_learning_mode(False)

        accepted = engine.learn_from_execution(
            "Orders", [OptimizationStrategy.PARALLEL_PROCESSING], ExecutionSample(duration_ms=20.0)
        )

        assert accepted is False
        assert engine.get_model_statistics().learning_enabled is False

    def test_none_strategy_is_not_counted_as_applied(self, engine, slow_concurrent):
        feed(engine, "Orders", slow_concurrent)

        engine.learn_from_execution("Orders", [OptimizationStrategy.NONE], ExecutionSample(duration_ms=900.0))

        assert engine.learning.weight("Orders", OptimizationStrategy.PARALLEL_PROCESSING) == 0.5


@pytest.mark.integration
class TestResources:

    def test_analyze_resources(self, engine):
        result = engine.analyze_resources({"dbConnections": 95}, {"dbConnections": 100})

        assert result.strategy is ResourceStrategy.CONNECTION_POOL_TUNING
        assert result.confidence == pytest.approx(0.875)

    def test_invalid_resource_input_is_contained(self, engine):
        result = engine.analyze_resources({"dbConnections": -1}, {"dbConnections": 100})

        assert result.should_optimize is False
        assert "Resource analysis failed" in result.reasoning

    def test_cancelled_resource_analysis(self, engine):
        token = CancellationToken()
        token.cancel()

        result = engine.analyze_resources({"dbConnections": 95}, {"dbConnections": 100}, token)

        assert result.should_optimize is False
        assert result.reasoning == "Resource analysis cancelled"

    def test_predict_optimal_batch_size(self, engine, make_samples, idle_load):
        feed(engine, "Orders", make_samples(200, duration_ms=20.0, interval_seconds=0.01))

        size = engine.predict_optimal_batch_size("Orders", idle_load)

        assert 1 <= size <= engine.config.max_batch_size

    def test_batch_size_falls_back_to_default(self, engine, idle_load):
        with patch.object(engine.pattern_service, "predict_optimal_batch_size", side_effect=RuntimeError("boom")):
            assert engine.predict_optimal_batch_size("Orders", idle_load) == engine.config.default_batch_size

    def test_connection_limits_use_latest_load(self, engine, make_samples, idle_load):
        feed(engine, "Orders", make_samples(101, duration_ms=450.0, interval_seconds=0.1, database_calls=2))
        engine.record_system_load(idle_load)

        assert engine.latest_load is idle_load
        assert engine.estimate_connection_limits() == {
            "http": 6, "database": 6, "external": 0, "websocket": 15,
        }


@pytest.mark.integration
class TestInsightsAndLifecycle:

    def test_collect_and_report(self, engine, clock, make_samples, idle_load):
        feed(engine, "Orders", make_samples(20))
        engine.record_system_load(idle_load)
        engine.collect_metrics()

        insights = engine.get_system_insights()

        assert engine.last_insights is insights
        assert insights.generated_at == clock.now
        assert insights.key_metrics["total_samples"] == 20.0
        assert insights.key_metrics["estimated_websocket_connections"] == 15.0
        assert engine.insights.time_series.latest("Orders", "mean_duration_ms") == pytest.approx(100.0)

    def test_model_update_cycle(self, engine, clock, slow_concurrent, make_access_patterns):
        feed(engine, "Orders", slow_concurrent)
        stale_start = clock.now - ACCESS_HISTORY_RETENTION - timedelta(hours=1)
        engine.store.record_access("Orders", make_access_patterns(10, start=stale_start))
        engine.store.record_access("Orders", make_access_patterns(10, start=clock.now - timedelta(minutes=30)))

        assert engine.scheduler.get(MODEL_UPDATE_TASK).run_once() is True

        assert len(engine.store.access_history("Orders")) == 10
        assert "Orders" in engine.current_recommendations()

    def test_reset(self, engine, slow_concurrent, make_access_patterns, idle_load):
        feed(engine, "Orders", slow_concurrent)
        engine.should_cache("Orders", make_access_patterns(100))
        engine.analyze("Orders")
        engine.learn_from_execution(
            "Orders", [OptimizationStrategy.ENABLE_CACHING], ExecutionSample(duration_ms=20.0)
        )
        engine.record_system_load(idle_load)
        engine.collect_metrics()
        engine.get_system_insights()

        engine.reset()

        assert len(engine.store) == 0
        assert engine.current_recommendations() == {}
        assert engine.get_model_statistics().total_predictions == 0
        assert engine.last_insights is None
        assert len(engine.insights.time_series) == 0
        assert engine.store.latest_sample("Orders") is None

    @pytest.mark.slow
    def test_context_manager_runs_background_tasks(self, config, clock):
        with OptimizationEngine(config, clock=clock) as engine:
            assert engine.scheduler.is_running

        assert not engine.scheduler.is_running
