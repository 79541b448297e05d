"""
Basic example of using Adaptive Optimizer.

This example feeds synthetic telemetry for two request types into the
engine, reports an outcome back, and prints the resulting recommendations
and system health.
"""

import random
from datetime import datetime, timedelta

from adaptive_optimizer import (
    AccessPattern,
    ExecutionSample,
    OptimizationEngine,
    OptimizerConfig,
    SystemLoadMetrics,
)
from adaptive_optimizer.reports import ReportGenerator


def main():
    """Run basic optimization example."""

    config = OptimizerConfig(
        min_executions_for_analysis=20,
        request_types={
            "SearchProducts": {},
            "GetProduct": {"allowed_strategies": ["enable_caching"]},
        },
        monitor_unregistered_types=False,
    )
    engine = OptimizationEngine(config, rng=random.Random(42))

    start = datetime.now() - timedelta(hours=1)
    rng = random.Random(7)

    # Slow, highly concurrent searches
    for i in range(200):
        engine.record_execution("SearchProducts", ExecutionSample(
            duration_ms=rng.gauss(650.0, 40.0),
            concurrent_executions=rng.randint(30, 60),
            database_calls=2,
            timestamp=start + timedelta(seconds=i * 5),
        ))

    # Product lookups that keep hitting the same handful of keys
    lookups = [
        AccessPattern(
            timestamp=start + timedelta(seconds=i * 30),
            request_key=f"product-{i % 8}",
            execution_time_ms=120.0,
        )
        for i in range(120)
    ]
    for pattern in lookups:
        engine.record_execution("GetProduct", ExecutionSample(
            duration_ms=pattern.execution_time_ms, timestamp=pattern.timestamp,
        ))

    caching = engine.should_cache("GetProduct", lookups)
    print(f"Cache GetProduct: {caching.should_optimize} "
          f"(TTL {caching.parameters.get('ttl_seconds', 0):.0f}s, confidence {caching.confidence_score:.2f})")

    engine.record_system_load(SystemLoadMetrics(
        cpu_utilization=0.55,
        memory_utilization=0.6,
        queue_depth=12,
        throughput_per_second=40.0,
        active_connections=25,
    ))
    engine.collect_metrics()

    print("\n=== RECOMMENDATIONS ===")
    for request_type in engine.monitored_request_types():
        rec = engine.get_recommendation(request_type)
        print(f"{request_type}: {rec.strategy.value} "
              f"(confidence {rec.confidence_score:.2f}, priority {rec.priority.value}, risk {rec.risk.value})")
        print(f"  {rec.reasoning}")

    # Pretend the caller enabled caching and the next lookup got faster
    engine.learn_from_execution(
        "GetProduct", [caching.strategy], ExecutionSample(duration_ms=4.0)
    )

    insights = engine.get_system_insights()
    health = insights.health_score
    print("\n=== SYSTEM HEALTH ===")
    print(f"Overall: {health.overall:.1f} ({health.status}, grade {health.grade})")
    print(f"Estimated connections: {engine.estimate_connection_limits()}")

    report = ReportGenerator(engine.current_recommendations(), insights, engine.get_model_statistics())
    report.save_json('optimization-report.json')
    report.save_csv('recommendations.csv')

    print("\nReports saved:")
    print("- optimization-report.json")
    print("- recommendations.csv")


if __name__ == '__main__':
    main()
