"""
Pytest configuration and fixtures for Adaptive Optimizer tests.
"""

import pytest
import json
from datetime import datetime, timedelta

from adaptive_optimizer import ExecutionSample, OptimizationEngine, OptimizerConfig
from adaptive_optimizer.models import AccessPattern, SystemLoadMetrics

BASE_TIME = datetime(2024, 1, 1, 12, 0, 0)


class FixedClock:
    """Manually advanced clock."""

    def __init__(self, now=BASE_TIME):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)


class StubRandom:
    """Random source with a fixed draw, used to force exploit or explore."""

    def __init__(self, value=0.99, choice_index=0):
        self.value = value
        self.choice_index = choice_index
        self.draws = 0

    def random(self):
        self.draws += 1
        return self.value

    def choice(self, seq):
        return seq[self.choice_index]


@pytest.fixture
def config():
    """Default configuration."""
    return OptimizerConfig()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def stub_rng():
    """The StubRandom class, for tests that need a specific draw."""
    return StubRandom


@pytest.fixture
def exploit_rng():
    """Random source that never explores."""
    return StubRandom(value=0.99)


@pytest.fixture
def engine(config, clock, exploit_rng):
    """Engine with a fixed clock and exploration switched off."""
    return OptimizationEngine(config, rng=exploit_rng, clock=clock)


@pytest.fixture
def make_samples():
    """Factory for evenly spaced execution samples."""

    def _make(count, duration_ms=100.0, start=BASE_TIME, interval_seconds=1.0, failures=(), **kwargs):
        failures = set(failures)
        return [
            ExecutionSample(
                duration_ms=duration_ms(i) if callable(duration_ms) else duration_ms,
                success=i not in failures,
                timestamp=start + timedelta(seconds=i * interval_seconds),
                **kwargs,
            )
            for i in range(count)
        ]

    return _make


@pytest.fixture
def make_access_patterns():
    """Factory for access events at a fixed interval over a cycle of keys."""

    def _make(count, interval_seconds=60.0, keys=5, start=BASE_TIME, execution_time_ms=200.0, **kwargs):
        return [
            AccessPattern(
                timestamp=start + timedelta(seconds=i * interval_seconds),
                request_key=f"key-{i % keys}",
                execution_time_ms=execution_time_ms,
                **kwargs,
            )
            for i in range(count)
        ]

    return _make


@pytest.fixture
def idle_load():
    return SystemLoadMetrics(
        cpu_utilization=0.2,
        memory_utilization=0.3,
        queue_depth=0,
        throughput_per_second=100.0,
        active_connections=12,
        database_pool_utilization=0.1,
        thread_pool_utilization=0.2,
        timestamp=BASE_TIME,
    )


@pytest.fixture
def telemetry_csv(tmp_path):
    """CSV telemetry with a slow, highly concurrent request type and a quiet one."""
    lines = ["timestamp,request_type,duration_ms,success,concurrent_executions,database_calls"]
    for i in range(60):
        stamp = (BASE_TIME + timedelta(seconds=i)).isoformat()
        lines.append(f"{stamp},Search,600,true,40,1")
        lines.append(f"{stamp},Health,5,true,1,0")
    path = tmp_path / "telemetry.csv"
    path.write_text("\n".join(lines) + "\n")
    return path


@pytest.fixture
def telemetry_json(tmp_path):
    """JSON bundle with samples, access patterns and system load."""
    samples = [
        {
            "timestamp": (BASE_TIME + timedelta(seconds=i)).isoformat(),
            "request_type": "GetProduct",
            "duration_ms": 80.0,
            "database_calls": 2,
        }
        for i in range(40)
    ]
    access = [
        {
            "timestamp": (BASE_TIME + timedelta(seconds=60 * i)).isoformat(),
            "request_type": "GetProduct",
            "request_key": f"product-{i % 4}",
            "execution_time_ms": 80.0,
        }
        for i in range(40)
    ]
    load = [
        {
            "timestamp": (BASE_TIME + timedelta(seconds=10 * i)).isoformat(),
            "cpu_utilization": 0.4,
            "memory_utilization": 0.5,
            "queue_depth": 3,
            "throughput_per_second": 20.0,
            "active_connections": 8,
        }
        for i in range(4)
    ]
    path = tmp_path / "telemetry.json"
    path.write_text(json.dumps({"samples": samples, "access_patterns": access, "system_load": load}))
    return path
