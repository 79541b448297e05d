"""
Resource utilization analysis and connection-limit estimation.

Everything here is stateless: results depend only on the arguments and the
configuration.
"""

import math
import logging
from typing import Dict, Iterable, Mapping, Optional, Tuple

from ..config import OptimizerConfig
from ..exceptions import ValidationError
from ..models import (
    OptimizationPriority,
    RequestTypeProfile,
    ResourceOptimizationResult,
    ResourceStrategy,
    RiskLevel,
    SystemLoadMetrics,
)
from ..utils import clamp, normalize_resource_name

logger = logging.getLogger(__name__)

# Checked in order; the first keyword found in the resource name wins.
STRATEGY_KEYWORDS = (
    (("thread", "worker"), ResourceStrategy.THREAD_POOL_TUNING),
    (("connection", "db", "database", "socket", "pool"), ResourceStrategy.CONNECTION_POOL_TUNING),
    (("memory", "heap", "mem"), ResourceStrategy.MEMORY_POOLING),
    (("queue", "backlog"), ResourceStrategy.QUEUE_BACKPRESSURE),
    (("cpu", "processor"), ResourceStrategy.LOAD_SHEDDING),
)

STRATEGY_RISK = {
    ResourceStrategy.NONE: RiskLevel.VERY_LOW,
    ResourceStrategy.CONNECTION_POOL_TUNING: RiskLevel.LOW,
    ResourceStrategy.MEMORY_POOLING: RiskLevel.LOW,
    ResourceStrategy.THREAD_POOL_TUNING: RiskLevel.MEDIUM,
    ResourceStrategy.QUEUE_BACKPRESSURE: RiskLevel.MEDIUM,
    ResourceStrategy.SCALE_OUT: RiskLevel.MEDIUM,
    ResourceStrategy.LOAD_SHEDDING: RiskLevel.HIGH,
}

CONNECTION_HEADROOM = 1.2


class ResourceOptimizationService:
    """Flags resources running above their configured share of capacity."""

    def __init__(self, config: OptimizerConfig):
        self.config = config

    def analyze(self, current_utilization: Mapping[str, float],
                estimated_capacity: Mapping[str, float]) -> ResourceOptimizationResult:
        """
        Compare current usage against capacity.

        Args:
            current_utilization: Resource name to current usage
            estimated_capacity: Resource name to capacity ceiling

        Returns:
            ResourceOptimizationResult: Flagged resources, strategy and savings
        """
        fractions = self.utilization_fractions(current_utilization, estimated_capacity)
        threshold = self.config.resource_utilization_threshold
        target = self.config.target_utilization

        flagged = sorted(
            (name for name, fraction in fractions.items() if fraction > threshold),
            key=lambda name: (-fractions[name], name),
        )

        if not flagged:
            return ResourceOptimizationResult(
                should_optimize=False,
                reasoning=(
                    f"All {len(fractions)} tracked resources are at or below "
                    f"{threshold:.0%} of capacity"
                ),
                utilization={k: round(v, 6) for k, v in fractions.items()},
            )

        savings = {
            name: round(current_utilization[name] - target * estimated_capacity[name], 6)
            for name in flagged
        }

        worst = flagged[0]
        worst_fraction = fractions[worst]
        strategy = self.strategy_for(worst)
        confidence = clamp(
            0.5 + 0.5 * (worst_fraction - threshold) / (1.0 - threshold),
            0.0,
            self.config.max_confidence,
        )
        gain = clamp((worst_fraction - target) / worst_fraction * 100.0, 0.0, self.config.max_gain_percentage)

        if worst_fraction >= 1.0:
            priority = OptimizationPriority.CRITICAL
        elif worst_fraction >= 0.9:
            priority = OptimizationPriority.HIGH
        else:
            priority = OptimizationPriority.MEDIUM

        reasoning = ", ".join(f"{name} at {fractions[name]:.0%}" for name in flagged)
        logger.debug(f"Resource analysis flagged {flagged}; proposing {strategy.value}")

        return ResourceOptimizationResult(
            should_optimize=True,
            strategy=strategy,
            confidence=round(confidence, 6),
            reasoning=f"{reasoning} of capacity (threshold {threshold:.0%}, target {target:.0%})",
            utilization={k: round(v, 6) for k, v in fractions.items()},
            flagged_resources=tuple(flagged),
            estimated_savings=savings,
            estimated_gain_percentage=round(gain, 3),
            priority=priority,
            risk=STRATEGY_RISK[strategy],
            parameters={
                "resource": worst,
                "target_utilization": target,
                "recommended_capacity": math.ceil(current_utilization[worst] / target),
            },
        )

    @staticmethod
    def utilization_fractions(current_utilization: Mapping[str, float],
                              estimated_capacity: Mapping[str, float]) -> Dict[str, float]:
        fractions = {}
        for name, used in current_utilization.items():
            if used is None or not math.isfinite(used) or used < 0:
                raise ValidationError(f"Invalid utilization for {name}: {used}")
            capacity = estimated_capacity.get(name)
            if capacity is None:
                logger.debug(f"No capacity known for resource {name}; skipping")
                continue
            if not math.isfinite(capacity) or capacity <= 0:
                raise ValidationError(f"Capacity for {name} must be positive, got {capacity}")
            fractions[name] = used / capacity
        return fractions

    @staticmethod
    def strategy_for(resource_name: str) -> ResourceStrategy:
        normalized = normalize_resource_name(resource_name)
        for keywords, strategy in STRATEGY_KEYWORDS:
            if any(keyword in normalized for keyword in keywords):
                return strategy
        return ResourceStrategy.SCALE_OUT

    def utilization_from_load(self, load: SystemLoadMetrics) -> Tuple[Dict[str, float], Dict[str, float]]:
        """Express system load as (usage, capacity) maps for ``analyze``."""
        usage = {
            "cpu": load.cpu_utilization,
            "memory": load.memory_utilization,
            "db_connection_pool": load.database_pool_utilization,
            "thread_pool": load.thread_pool_utilization,
            "queue_depth": float(load.queue_depth),
        }
        capacity = {
            "cpu": 1.0,
            "memory": 1.0,
            "db_connection_pool": 1.0,
            "thread_pool": 1.0,
            "queue_depth": self.config.bottleneck_thresholds["queue_depth"],
        }
        return usage, capacity

    def efficiency_score(self, result: ResourceOptimizationResult) -> float:
        """
        Resource-efficiency health sub-score in [0, 100].

        Resources at or below the target band score full marks; the most
        over-used resource drags the score down linearly to 0 at 100%.
        """
        if not result.utilization:
            return 100.0
        target = self.config.target_utilization
        worst = max(result.utilization.values())
        if worst <= target:
            return 100.0
        excess = (worst - target) / (1.0 - target) if target < 1.0 else 1.0
        return round(100.0 * (1.0 - clamp(excess, 0.0, 1.0)), 3)

    def estimate_connection_limits(self, profiles: Iterable[RequestTypeProfile],
                                   load: Optional[SystemLoadMetrics] = None) -> Dict[str, int]:
        """
        Estimate connection pool sizes from observed traffic.

        Uses Little's law (arrival rate x time in system) for each request
        type, counting only requests that touch the pool in question, with
        20% headroom and clamped to the configured ceilings.

        Args:
            profiles: Request type profiles
            load: Latest system load, used for long-lived websocket connections

        Returns:
            dict: Estimated connections for http, database, external and websocket
        """
        in_flight = 0.0
        database = 0.0
        external = 0.0
        for profile in profiles:
            concurrent = profile.throughput_per_second * profile.mean_duration_ms / 1000.0
            in_flight += concurrent
            database += concurrent * min(1.0, profile.mean_database_calls)
            external += concurrent * min(1.0, profile.mean_external_calls)

        websocket = float(load.active_connections) if load is not None else 0.0
        config = self.config

        def _limit(value: float, ceiling: int) -> int:
            return int(clamp(math.ceil(value * CONNECTION_HEADROOM), 0, ceiling))

        return {
            "http": _limit(in_flight, config.max_estimated_http_connections),
            "database": _limit(database, config.max_estimated_db_connections),
            "external": _limit(external, config.max_estimated_external_connections),
            "websocket": _limit(websocket, config.max_estimated_websocket_connections),
        }
