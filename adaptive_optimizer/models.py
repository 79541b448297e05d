"""Data models for the adaptive optimizer."""

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

from .exceptions import ValidationError
from .utils import to_primitive


class OptimizationStrategy(Enum):
    """Strategies the engine can recommend."""

    NONE = "none"
    ENABLE_CACHING = "enable_caching"
    BATCH_PROCESSING = "batch_processing"
    PARALLEL_PROCESSING = "parallel_processing"
    MEMORY_POOLING = "memory_pooling"
    DATABASE_OPTIMIZATION = "database_optimization"
    CIRCUIT_BREAKER = "circuit_breaker"


class OptimizationPriority(Enum):
    """Priority tiers, lowest first."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return list(OptimizationPriority).index(self)


class RiskLevel(Enum):
    """Risk tiers, lowest first."""

    VERY_LOW = "very_low"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERY_HIGH = "very_high"

    @property
    def rank(self) -> int:
        return list(RiskLevel).index(self)

    def raised(self, steps: int = 1) -> "RiskLevel":
        """Return the tier ``steps`` above this one, saturating at VERY_HIGH."""
        levels = list(RiskLevel)
        return levels[min(len(levels) - 1, self.rank + steps)]


class CacheScope(Enum):
    """Where a cached response should live."""

    LOCAL = "local"
    DISTRIBUTED = "distributed"


class CacheKeyStrategy(Enum):
    """How cache keys are derived from requests."""

    EXACT = "exact"
    NORMALIZED = "normalized"


class EvictionPolicy(Enum):
    """Eviction policies suggested alongside a caching recommendation."""

    LRU = "lru"
    LFU = "lfu"
    ADAPTIVE = "adaptive"
    TIME_BASED = "time_based"


class ResourceStrategy(Enum):
    """Strategies proposed by resource utilization analysis."""

    NONE = "none"
    CONNECTION_POOL_TUNING = "connection_pool_tuning"
    MEMORY_POOLING = "memory_pooling"
    THREAD_POOL_TUNING = "thread_pool_tuning"
    LOAD_SHEDDING = "load_shedding"
    QUEUE_BACKPRESSURE = "queue_backpressure"
    SCALE_OUT = "scale_out"


class BottleneckSeverity(Enum):
    """Severity of a detected bottleneck."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


def _frozen_mapping(instance, name: str):
    object.__setattr__(instance, name, MappingProxyType(dict(getattr(instance, name))))


@dataclass(frozen=True)
class ExecutionSample:
    """One observed call of a request type."""

    duration_ms: float
    success: bool = True
    memory_delta_bytes: int = 0
    database_calls: int = 0
    external_calls: int = 0
    concurrent_executions: int = 1
    timestamp: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        if self.duration_ms is None or not math.isfinite(self.duration_ms) or self.duration_ms < 0:
            raise ValidationError(f"Invalid duration: {self.duration_ms}")
        if self.database_calls < 0 or self.external_calls < 0:
            raise ValidationError("Downstream call counts must be non-negative")
        if self.concurrent_executions < 0:
            raise ValidationError("Concurrent execution count must be non-negative")


@dataclass(frozen=True)
class RequestTypeProfile:
    """Read-only snapshot of the rolling aggregates for one request type."""

    request_type: str
    sample_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    mean_duration_ms: float = 0.0
    duration_variance: float = 0.0
    min_duration_ms: float = 0.0
    max_duration_ms: float = 0.0
    error_rate: float = 0.0
    high_memory_ratio: float = 0.0
    mean_memory_delta_bytes: float = 0.0
    mean_database_calls: float = 0.0
    mean_external_calls: float = 0.0
    concurrency_high_water_mark: int = 0
    first_seen: Optional[datetime] = None
    last_seen: Optional[datetime] = None
    access_timestamps: Tuple[datetime, ...] = ()

    @classmethod
    def empty(cls, request_type: str) -> "RequestTypeProfile":
        return cls(request_type=request_type)

    @property
    def duration_std(self) -> float:
        return math.sqrt(self.duration_variance) if self.duration_variance > 0 else 0.0

    @property
    def duration_cv(self) -> float:
        """Coefficient of variation of duration."""
        if self.mean_duration_ms <= 0:
            return 0.0
        return self.duration_std / self.mean_duration_ms

    @property
    def lifetime_error_rate(self) -> float:
        return self.failure_count / self.sample_count if self.sample_count else 0.0

    @property
    def observed_span_seconds(self) -> float:
        if not self.first_seen or not self.last_seen:
            return 0.0
        return (self.last_seen - self.first_seen).total_seconds()

    @property
    def throughput_per_second(self) -> float:
        span = self.observed_span_seconds
        if span <= 0 or self.sample_count < 2:
            return 0.0
        return (self.sample_count - 1) / span

    @property
    def p95_proxy_ms(self) -> float:
        # Normal approximation; no per-sample history is buffered.
        return self.mean_duration_ms + 1.645 * self.duration_std

    @property
    def p99_proxy_ms(self) -> float:
        return self.mean_duration_ms + 2.326 * self.duration_std


@dataclass(frozen=True)
class OptimizationRecommendation:
    """Immutable recommendation for a single request type."""

    request_type: str
    strategy: OptimizationStrategy = OptimizationStrategy.NONE
    confidence_score: float = 0.0
    estimated_improvement_ms: float = 0.0
    estimated_gain_percentage: float = 0.0
    priority: OptimizationPriority = OptimizationPriority.LOW
    risk: RiskLevel = RiskLevel.VERY_LOW
    reasoning: str = ""
    parameters: Mapping[str, Any] = field(default_factory=dict)
    auto_apply_eligible: bool = False
    generated_at: datetime = field(default_factory=datetime.now, compare=False)

    def __post_init__(self):
        _frozen_mapping(self, "parameters")

    @classmethod
    def no_recommendation(cls, request_type: str, reasoning: str,
                          parameters: Optional[Dict[str, Any]] = None) -> "OptimizationRecommendation":
        return cls(request_type=request_type, reasoning=reasoning, parameters=parameters or {})

    @property
    def should_optimize(self) -> bool:
        return self.strategy is not OptimizationStrategy.NONE

    def to_dict(self) -> Dict[str, Any]:
        return to_primitive(self)


@dataclass(frozen=True)
class AccessPattern:
    """One access event observed by the caching layer."""

    timestamp: datetime
    request_key: str
    execution_time_ms: float = 0.0
    was_cache_hit: bool = False
    user_context: str = ""
    region: str = ""

    def __post_init__(self):
        if not isinstance(self.timestamp, datetime):
            raise ValidationError(f"Access pattern timestamp must be a datetime, got {type(self.timestamp)}")
        if self.execution_time_ms < 0:
            raise ValidationError(f"Invalid execution time: {self.execution_time_ms}")


@dataclass(frozen=True)
class CachingProfile:
    """Caching-specific state for one request type."""

    request_type: str
    access_intervals: Tuple[float, ...] = ()
    total_accesses: int = 0
    cache_hits: int = 0
    predicted_hit_rate: float = 0.0
    recommended_ttl_seconds: Optional[float] = None
    cache_scope: Optional[CacheScope] = None
    key_strategy: Optional[CacheKeyStrategy] = None

    @classmethod
    def empty(cls, request_type: str) -> "CachingProfile":
        return cls(request_type=request_type)

    @property
    def observed_hit_rate(self) -> float:
        return self.cache_hits / self.total_accesses if self.total_accesses else 0.0


@dataclass(frozen=True)
class SystemLoadMetrics:
    """Host-level load supplied by the instrumentation layer."""

    cpu_utilization: float = 0.0
    memory_utilization: float = 0.0
    queue_depth: int = 0
    throughput_per_second: float = 0.0
    active_connections: int = 0
    database_pool_utilization: float = 0.0
    thread_pool_utilization: float = 0.0
    timestamp: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        for name in ("cpu_utilization", "memory_utilization",
                     "database_pool_utilization", "thread_pool_utilization"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValidationError(f"{name} must be a fraction between 0 and 1, got {value}")
        if self.queue_depth < 0 or self.throughput_per_second < 0:
            raise ValidationError("Queue depth and throughput must be non-negative")


@dataclass(frozen=True)
class ResourceOptimizationResult:
    """Outcome of a resource utilization analysis."""

    should_optimize: bool
    strategy: ResourceStrategy = ResourceStrategy.NONE
    confidence: float = 0.0
    reasoning: str = ""
    utilization: Mapping[str, float] = field(default_factory=dict)
    flagged_resources: Tuple[str, ...] = ()
    estimated_savings: Mapping[str, float] = field(default_factory=dict)
    estimated_gain_percentage: float = 0.0
    priority: OptimizationPriority = OptimizationPriority.LOW
    risk: RiskLevel = RiskLevel.VERY_LOW
    parameters: Mapping[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        _frozen_mapping(self, "utilization")
        _frozen_mapping(self, "estimated_savings")
        _frozen_mapping(self, "parameters")

    def to_dict(self) -> Dict[str, Any]:
        return to_primitive(self)


@dataclass(frozen=True)
class PerformanceBottleneck:
    """A metric sustained above its unhealthy threshold."""

    component: str
    metric: str
    description: str
    severity: BottleneckSeverity
    impact: float
    observed_value: float
    threshold: float
    sustained_seconds: float
    recommended_actions: Tuple[str, ...] = ()


@dataclass(frozen=True)
class OptimizationOpportunity:
    """A confident recommendation that has not been applied yet."""

    request_type: str
    strategy: OptimizationStrategy
    confidence: float
    expected_gain_percentage: float
    estimated_improvement_ms: float
    priority: OptimizationPriority
    risk: RiskLevel
    description: str = ""


@dataclass(frozen=True)
class SystemHealthScore:
    """Weighted health score; every component is in [0, 100]."""

    overall: float
    performance: float
    reliability: float
    resource_efficiency: float
    user_experience: float
    status: str
    grade: str
    critical_areas: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SeasonalPattern:
    """A recurring periodicity detected in a metric time series."""

    metric: str
    component: str
    pattern_type: str
    period_seconds: float
    strength: float


@dataclass(frozen=True)
class MetricForecast:
    """Short-horizon trend extrapolation for one metric."""

    metric: str
    component: str
    current_value: float
    forecast_value: float
    confidence: float
    horizon_seconds: float
    slope_per_second: float


@dataclass(frozen=True)
class PredictiveAnalysis:
    forecasts: Tuple[MetricForecast, ...] = ()
    horizon_seconds: float = 0.0
    confidence: float = 0.0
    potential_issues: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SystemPerformanceInsights:
    """Point-in-time system report, regenerated wholesale each cycle."""

    generated_at: datetime
    window_seconds: float
    bottlenecks: Tuple[PerformanceBottleneck, ...]
    opportunities: Tuple[OptimizationOpportunity, ...]
    health_score: SystemHealthScore
    seasonal_patterns: Tuple[SeasonalPattern, ...]
    predictions: PredictiveAnalysis
    key_metrics: Mapping[str, float] = field(default_factory=dict)

    def __post_init__(self):
        _frozen_mapping(self, "key_metrics")

    @classmethod
    def empty(cls, window_seconds: float = 0.0) -> "SystemPerformanceInsights":
        return cls(
            generated_at=datetime.now(),
            window_seconds=window_seconds,
            bottlenecks=(),
            opportunities=(),
            health_score=SystemHealthScore(
                overall=100.0, performance=100.0, reliability=100.0,
                resource_efficiency=100.0, user_experience=100.0,
                status="Unknown", grade="-",
            ),
            seasonal_patterns=(),
            predictions=PredictiveAnalysis(),
        )

    def to_dict(self) -> Dict[str, Any]:
        return to_primitive(self)


@dataclass(frozen=True)
class ModelStatistics:
    """Observability view of the engine's learning state."""

    total_predictions: int
    total_reconciliations: int
    accuracy_score: float
    precision_score: float
    recall_score: float
    f1_score: float
    model_confidence: float
    training_data_points: int
    tracked_request_types: int
    exploration_count: int
    learning_enabled: bool
    confidence_distribution: Mapping[str, int] = field(default_factory=dict)
    strategy_distribution: Mapping[str, int] = field(default_factory=dict)
    strategy_weights: Mapping[str, Mapping[str, float]] = field(default_factory=dict)
    last_model_update: Optional[datetime] = None

    def __post_init__(self):
        _frozen_mapping(self, "confidence_distribution")
        _frozen_mapping(self, "strategy_distribution")
        _frozen_mapping(self, "strategy_weights")

    def to_dict(self) -> Dict[str, Any]:
        return to_primitive(self)
