"""
Configuration management for the Adaptive Optimizer.
"""

import json
import logging
import math
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, FrozenSet, List, Optional

import yaml

from .exceptions import ConfigurationError
from .models import OptimizationStrategy, RiskLevel
from .utils import load_json_file, to_primitive

logger = logging.getLogger(__name__)

MIB = 1024 * 1024

DEFAULT_EXPECTED_IMPROVEMENTS = {
    OptimizationStrategy.ENABLE_CACHING.value: 0.70,
    OptimizationStrategy.BATCH_PROCESSING.value: 0.35,
    OptimizationStrategy.PARALLEL_PROCESSING.value: 0.25,
    OptimizationStrategy.MEMORY_POOLING.value: 0.20,
    OptimizationStrategy.DATABASE_OPTIMIZATION.value: 0.40,
    OptimizationStrategy.CIRCUIT_BREAKER.value: 0.30,
}

DEFAULT_PRIORITY_THRESHOLDS = {"critical": 0.40, "high": 0.25, "medium": 0.10}

DEFAULT_HEALTH_WEIGHTS = {
    "performance": 0.3,
    "reliability": 0.3,
    "resource": 0.2,
    "user_experience": 0.2,
}

DEFAULT_BOTTLENECK_THRESHOLDS = {
    "mean_duration_ms": 1000.0,
    "error_rate": 0.05,
    "cpu_utilization": 0.85,
    "memory_utilization": 0.85,
    "queue_depth": 100.0,
}

DEFAULT_SEASONAL_PERIODS = {"hourly": 3600.0, "daily": 86400.0}

HEALTH_WEIGHT_TOLERANCE = 1e-6


@dataclass
class RequestTypeOptions:
    """Monitoring options for one request type."""

    monitor: bool = True
    allowed_strategies: Optional[FrozenSet[OptimizationStrategy]] = None
    min_executions_for_analysis: Optional[int] = None
    caching_enabled: bool = True

    def __post_init__(self):
        if self.allowed_strategies is not None:
            self.allowed_strategies = frozenset(
                _parse_strategy(s) for s in self.allowed_strategies
            )
        if self.min_executions_for_analysis is not None and self.min_executions_for_analysis < 1:
            raise ConfigurationError("min_executions_for_analysis override must be at least 1")

    def allows(self, strategy: OptimizationStrategy) -> bool:
        if strategy is OptimizationStrategy.NONE or self.allowed_strategies is None:
            return True
        return strategy in self.allowed_strategies

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RequestTypeOptions":
        _reject_unknown_keys(cls, data, "request type options")
        return cls(**data)


def _parse_strategy(value: Any) -> OptimizationStrategy:
    if isinstance(value, OptimizationStrategy):
        return value
    try:
        return OptimizationStrategy(str(value).lower())
    except ValueError:
        raise ConfigurationError(f"Unknown optimization strategy: {value}")


def _reject_unknown_keys(cls, data: Dict[str, Any], what: str):
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ConfigurationError(f"Unknown {what} keys: {', '.join(unknown)}")


@dataclass
class OptimizerConfig:
    """Configuration for the optimization engine. Read-only once the engine is built."""

    # Enable flags
    enabled: bool = True
    learning_enabled: bool = True
    caching_analysis_enabled: bool = True
    monitor_unregistered_types: bool = True

    # Cold-start gate
    min_executions_for_analysis: int = 10

    # Detection thresholds
    high_execution_time_threshold_ms: float = 250.0
    high_concurrency_threshold: int = 20
    error_rate_threshold: float = 0.05
    high_memory_allocation_threshold_bytes: int = 10 * MIB
    high_memory_consistency_ratio: float = 0.5
    high_database_calls_threshold: float = 5.0
    batch_min_throughput_per_second: float = 50.0
    batch_max_duration_ms: float = 50.0
    batch_max_duration_cv: float = 0.5

    # Smoothing
    error_rate_smoothing: float = 0.02
    access_history_size: int = 256

    # Confidence
    max_confidence: float = 0.98
    confidence_floor: float = 0.6
    sample_penalty_factor: float = 0.5

    # Improvement estimation
    expected_improvements: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_EXPECTED_IMPROVEMENTS))
    max_gain_percentage: float = 95.0
    priority_thresholds: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_PRIORITY_THRESHOLDS))

    # Caching
    min_cache_ttl_seconds: float = 30.0
    max_cache_ttl_seconds: float = 3600.0
    cache_hit_rate_floor: float = 0.3
    cache_regularity_cv_threshold: float = 0.5
    cache_hit_rate_window: int = 100
    cache_high_cardinality_ratio: float = 0.5
    cache_high_repeat_count: int = 5

    # Resources
    resource_utilization_threshold: float = 0.8
    target_utilization: float = 0.7
    max_estimated_http_connections: int = 100
    max_estimated_db_connections: int = 50
    max_estimated_external_connections: int = 30
    max_estimated_websocket_connections: int = 1000

    # Batching
    default_batch_size: int = 10
    max_batch_size: int = 100

    # Learning
    learning_rate: float = 0.1
    exploration_rate: float = 0.05
    initial_strategy_weight: float = 0.5
    max_recent_predictions: int = 1000
    max_automatic_risk: str = RiskLevel.LOW.value

    # Insights
    health_weights: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_HEALTH_WEIGHTS))
    performance_baseline_ms: float = 5000.0
    ux_p95_target_ms: float = 1000.0
    ux_p99_target_ms: float = 2000.0
    bottleneck_thresholds: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_BOTTLENECK_THRESHOLDS))
    min_bottleneck_duration_seconds: float = 60.0
    seasonal_candidate_periods: Dict[str, float] = field(default_factory=lambda: dict(DEFAULT_SEASONAL_PERIODS))
    seasonality_bucket_seconds: float = 60.0
    seasonality_threshold: float = 0.6
    forecast_horizon_seconds: float = 3600.0
    insights_window_seconds: float = 3600.0
    time_series_max_points: int = 10000

    # Timers
    model_update_interval_seconds: float = 300.0
    metrics_collection_interval_seconds: float = 30.0
    insights_interval_seconds: float = 60.0

    # Explicit monitoring opt-in, keyed by request type
    request_types: Dict[str, RequestTypeOptions] = field(default_factory=dict)

    def __post_init__(self):
        """Validate and normalize configuration after initialization."""
        self.expected_improvements = {**DEFAULT_EXPECTED_IMPROVEMENTS, **self.expected_improvements}
        self.priority_thresholds = {**DEFAULT_PRIORITY_THRESHOLDS, **self.priority_thresholds}
        self.bottleneck_thresholds = {**DEFAULT_BOTTLENECK_THRESHOLDS, **self.bottleneck_thresholds}
        self.request_types = {
            name: opts if isinstance(opts, RequestTypeOptions) else RequestTypeOptions.from_dict(opts or {})
            for name, opts in self.request_types.items()
        }

        if self.min_executions_for_analysis < 1:
            raise ConfigurationError("min_executions_for_analysis must be at least 1")

        self._require_positive(
            "high_execution_time_threshold_ms",
            "high_concurrency_threshold",
            "high_memory_allocation_threshold_bytes",
            "high_database_calls_threshold",
            "batch_min_throughput_per_second",
            "batch_max_duration_ms",
            "batch_max_duration_cv",
            "min_cache_ttl_seconds",
            "cache_regularity_cv_threshold",
            "performance_baseline_ms",
            "ux_p95_target_ms",
            "ux_p99_target_ms",
            "seasonality_bucket_seconds",
            "forecast_horizon_seconds",
            "insights_window_seconds",
            "model_update_interval_seconds",
            "metrics_collection_interval_seconds",
            "insights_interval_seconds",
        )
        self._require_fraction(
            "error_rate_threshold",
            "high_memory_consistency_ratio",
            "confidence_floor",
            "cache_hit_rate_floor",
            "cache_high_cardinality_ratio",
            "exploration_rate",
            "initial_strategy_weight",
        )
        self._require_open_fraction(
            "error_rate_smoothing",
            "max_confidence",
            "sample_penalty_factor",
            "resource_utilization_threshold",
            "target_utilization",
            "learning_rate",
            "seasonality_threshold",
        )

        if self.access_history_size < 2:
            raise ConfigurationError("access_history_size must be at least 2")
        if self.max_cache_ttl_seconds < self.min_cache_ttl_seconds:
            raise ConfigurationError(
                f"max_cache_ttl_seconds ({self.max_cache_ttl_seconds}) must not be below "
                f"min_cache_ttl_seconds ({self.min_cache_ttl_seconds})"
            )
        if self.cache_hit_rate_window < 1 or self.cache_high_repeat_count < 1:
            raise ConfigurationError("cache_hit_rate_window and cache_high_repeat_count must be at least 1")
        if self.target_utilization > self.resource_utilization_threshold:
            raise ConfigurationError("target_utilization must not exceed resource_utilization_threshold")
        if self.default_batch_size < 1 or self.max_batch_size < self.default_batch_size:
            raise ConfigurationError("Batch sizes must satisfy 1 <= default_batch_size <= max_batch_size")
        if self.max_recent_predictions < 1:
            raise ConfigurationError("max_recent_predictions must be at least 1")
        if not 0 < self.max_gain_percentage <= 100:
            raise ConfigurationError("max_gain_percentage must be in (0, 100]")
        if self.time_series_max_points < 10:
            raise ConfigurationError("time_series_max_points must be at least 10")
        if self.min_bottleneck_duration_seconds < 0:
            raise ConfigurationError("min_bottleneck_duration_seconds must be non-negative")
        for name in ("max_estimated_http_connections", "max_estimated_db_connections",
                     "max_estimated_external_connections", "max_estimated_websocket_connections"):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"{name} must be at least 1")

        try:
            RiskLevel(self.max_automatic_risk)
        except ValueError:
            valid = [r.value for r in RiskLevel]
            raise ConfigurationError(
                f"Invalid max_automatic_risk: {self.max_automatic_risk}. Must be one of {valid}"
            )

        self._validate_expected_improvements()
        self._validate_priority_thresholds()
        self._validate_health_weights()
        self._validate_bottleneck_thresholds()
        self._validate_seasonal_periods()

    def _require_positive(self, *names: str):
        for name in names:
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or not math.isfinite(value) or value <= 0:
                raise ConfigurationError(f"{name} must be a positive number, got {value!r}")

    def _require_fraction(self, *names: str):
        for name in names:
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or not 0.0 <= value <= 1.0:
                raise ConfigurationError(f"{name} must be between 0 and 1, got {value!r}")

    def _require_open_fraction(self, *names: str):
        for name in names:
            value = getattr(self, name)
            if not isinstance(value, (int, float)) or not 0.0 < value <= 1.0:
                raise ConfigurationError(f"{name} must be in (0, 1], got {value!r}")

    def _validate_expected_improvements(self):
        for key, value in self.expected_improvements.items():
            strategy = _parse_strategy(key)
            if strategy is OptimizationStrategy.NONE:
                raise ConfigurationError("expected_improvements cannot contain 'none'")
            if not 0.0 < value <= 1.0:
                raise ConfigurationError(f"Expected improvement for {key} must be in (0, 1], got {value}")

    def _validate_priority_thresholds(self):
        unknown = set(self.priority_thresholds) - set(DEFAULT_PRIORITY_THRESHOLDS)
        if unknown:
            raise ConfigurationError(f"Unknown priority thresholds: {sorted(unknown)}")
        t = self.priority_thresholds
        if not 0 < t["medium"] <= t["high"] <= t["critical"] <= 1:
            raise ConfigurationError("priority_thresholds must satisfy 0 < medium <= high <= critical <= 1")

    def _validate_health_weights(self):
        if set(self.health_weights) != set(DEFAULT_HEALTH_WEIGHTS):
            raise ConfigurationError(
                f"health_weights must define exactly {sorted(DEFAULT_HEALTH_WEIGHTS)}, "
                f"got {sorted(self.health_weights)}"
            )
        if any(w < 0 for w in self.health_weights.values()):
            raise ConfigurationError("health_weights must be non-negative")
        total = sum(self.health_weights.values())
        if abs(total - 1.0) > HEALTH_WEIGHT_TOLERANCE:
            raise ConfigurationError(f"health_weights must sum to 1.0, got {total:.6f}")

    def _validate_bottleneck_thresholds(self):
        for key, value in self.bottleneck_thresholds.items():
            if value <= 0:
                raise ConfigurationError(f"Bottleneck threshold {key} must be positive, got {value}")

    def _validate_seasonal_periods(self):
        for name, period in self.seasonal_candidate_periods.items():
            if period < 2 * self.seasonality_bucket_seconds:
                raise ConfigurationError(
                    f"Seasonal period {name} ({period}s) must span at least two "
                    f"{self.seasonality_bucket_seconds}s buckets"
                )

    @property
    def automatic_risk_ceiling(self) -> RiskLevel:
        return RiskLevel(self.max_automatic_risk)

    def expected_improvement(self, strategy: OptimizationStrategy) -> float:
        return self.expected_improvements.get(strategy.value, 0.0)

    def options_for(self, request_type: str) -> Optional[RequestTypeOptions]:
        """
        Resolve monitoring options for a request type.

        Returns:
            The registered options, default options for unregistered types when
            ``monitor_unregistered_types`` is set, otherwise None.
        """
        options = self.request_types.get(request_type)
        if options is not None:
            return options
        if self.monitor_unregistered_types:
            return RequestTypeOptions()
        return None

    def min_executions_for(self, request_type: str) -> int:
        options = self.request_types.get(request_type)
        if options is not None and options.min_executions_for_analysis is not None:
            return options.min_executions_for_analysis
        return self.min_executions_for_analysis

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        data = {f.name: to_primitive(getattr(self, f.name)) for f in fields(self)}
        for opts in data["request_types"].values():
            if opts.get("allowed_strategies") is not None:
                opts["allowed_strategies"] = sorted(opts["allowed_strategies"])
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OptimizerConfig":
        """Create configuration from dictionary."""
        _reject_unknown_keys(cls, data, "configuration")
        try:
            return cls(**data)
        except TypeError as e:
            raise ConfigurationError(f"Invalid configuration: {e}")

    @classmethod
    def from_file(cls, filepath: str) -> "OptimizerConfig":
        """Load configuration from a JSON or YAML file."""
        path = Path(filepath)
        if path.suffix.lower() in (".yaml", ".yml"):
            if not path.exists():
                raise FileNotFoundError(f"File not found: {filepath}")
            with open(path, "r") as f:
                try:
                    data = yaml.safe_load(f) or {}
                except yaml.YAMLError as e:
                    raise ConfigurationError(f"Invalid YAML in {filepath}: {e}")
        else:
            try:
                data = load_json_file(str(path))
            except ValueError as e:
                raise ConfigurationError(str(e))

        if not isinstance(data, dict):
            raise ConfigurationError(f"Configuration file {filepath} must contain a mapping")

        logger.debug(f"Loaded configuration from {filepath}")
        return cls.from_dict(data)

    def save(self, filepath: str):
        """Save configuration to file; YAML when the suffix asks for it."""
        path = Path(filepath)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            if path.suffix.lower() in (".yaml", ".yml"):
                yaml.safe_dump(self.to_dict(), f, sort_keys=False)
            else:
                json.dump(self.to_dict(), f, indent=2)


def collect_config_warnings(config: OptimizerConfig) -> List[str]:
    """Validate configuration and return list of advisory warnings."""
    warnings = []

    if config.confidence_floor > config.max_confidence:
        warnings.append(
            "confidence_floor exceeds max_confidence; no recommendation will ever be auto-applied "
            "or surfaced as an opportunity"
        )

    if config.exploration_rate > 0.2:
        warnings.append(
            f"exploration_rate of {config.exploration_rate:.0%} will frequently replace the best strategy"
        )

    if config.min_executions_for_analysis < 5:
        warnings.append("min_executions_for_analysis below 5 produces recommendations from very little data")

    if config.automatic_risk_ceiling.rank >= RiskLevel.HIGH.rank:
        warnings.append("max_automatic_risk allows high-risk strategies such as circuit breakers to auto-apply")

    if config.max_cache_ttl_seconds > 86400:
        warnings.append("max_cache_ttl_seconds above one day risks serving stale responses")

    if not config.enabled:
        warnings.append("Engine is disabled; every request will receive a 'none' recommendation")

    for name, opts in config.request_types.items():
        if not opts.monitor:
            continue
        if opts.allowed_strategies is not None and not opts.allowed_strategies:
            warnings.append(f"Request type '{name}' allows no strategies")

    return warnings


def merge_config(base: OptimizerConfig, overrides: Dict[str, Any]) -> OptimizerConfig:
    """Merge configuration with overrides, ignoring None values."""
    data = {f.name: getattr(base, f.name) for f in fields(base)}
    for key, value in overrides.items():
        if value is not None:
            data[key] = value
    return OptimizerConfig.from_dict(data)
