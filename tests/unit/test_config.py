"""Unit tests for configuration."""

import pytest
import json

from adaptive_optimizer.config import (
    DEFAULT_EXPECTED_IMPROVEMENTS,
    OptimizerConfig,
    RequestTypeOptions,
    collect_config_warnings,
    merge_config,
)
from adaptive_optimizer.exceptions import ConfigurationError
from adaptive_optimizer.models import OptimizationStrategy, RiskLevel


@pytest.mark.unit
class TestOptimizerConfig:
    """Test OptimizerConfig validation."""

    def test_defaults_are_valid(self):
        config = OptimizerConfig()

        assert config.enabled is True
        assert config.min_executions_for_analysis == 10
        assert sum(config.health_weights.values()) == pytest.approx(1.0)
        assert config.automatic_risk_ceiling is RiskLevel.LOW

    def test_health_weights_must_sum_to_one(self):
        with pytest.raises(ConfigurationError, match="sum to 1.0"):
            OptimizerConfig(health_weights={
                "performance": 0.5, "reliability": 0.3, "resource": 0.2, "user_experience": 0.2,
            })

    def test_health_weights_must_cover_every_component(self):
        with pytest.raises(ConfigurationError, match="exactly"):
            OptimizerConfig(health_weights={"performance": 0.5, "reliability": 0.5})

    def test_min_executions_must_be_positive(self):
        with pytest.raises(ConfigurationError):
            OptimizerConfig(min_executions_for_analysis=0)

    def test_ttl_bounds_must_be_ordered(self):
        with pytest.raises(ConfigurationError, match="max_cache_ttl_seconds"):
            OptimizerConfig(min_cache_ttl_seconds=600, max_cache_ttl_seconds=60)

    @pytest.mark.parametrize("field_name,value", [
        ("error_rate_threshold", 1.5),
        ("exploration_rate", -0.1),
        ("learning_rate", 0.0),
        ("high_execution_time_threshold_ms", 0),
        ("metrics_collection_interval_seconds", float("inf")),
    ])
    def test_out_of_range_values_rejected(self, field_name, value):
        with pytest.raises(ConfigurationError):
            OptimizerConfig(**{field_name: value})

    def test_target_utilization_must_not_exceed_threshold(self):
        with pytest.raises(ConfigurationError, match="target_utilization"):
            OptimizerConfig(resource_utilization_threshold=0.7, target_utilization=0.9)

    def test_priority_thresholds_must_be_ordered(self):
        with pytest.raises(ConfigurationError, match="priority_thresholds"):
            OptimizerConfig(priority_thresholds={"critical": 0.1, "high": 0.2, "medium": 0.3})

    def test_seasonal_period_must_span_two_buckets(self):
        with pytest.raises(ConfigurationError, match="two"):
            OptimizerConfig(seasonality_bucket_seconds=60, seasonal_candidate_periods={"short": 90})

    def test_invalid_risk_ceiling_rejected(self):
        with pytest.raises(ConfigurationError, match="max_automatic_risk"):
            OptimizerConfig(max_automatic_risk="reckless")

    def test_partial_expected_improvements_merge_with_defaults(self):
        config = OptimizerConfig(expected_improvements={"enable_caching": 0.5})

        assert config.expected_improvement(OptimizationStrategy.ENABLE_CACHING) == 0.5
        assert config.expected_improvement(OptimizationStrategy.BATCH_PROCESSING) == (
            DEFAULT_EXPECTED_IMPROVEMENTS["batch_processing"]
        )
        assert config.expected_improvement(OptimizationStrategy.NONE) == 0.0

    def test_expected_improvements_reject_unknown_strategy(self):
        with pytest.raises(ConfigurationError, match="Unknown optimization strategy"):
            OptimizerConfig(expected_improvements={"teleportation": 0.5})

    def test_from_dict_rejects_unknown_keys(self):
        with pytest.raises(ConfigurationError, match="Unknown configuration keys: bogus"):
            OptimizerConfig.from_dict({"bogus": 1})


@pytest.mark.unit
class TestRequestTypeOptions:
    """Test per request type monitoring options."""

    def test_allowed_strategies_parsed_from_strings(self):
        config = OptimizerConfig(request_types={
            "GetOrder": {"allowed_strategies": ["enable_caching", "BATCH_PROCESSING"]},
        })
        options = config.request_types["GetOrder"]

        assert isinstance(options, RequestTypeOptions)
        assert options.allowed_strategies == frozenset({
            OptimizationStrategy.ENABLE_CACHING, OptimizationStrategy.BATCH_PROCESSING,
        })
        assert options.allows(OptimizationStrategy.ENABLE_CACHING)
        assert not options.allows(OptimizationStrategy.CIRCUIT_BREAKER)
        assert options.allows(OptimizationStrategy.NONE)

    def test_unrestricted_options_allow_everything(self):
        options = RequestTypeOptions()
        assert all(options.allows(s) for s in OptimizationStrategy)

    def test_unknown_option_key_rejected(self):
        with pytest.raises(ConfigurationError, match="request type options"):
            OptimizerConfig(request_types={"GetOrder": {"priority": "high"}})

    def test_unregistered_types_follow_monitor_flag(self):
        assert OptimizerConfig().options_for("Anything") is not None
        assert OptimizerConfig(monitor_unregistered_types=False).options_for("Anything") is None

    def test_min_executions_override(self):
        config = OptimizerConfig(request_types={"Rare": {"min_executions_for_analysis": 3}})

        assert config.min_executions_for("Rare") == 3
        assert config.min_executions_for("Other") == config.min_executions_for_analysis


@pytest.mark.unit
class TestConfigFiles:
    """Test loading and saving configuration files."""

    @pytest.fixture
    def custom_config(self):
        return OptimizerConfig(
            min_executions_for_analysis=25,
            error_rate_threshold=0.1,
            request_types={
                "GetOrder": {"allowed_strategies": ["enable_caching"]},
                "Internal": {"monitor": False},
            },
        )

    @pytest.mark.parametrize("filename", ["optimizer.json", "optimizer.yaml"])
    def test_save_and_load(self, tmp_path, custom_config, filename):
        path = tmp_path / filename
        custom_config.save(str(path))

        loaded = OptimizerConfig.from_file(str(path))

        assert loaded == custom_config
        assert loaded.request_types["Internal"].monitor is False

    def test_to_dict_is_json_serializable(self, custom_config):
        data = json.loads(json.dumps(custom_config.to_dict()))

        assert data["request_types"]["GetOrder"]["allowed_strategies"] == ["enable_caching"]

    def test_invalid_json_raises_configuration_error(self, tmp_path):
        path = tmp_path / "broken.json"
        path.write_text("{not json")

        with pytest.raises(ConfigurationError, match="Invalid JSON"):
            OptimizerConfig.from_file(str(path))

    def test_non_mapping_yaml_rejected(self, tmp_path):
        path = tmp_path / "list.yaml"
        path.write_text("- 1\n- 2\n")

        with pytest.raises(ConfigurationError, match="mapping"):
            OptimizerConfig.from_file(str(path))

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            OptimizerConfig.from_file(str(tmp_path / "absent.yaml"))


@pytest.mark.unit
class TestConfigHelpers:
    """Test warnings and merging."""

    def test_default_config_has_no_warnings(self):
        assert collect_config_warnings(OptimizerConfig()) == []

    def test_risky_settings_produce_warnings(self):
        config = OptimizerConfig(
            exploration_rate=0.5,
            enabled=False,
            max_automatic_risk="high",
            request_types={"Locked": {"allowed_strategies": []}},
        )
        warnings = collect_config_warnings(config)

        assert any("exploration_rate" in w for w in warnings)
        assert any("disabled" in w for w in warnings)
        assert any("circuit breakers" in w for w in warnings)
        assert any("'Locked' allows no strategies" in w for w in warnings)

    def test_merge_ignores_none(self):
        base = OptimizerConfig(min_executions_for_analysis=20)
        merged = merge_config(base, {"min_executions_for_analysis": None, "learning_rate": 0.2})

        assert merged.min_executions_for_analysis == 20
        assert merged.learning_rate == 0.2
        assert base.learning_rate == 0.1
