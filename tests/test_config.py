"""
Unit tests for configuration loading and validation.

Tests strict validation, API key resolution and pricing overrides.
"""

import os
import tempfile
from decimal import Decimal

import pytest
import yaml

from scent_resolver.config.loader import (
    EfficiencySettings,
    LimitSettings,
    ResolverConfig,
    load_resolver_config,
)


class TestConfigLoading:
    """Test configuration loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data: dict, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_defaults_without_file(self):
        """No path means built-in defaults with keys from the environment."""
        config = load_resolver_config(environ={"OPENAI_API_KEY": "sk-test"})

        assert config.default_provider == "openai"
        assert config.provider_settings("openai").api_key == "sk-test"
        assert config.provider_settings("openai").is_configured
        assert not config.provider_settings("anthropic").is_configured
        assert config.limits.daily_cost == 1.0
        assert config.cache.completion_ttl == 300

    def test_valid_config_loads_correctly(self):
        config_data = {
            "default_provider": "anthropic",
            "providers": {
                "anthropic": {"api_key": "ak-inline", "model": "claude-3-5-sonnet-20241022"},
                "gemini": {"api_key_env": "MY_GEMINI_KEY", "timeout": 10},
            },
            "limits": {"daily_cost": 2.5, "requests_per_window": 20},
            "cache": {"completion_ttl": 60},
            "batch": {"max_concurrency": 2},
            "db_path": "ledger.db",
        }
        config = load_resolver_config(self._write_config(config_data), environ={"MY_GEMINI_KEY": "g-key"})

        assert config.default_provider == "anthropic"
        assert config.provider_settings("anthropic").api_key == "ak-inline"
        assert config.provider_settings("anthropic").model == "claude-3-5-sonnet-20241022"
        assert config.provider_settings("gemini").api_key == "g-key"
        assert config.provider_settings("gemini").timeout == 10.0
        assert config.limits.daily_cost == 2.5
        assert config.limits.requests_per_window == 20
        assert isinstance(config.limits.requests_per_window, int)
        assert config.cache.completion_ttl == 60
        assert config.batch.max_concurrency == 2
        assert config.db_path == "ledger.db"

    def test_explicit_key_wins_over_environment(self):
        config_path = self._write_config({"providers": {"openai": {"api_key": "from-file"}}})
        config = load_resolver_config(config_path, environ={"OPENAI_API_KEY": "from-env"})
        assert config.provider_settings("openai").api_key == "from-file"

    def test_unknown_top_level_key_rejected(self):
        config_path = self._write_config({"budget": {"daily": 1}})
        with pytest.raises(ValueError, match="Unknown configuration keys"):
            load_resolver_config(config_path, environ={})

    def test_unknown_provider_rejected(self):
        config_path = self._write_config({"providers": {"mistral": {}}})
        with pytest.raises(ValueError, match="Unknown providers"):
            load_resolver_config(config_path, environ={})

    def test_unknown_limit_key_rejected(self):
        config_path = self._write_config({"limits": {"hourly_cost": 1.0}})
        with pytest.raises(ValueError, match="Unknown keys in limits"):
            load_resolver_config(config_path, environ={})

    def test_non_numeric_limit_rejected(self):
        config_path = self._write_config({"limits": {"daily_cost": "lots"}})
        with pytest.raises(ValueError, match="must be a number"):
            load_resolver_config(config_path, environ={})

    def test_invalid_default_provider_rejected(self):
        config_path = self._write_config({"default_provider": "mistral"})
        with pytest.raises(ValueError, match="default_provider must be one of"):
            load_resolver_config(config_path, environ={})

    def test_efficiency_weights(self):
        config_data = {
            "efficiency": {
                "weights": {"confidence": 0.5, "data_match": 0.2, "latency": 0.1, "provider": 0.2},
                "provider_reliability": {"gemini": 0.95},
            }
        }
        config = load_resolver_config(self._write_config(config_data), environ={})
        assert config.efficiency.confidence_weight == 0.5
        assert config.efficiency.reliability_of("gemini") == 0.95
        assert config.efficiency.reliability_of("openai") == 0.9

    def test_efficiency_weights_must_sum_to_one(self):
        config_data = {"efficiency": {"weights": {"confidence": 0.9}}}
        with pytest.raises(ValueError, match="must sum to 1"):
            load_resolver_config(self._write_config(config_data), environ={})

    def test_pricing_overrides(self):
        config_data = {
            "pricing": {
                "openai": {
                    "default_model": "gpt-4.1-mini",
                    "models": {"gpt-4.1-mini": {"input": 0.40, "output": 1.60}},
                }
            }
        }
        config = load_resolver_config(self._write_config(config_data), environ={})
        table = config.rate_table("openai")
        assert table.default_model == "gpt-4.1-mini"
        assert table.get_rates("gpt-4.1-mini").input_per_million == Decimal("0.4")
        assert "gpt-4o" in table.rates

    def test_pricing_requires_input_and_output(self):
        config_data = {"pricing": {"openai": {"models": {"x": {"input": 1}}}}}
        with pytest.raises(ValueError, match="exactly 'input' and 'output'"):
            load_resolver_config(self._write_config(config_data), environ={})

    def test_missing_file_raises_error(self):
        with pytest.raises(FileNotFoundError, match="Resolver config file not found"):
            load_resolver_config("nonexistent.yaml")

    def test_empty_config_raises_error(self):
        config_path = self._write_config({})
        with pytest.raises(ValueError, match="Configuration file is empty"):
            load_resolver_config(config_path)

    def test_invalid_yaml_raises_error(self):
        config_path = os.path.join(self.temp_dir, "invalid.yaml")
        with open(config_path, 'w') as f:
            f.write("limits: [unclosed")
        with pytest.raises(yaml.YAMLError):
            load_resolver_config(config_path)


class TestSettingsValidation:
    """Test settings dataclass validation."""

    def test_limit_thresholds_ordered(self):
        with pytest.raises(ValueError, match="thresholds"):
            LimitSettings(warning_threshold=0.9, critical_threshold=0.8)

    def test_non_positive_daily_cost_rejected(self):
        with pytest.raises(ValueError, match="daily_cost must be > 0"):
            LimitSettings(daily_cost=0)

    def test_with_api_keys(self):
        config = ResolverConfig().with_api_keys(gemini="g-key")
        assert config.provider_settings("gemini").is_configured
        assert not ResolverConfig().provider_settings("gemini").is_configured

    def test_default_reliability_for_unknown_provider(self):
        assert EfficiencySettings().reliability_of("other") == 0.5
