"""
Unit tests for configuration loading and validation.

Tests environment settings and strict validation of override files.
"""

import os
import tempfile
from decimal import Decimal

import pytest
import yaml

from ai_gateway.config.loader import (
    DEVELOPMENT_SECRET,
    DeploymentMode,
    PlatformSettings,
    load_gateway_overrides,
)
from ai_gateway.core.pricing import PRICING_TABLE
from ai_gateway.core.tiers import TIER_TABLE, SubscriptionTier
from ai_gateway.storage.db import DEFAULT_DB_PATH


class TestPlatformSettings:
    """Test settings from environment variables."""

    def test_defaults(self):
        """Test an empty environment gives self-hosted defaults."""
        settings = PlatformSettings.from_env({})

        assert settings.deployment_mode == DeploymentMode.SELF_HOSTED
        assert settings.is_self_hosted is True
        assert settings.default_credential is None
        assert settings.encryption_secret == DEVELOPMENT_SECRET
        assert settings.db_path == DEFAULT_DB_PATH
        assert settings.request_timeout is None

    def test_saas_environment(self):
        """Test a full SaaS environment."""
        settings = PlatformSettings.from_env({
            "DEPLOYMENT_MODE": "SaaS",
            "OPENAI_API_KEY": "sk-platform",
            "ENCRYPTION_SECRET": "s3cret",
            "AI_GATEWAY_DB": "/tmp/gw.db",
            "AI_GATEWAY_TIMEOUT": "30",
            "LOG_LEVEL": "DEBUG",
            "LOG_FORMAT": "json",
        })

        assert settings.is_saas is True
        assert settings.default_credential == "sk-platform"
        assert settings.encryption_secret == "s3cret"
        assert settings.db_path == "/tmp/gw.db"
        assert settings.request_timeout == 30.0
        assert settings.log_format == "json"

    def test_jwt_secret_fallback(self):
        """Test JWT_SECRET is used when ENCRYPTION_SECRET is absent."""
        settings = PlatformSettings.from_env({"JWT_SECRET": "jwt"})

        assert settings.encryption_secret == "jwt"

    def test_invalid_mode(self):
        """Test unknown deployment modes are rejected."""
        with pytest.raises(ValueError, match="DEPLOYMENT_MODE must be one of"):
            PlatformSettings.from_env({"DEPLOYMENT_MODE": "cloud"})

    @pytest.mark.parametrize("value", ["soon", "0", "-5"])
    def test_invalid_timeout(self, value):
        """Test timeouts must be positive numbers."""
        with pytest.raises(ValueError):
            PlatformSettings.from_env({"AI_GATEWAY_TIMEOUT": value})


class TestOverrideLoading:
    """Test override file loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data, filename: str = "gateway.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_valid_config_loads_correctly(self):
        """Test tier and price overrides are merged onto defaults."""
        config_path = self._write_config({
            "tiers": {
                "free": {
                    "monthly_request_limit": 20,
                    "allowed_operations": ["job_extraction"],
                },
                "pro": {"cache_ttl_hours": 12, "batch_concurrency": 3},
            },
            "pricing": {
                "gpt-5": {"prompt_cost_per_1k": 0.05, "completion_cost_per_1k": 0.1},
                "custom-model": {"prompt_cost_per_1k": 1, "completion_cost_per_1k": 2},
            },
        })

        overrides = load_gateway_overrides(config_path)

        free = overrides.tiers.get_limits(SubscriptionTier.FREE)
        assert free.monthly_request_limit == 20
        assert free.allowed_operations == frozenset({"job_extraction"})
        assert free.cache_ttl_hours == 168

        pro = overrides.tiers.get_limits(SubscriptionTier.PRO)
        assert pro.cache_ttl_hours == 12
        assert pro.batch_concurrency == 3
        assert pro.monthly_request_limit == 500

        assert overrides.pricing.get_pricing("gpt-5").prompt_cost_per_1k == Decimal("0.05")
        assert overrides.pricing.get_pricing("custom-model").completion_cost_per_1k == Decimal("2")
        assert overrides.pricing.get_pricing("gpt-5-nano") == PRICING_TABLE.get_pricing("gpt-5-nano")

    def test_defaults_untouched(self):
        """Test loading never mutates the default tables."""
        load_gateway_overrides(self._write_config({"tiers": {"free": {"monthly_request_limit": 1}}}))

        assert TIER_TABLE.get_limits(SubscriptionTier.FREE).monthly_request_limit == 50

    def test_feature_flags(self):
        """Test tier feature flags can be switched."""
        overrides = load_gateway_overrides(self._write_config({
            "tiers": {"pro": {"include_web_search": False, "include_company_intelligence": False}},
        }))

        pro = overrides.tiers.get_limits(SubscriptionTier.PRO)
        assert pro.include_web_search is False
        assert not pro.allows("company_analysis")
        assert pro.include_negotiation_coaching is True

    def test_null_limit_means_unlimited(self):
        """Test a null limit removes the quota."""
        overrides = load_gateway_overrides(
            self._write_config({"tiers": {"pro": {"monthly_request_limit": None}}})
        )

        assert overrides.tiers.get_limits(SubscriptionTier.PRO).is_unlimited

    def test_missing_file(self):
        """Test a missing file is reported."""
        with pytest.raises(FileNotFoundError, match="Gateway config file not found"):
            load_gateway_overrides(os.path.join(self.temp_dir, "nope.yaml"))

    def test_empty_file(self):
        """Test an empty file is rejected."""
        config_path = os.path.join(self.temp_dir, "empty.yaml")
        open(config_path, 'w').close()

        with pytest.raises(ValueError, match="Configuration file is empty"):
            load_gateway_overrides(config_path)

    def test_invalid_yaml(self):
        """Test broken YAML is reported."""
        config_path = os.path.join(self.temp_dir, "broken.yaml")
        with open(config_path, 'w', encoding='utf-8') as f:
            f.write("tiers: [unclosed")

        with pytest.raises(yaml.YAMLError, match="Invalid YAML"):
            load_gateway_overrides(config_path)

    @pytest.mark.parametrize("config_data, message", [
        ({"budget": {}}, "Unknown configuration keys"),
        ({"tiers": {"gold": {}}}, "Unknown tier 'gold'"),
        ({"tiers": {"free": {"speed": 1}}}, "Unknown keys in tiers.free"),
        ({"tiers": {"free": {"monthly_request_limit": -1}}}, "non-negative integer or null"),
        ({"tiers": {"free": {"monthly_request_limit": "ten"}}}, "non-negative integer or null"),
        ({"tiers": {"free": {"cache_ttl_hours": 1.5}}}, "'cache_ttl_hours' in tiers.free"),
        ({"tiers": {"free": {"batch_operations": "yes"}}}, "must be a boolean"),
        ({"tiers": {"pro": {"include_web_search": 1}}}, "'include_web_search' in tiers.pro must be a boolean"),
        ({"tiers": {"pro": {"batch_concurrency": 0}}}, "must be >= 1"),
        ({"tiers": {"pro": {"allowed_operations": "job_extraction"}}}, "must be a list of names"),
        ({"tiers": ["free"]}, "'tiers' must be a dictionary"),
        ({"pricing": {"gpt-5": {"prompt_cost_per_1k": 0.1}}}, "Missing required 'completion_cost_per_1k'"),
        ({"pricing": {"gpt-5": {"prompt_cost_per_1k": -1, "completion_cost_per_1k": 1}}}, "non-negative number"),
        ({"pricing": {"gpt-5": {"prompt_cost_per_1k": 1, "completion_cost_per_1k": 1, "x": 1}}}, "Unknown keys in pricing.gpt-5"),
    ])
    def test_invalid_config(self, config_data, message):
        """Test strict validation rejects bad values."""
        with pytest.raises(ValueError, match=message):
            load_gateway_overrides(self._write_config(config_data))
