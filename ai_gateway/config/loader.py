"""
Configuration management and loading.

Handles environment settings and operator overrides for tier limits and
model prices.
"""

import os
from dataclasses import dataclass, replace
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Dict, Mapping, Optional

import structlog
import yaml

from ai_gateway.core.pricing import PRICING_TABLE, ModelPricing, PricingTable
from ai_gateway.core.tiers import TIER_TABLE, SubscriptionTier, TierLimits, TierTable
from ai_gateway.storage.db import DEFAULT_DB_PATH

logger = structlog.get_logger(__name__)

DEVELOPMENT_SECRET = "development-only-secret-change-in-production"

_TIER_FLAGS = (
    'batch_operations',
    'include_web_search',
    'include_company_intelligence',
    'include_negotiation_coaching',
)


class ConfigurationError(Exception):
    """No usable credential or invalid deployment settings. Never retried."""


class DeploymentMode(Enum):
    """How the platform is deployed."""
    SAAS = "saas"
    SELF_HOSTED = "self_hosted"


@dataclass(frozen=True)
class PlatformSettings:
    """Process-wide settings supplied by the environment."""
    deployment_mode: DeploymentMode = DeploymentMode.SELF_HOSTED
    default_credential: Optional[str] = None
    encryption_secret: str = DEVELOPMENT_SECRET
    db_path: str = DEFAULT_DB_PATH
    request_timeout: Optional[float] = None
    log_level: str = "INFO"
    log_format: str = "console"

    def __post_init__(self):
        """Validate settings values."""
        if self.request_timeout is not None and self.request_timeout <= 0:
            raise ValueError("request_timeout must be > 0")
        if not self.encryption_secret:
            raise ValueError("encryption_secret cannot be empty")

    @property
    def is_saas(self) -> bool:
        return self.deployment_mode == DeploymentMode.SAAS

    @property
    def is_self_hosted(self) -> bool:
        return self.deployment_mode == DeploymentMode.SELF_HOSTED

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "PlatformSettings":
        """Build settings from environment variables.

        Variables:
            DEPLOYMENT_MODE: "saas" or "self_hosted" (default self_hosted)
            OPENAI_API_KEY: Platform-wide default credential
            ENCRYPTION_SECRET / JWT_SECRET: Secret for stored credentials
            AI_GATEWAY_DB: SQLite database path
            AI_GATEWAY_TIMEOUT: Optional model call timeout in seconds
            LOG_LEVEL, LOG_FORMAT: Logging setup

        Raises:
            ValueError: If a value is invalid
        """
        env = os.environ if environ is None else environ

        mode_str = (env.get("DEPLOYMENT_MODE") or DeploymentMode.SELF_HOSTED.value).lower()
        try:
            mode = DeploymentMode(mode_str)
        except ValueError:
            valid_modes = [m.value for m in DeploymentMode]
            raise ValueError(f"DEPLOYMENT_MODE must be one of: {valid_modes}")

        secret = env.get("ENCRYPTION_SECRET") or env.get("JWT_SECRET")
        if not secret:
            logger.warning(
                "encryption_secret_missing",
                detail="Using development secret. SET ENCRYPTION_SECRET IN PRODUCTION!",
            )
            secret = DEVELOPMENT_SECRET

        timeout = None
        timeout_str = env.get("AI_GATEWAY_TIMEOUT")
        if timeout_str:
            try:
                timeout = float(timeout_str)
            except ValueError:
                raise ValueError(f"AI_GATEWAY_TIMEOUT must be a number, got {timeout_str!r}")

        return cls(
            deployment_mode=mode,
            default_credential=env.get("OPENAI_API_KEY") or None,
            encryption_secret=secret,
            db_path=env.get("AI_GATEWAY_DB") or DEFAULT_DB_PATH,
            request_timeout=timeout,
            log_level=env.get("LOG_LEVEL", "INFO"),
            log_format=env.get("LOG_FORMAT", "console"),
        )


@dataclass(frozen=True)
class GatewayOverrides:
    """Tier and price tables after applying an operator override file."""
    tiers: TierTable
    pricing: PricingTable


def load_gateway_overrides(
    path: str,
    tiers: TierTable = TIER_TABLE,
    pricing: PricingTable = PRICING_TABLE,
) -> GatewayOverrides:
    """Load and validate tier/price overrides from a YAML file.

    Strict validation ensures no silent misconfiguration of quotas or prices.
    Values not mentioned in the file keep their defaults.

    Example::

        tiers:
          free:
            monthly_request_limit: 20
            allowed_operations: [job_extraction, general_completion]
        pricing:
          gpt-5:
            prompt_cost_per_1k: 0.03
            completion_cost_per_1k: 0.06

    Args:
        path: Path to YAML configuration file
        tiers: Base tier table
        pricing: Base pricing table

    Returns:
        GatewayOverrides with the merged tables

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Gateway config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    allowed_top_keys = {'tiers', 'pricing'}
    unknown_keys = set(raw_config.keys()) - allowed_top_keys
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    tiers_data = raw_config.get('tiers', {})
    if not isinstance(tiers_data, dict):
        raise ValueError("'tiers' must be a dictionary")

    limits = dict(tiers.limits)
    for tier_name, tier_data in tiers_data.items():
        try:
            tier = SubscriptionTier(tier_name)
        except ValueError:
            valid_tiers = [t.value for t in SubscriptionTier]
            raise ValueError(f"Unknown tier '{tier_name}', must be one of: {valid_tiers}")
        if not isinstance(tier_data, dict):
            raise ValueError(f"Tier '{tier_name}' must be a dictionary")
        limits[tier] = _parse_tier_limits(tier_data, limits[tier], f"tiers.{tier_name}")

    pricing_data = raw_config.get('pricing', {})
    if not isinstance(pricing_data, dict):
        raise ValueError("'pricing' must be a dictionary")

    prices = dict(pricing.prices)
    for model, price_data in pricing_data.items():
        if not isinstance(price_data, dict):
            raise ValueError(f"Pricing for '{model}' must be a dictionary")
        prices[model] = _parse_model_pricing(price_data, f"pricing.{model}")

    return GatewayOverrides(
        tiers=TierTable(limits),
        pricing=PricingTable(prices, fallback_model=pricing.fallback_model)
    )


def _parse_tier_limits(data: Dict, base: TierLimits, path: str) -> TierLimits:
    """Parse and validate one tier's overrides on top of its defaults.

    Raises:
        ValueError: If configuration is invalid
    """
    allowed_keys = {
        'monthly_request_limit', 'cache_ttl_hours', 'batch_concurrency',
        'allowed_operations', *_TIER_FLAGS,
    }
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    changes = {}

    if 'monthly_request_limit' in data:
        limit = data['monthly_request_limit']
        if limit is not None and (not isinstance(limit, int) or isinstance(limit, bool) or limit < 0):
            raise ValueError(f"'monthly_request_limit' in {path} must be a non-negative integer or null")
        changes['monthly_request_limit'] = limit

    if 'cache_ttl_hours' in data:
        ttl = data['cache_ttl_hours']
        if not isinstance(ttl, int) or isinstance(ttl, bool) or ttl < 0:
            raise ValueError(f"'cache_ttl_hours' in {path} must be a non-negative integer")
        changes['cache_ttl_hours'] = ttl

    for flag in _TIER_FLAGS:
        if flag in data:
            if not isinstance(data[flag], bool):
                raise ValueError(f"'{flag}' in {path} must be a boolean")
            changes[flag] = data[flag]

    if 'batch_concurrency' in data:
        concurrency = data['batch_concurrency']
        if not isinstance(concurrency, int) or isinstance(concurrency, bool) or concurrency < 1:
            raise ValueError(f"'batch_concurrency' in {path} must be >= 1")
        changes['batch_concurrency'] = concurrency

    if 'allowed_operations' in data:
        operations = data['allowed_operations']
        if operations is None:
            changes['allowed_operations'] = None
        elif isinstance(operations, list) and all(isinstance(op, str) for op in operations):
            changes['allowed_operations'] = frozenset(operations)
        else:
            raise ValueError(f"'allowed_operations' in {path} must be a list of names or null")

    return replace(base, **changes)


def _parse_model_pricing(data: Dict, path: str) -> ModelPricing:
    """Parse and validate a model's per-1K token prices.

    Raises:
        ValueError: If configuration is invalid
    """
    allowed_keys = {'prompt_cost_per_1k', 'completion_cost_per_1k'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    values = {}
    for key in sorted(allowed_keys):
        if key not in data:
            raise ValueError(f"Missing required '{key}' in {path}")
        value = data[key]
        if not isinstance(value, (int, float)) or isinstance(value, bool) or value < 0:
            raise ValueError(f"'{key}' in {path} must be a non-negative number")
        values[key] = Decimal(str(value))

    return ModelPricing(**values)
