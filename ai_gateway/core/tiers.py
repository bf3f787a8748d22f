"""
Subscription tiers and their limits.

Each tier maps to a fixed set of feature flags, a monthly request quota,
a cache freshness window and the operations it may call.
"""

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Dict, FrozenSet, Optional

import structlog

logger = structlog.get_logger(__name__)


class SubscriptionTier(Enum):
    """Subscription levels."""
    FREE = "free"
    PRO = "pro"
    PRO_MAX = "pro_max"
    SELF_HOSTED = "self_hosted"


def parse_tier(value: Optional[str]) -> SubscriptionTier:
    """Parse a stored tier name, treating unknown values as FREE."""
    if not value:
        return SubscriptionTier.FREE
    try:
        return SubscriptionTier(value.lower())
    except ValueError:
        logger.warning("subscription_tier_unknown", value=value)
        return SubscriptionTier.FREE


# Operations that also need a feature flag on the tier
_FLAGGED_OPERATIONS = {
    "company_analysis": "include_company_intelligence",
    "negotiation_coaching": "include_negotiation_coaching",
}


@dataclass(frozen=True)
class TierLimits:
    """Feature flags and numeric limits for a tier."""
    include_web_search: bool
    include_company_intelligence: bool
    include_negotiation_coaching: bool
    batch_operations: bool
    batch_concurrency: int
    cache_ttl_hours: int
    monthly_request_limit: Optional[int]  # None means unlimited
    allowed_operations: Optional[FrozenSet[str]] = None  # None means all

    def __post_init__(self):
        """Validate numeric limits."""
        if self.batch_concurrency < 1:
            raise ValueError("batch_concurrency must be >= 1")
        if self.cache_ttl_hours < 0:
            raise ValueError("cache_ttl_hours cannot be negative")
        if self.monthly_request_limit is not None and self.monthly_request_limit < 0:
            raise ValueError("monthly_request_limit cannot be negative")

    @property
    def cache_ttl(self) -> timedelta:
        return timedelta(hours=self.cache_ttl_hours)

    @property
    def caching_enabled(self) -> bool:
        return self.cache_ttl_hours > 0

    @property
    def is_unlimited(self) -> bool:
        return self.monthly_request_limit is None

    def allows(self, operation: str) -> bool:
        """Check whether an operation is enabled for this tier."""
        flag = _FLAGGED_OPERATIONS.get(operation)
        if flag is not None and not getattr(self, flag):
            return False
        if self.allowed_operations is None:
            return True
        return operation in self.allowed_operations


@dataclass(frozen=True)
class TierTable:
    """Fixed limits table for all tiers."""
    limits: Dict[SubscriptionTier, TierLimits]

    def get_limits(self, tier: SubscriptionTier) -> TierLimits:
        """Get limits for a tier.

        Raises:
            ValueError: If the tier has no limits configured
        """
        if tier not in self.limits:
            raise ValueError(f"Unconfigured tier: {tier.value}")
        return self.limits[tier]


FREE_OPERATIONS = frozenset({
    "job_extraction",
    "resume_parsing",
    "salary_analysis",
    "skill_matching",
    "skills_extraction",
    "general_completion",
})

TIER_TABLE = TierTable({
    SubscriptionTier.FREE: TierLimits(
        include_web_search=False,
        include_company_intelligence=False,
        include_negotiation_coaching=False,
        batch_operations=False,
        batch_concurrency=1,
        cache_ttl_hours=168,
        monthly_request_limit=50,
        allowed_operations=FREE_OPERATIONS,
    ),
    SubscriptionTier.PRO: TierLimits(
        include_web_search=True,
        include_company_intelligence=True,
        include_negotiation_coaching=True,
        batch_operations=True,
        batch_concurrency=5,
        cache_ttl_hours=24,
        monthly_request_limit=500,
    ),
    SubscriptionTier.PRO_MAX: TierLimits(
        include_web_search=True,
        include_company_intelligence=True,
        include_negotiation_coaching=True,
        batch_operations=True,
        batch_concurrency=10,
        cache_ttl_hours=1,
        monthly_request_limit=None,
    ),
    # Self-hosted callers pay with their own key: unlimited, always fresh
    SubscriptionTier.SELF_HOSTED: TierLimits(
        include_web_search=True,
        include_company_intelligence=True,
        include_negotiation_coaching=True,
        batch_operations=True,
        batch_concurrency=10,
        cache_ttl_hours=0,
        monthly_request_limit=None,
    ),
})
