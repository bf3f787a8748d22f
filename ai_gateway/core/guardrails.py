"""
Tier guardrails enforced before any model call.

Enforcement Order:
1. Feature gate - The operation must be enabled for the caller's tier
2. Monthly quota - Platform-billed callers must be under their tier's limit

Both checks raise a GuardrailViolation; the gateway turns it into an error
response so the caller sees an actionable message and nothing is executed.
"""

from typing import Optional

from .tiers import SubscriptionTier, TierLimits
from .types import AIError, ErrorKind


class GuardrailViolation(Exception):
    """Raised when a tier guardrail rejects a request."""
    def __init__(self, message: str, kind: ErrorKind):
        super().__init__(message)
        self.kind = kind

    def to_error(self) -> AIError:
        return AIError(self.kind, str(self))


class FeatureNotAvailable(GuardrailViolation):
    """Operation is not enabled for the tier."""
    def __init__(self, operation: str, tier: SubscriptionTier):
        super().__init__(
            f'Feature "{operation}" not available in {tier.value} tier. Please upgrade.',
            ErrorKind.UPGRADE_REQUIRED,
        )
        self.operation = operation
        self.tier = tier


class QuotaExceeded(GuardrailViolation):
    """Monthly request quota reached."""
    def __init__(self, operation: str, limit: int, used: int):
        super().__init__(
            f'Usage limit of {limit} monthly requests reached for "{operation}". '
            f"Please upgrade or wait for the monthly reset.",
            ErrorKind.QUOTA_EXCEEDED,
        )
        self.operation = operation
        self.limit = limit
        self.used = used

    def to_error(self) -> AIError:
        return AIError(self.kind, str(self), details={"limit": self.limit, "used": self.used})


def enforce_feature_access(operation: str, tier: SubscriptionTier, limits: TierLimits) -> None:
    """Reject operations not enabled for the tier.

    Raises:
        FeatureNotAvailable: If the operation is gated for this tier
    """
    if not limits.allows(operation):
        raise FeatureNotAvailable(operation, tier)


def enforce_monthly_quota(operation: str, limits: TierLimits, used: int) -> Optional[int]:
    """Reject requests once the monthly quota is used up.

    Args:
        operation: Operation being requested
        limits: Caller's tier limits
        used: Requests already recorded this month for the operation

    Returns:
        Requests remaining after this one, or None when unlimited

    Raises:
        QuotaExceeded: If ``used`` is at or over the limit
    """
    if limits.is_unlimited:
        return None
    limit = limits.monthly_request_limit
    if used >= limit:
        raise QuotaExceeded(operation, limit, used)
    return limit - used - 1


def enforce_batch_access(tier: SubscriptionTier, limits: TierLimits) -> None:
    """Reject batch submissions for tiers without batch operations.

    Raises:
        FeatureNotAvailable: If the tier cannot submit batches
    """
    if not limits.batch_operations:
        raise FeatureNotAvailable("batch_operations", tier)
