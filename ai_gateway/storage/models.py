"""
Data models for storage layer.

Defines the cache entry, usage record and user account rows.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class ApiKeyMode(Enum):
    """Whose credential pays for a user's requests."""
    PLATFORM = "platform"
    SELF_HOSTED = "self_hosted"


@dataclass(frozen=True)
class CacheEntry:
    """Cached response for one fully resolved request key."""
    cache_key: str
    operation: str
    model: str
    value: str  # JSON-serialized response data
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class UsageRecord:
    """Monthly usage counter for one user and operation."""
    user_id: str
    operation: str
    month_key: str  # YYYY-MM
    request_count: int
    tokens_used: int
    last_used_at: datetime


@dataclass(frozen=True)
class UserAccount:
    """Subscription and credential settings for a user."""
    user_id: str
    subscription_tier: str
    api_key_mode: ApiKeyMode = ApiKeyMode.PLATFORM
    encrypted_credential: Optional[str] = None

    @property
    def has_own_credential(self) -> bool:
        return self.api_key_mode == ApiKeyMode.SELF_HOSTED and bool(self.encrypted_credential)
