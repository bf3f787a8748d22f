"""
Unit tests for storage layer.

Tests schema creation, the response cache, the usage ledger and accounts.
"""

import os
import tempfile
from datetime import datetime, timedelta, timezone

import pytest

from ai_gateway.storage.db import get_connection
from ai_gateway.storage.models import ApiKeyMode, CacheEntry, UserAccount
from ai_gateway.storage.repository import (
    AccountRepository,
    CacheRepository,
    UsageRepository,
    initialize_schema,
    month_key,
)

NOW = datetime(2025, 3, 15, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def db_path():
    """Create an initialized temporary database."""
    with tempfile.TemporaryDirectory() as temp_dir:
        path = os.path.join(temp_dir, "test.db")
        initialize_schema(path)
        yield path


class TestStorageSchema:
    """Test database schema creation and structure."""

    def test_schema_creation(self, db_path):
        """Verify tables are created correctly."""
        conn = get_connection(db_path)
        try:
            cursor = conn.execute("""
                SELECT name FROM sqlite_master
                WHERE type='table'
                ORDER BY name
            """)
            tables = [row[0] for row in cursor.fetchall()]
            assert tables == ["ai_response_cache", "ai_usage", "user_account"]

            cursor = conn.execute("PRAGMA table_info(ai_usage)")
            column_names = [col[1] for col in cursor.fetchall()]
            assert column_names == [
                'user_id', 'operation', 'month_key',
                'request_count', 'tokens_used', 'last_used_at'
            ]
        finally:
            conn.close()

    def test_schema_idempotent(self, db_path):
        """Verify initializing twice is harmless."""
        initialize_schema(db_path)

    def test_month_key(self):
        """Verify month keys are zero padded."""
        assert month_key(NOW) == "2025-03"
        assert month_key(datetime(2025, 12, 31, 23, 59)) == "2025-12"


class TestCacheRepository:
    """Test the response cache."""

    def _entry(self, key="key-1", value='{"a": 1}', ttl_hours=1):
        return CacheEntry(
            cache_key=key,
            operation="job_extraction",
            model="gpt-5-nano",
            value=value,
            created_at=NOW,
            expires_at=NOW + timedelta(hours=ttl_hours),
        )

    def test_get_missing(self, db_path):
        """Test a missing key returns None."""
        assert CacheRepository(db_path).get("nope") is None

    def test_upsert_and_get(self, db_path):
        """Test an entry round-trips with its timestamps."""
        cache = CacheRepository(db_path)
        cache.upsert(self._entry())

        entry = cache.get("key-1")
        assert entry.value == '{"a": 1}'
        assert entry.expires_at == NOW + timedelta(hours=1)
        assert not entry.is_expired(NOW)
        assert entry.is_expired(NOW + timedelta(hours=1))

    def test_upsert_overwrites(self, db_path):
        """Test the last write wins."""
        cache = CacheRepository(db_path)
        cache.upsert(self._entry(value='{"a": 1}'))
        cache.upsert(self._entry(value='{"a": 2}'))

        assert cache.get("key-1").value == '{"a": 2}'

    def test_delete(self, db_path):
        """Test deleting an entry."""
        cache = CacheRepository(db_path)
        cache.upsert(self._entry())
        cache.delete("key-1")

        assert cache.get("key-1") is None

    def test_purge_expired(self, db_path):
        """Test only expired entries are purged."""
        cache = CacheRepository(db_path)
        cache.upsert(self._entry(key="short", ttl_hours=1))
        cache.upsert(self._entry(key="long", ttl_hours=48))

        removed = cache.purge_expired(NOW + timedelta(hours=2))

        assert removed == 1
        assert cache.get("short") is None
        assert cache.get("long") is not None


class TestUsageRepository:
    """Test the monthly usage ledger."""

    def test_increment_creates_record(self, db_path):
        """Test the first increment creates the record."""
        usage = UsageRepository(db_path)
        usage.increment_or_create("user-1", "job_extraction", "2025-03", token_delta=120, now=NOW)

        record = usage.get_record("user-1", "job_extraction", "2025-03")
        assert record.request_count == 1
        assert record.tokens_used == 120
        assert record.last_used_at == NOW

    def test_increment_accumulates(self, db_path):
        """Test repeated increments add up."""
        usage = UsageRepository(db_path)
        for _ in range(3):
            usage.increment_or_create("user-1", "job_extraction", "2025-03", token_delta=10)

        assert usage.get_count("user-1", "job_extraction", "2025-03") == 3
        assert usage.get_record("user-1", "job_extraction", "2025-03").tokens_used == 30

    def test_counts_are_scoped(self, db_path):
        """Test records are per user, operation and month."""
        usage = UsageRepository(db_path)
        usage.increment_or_create("user-1", "job_extraction", "2025-03")
        usage.increment_or_create("user-1", "resume_parsing", "2025-03")
        usage.increment_or_create("user-2", "job_extraction", "2025-03")
        usage.increment_or_create("user-1", "job_extraction", "2025-04")

        assert usage.get_count("user-1", "job_extraction", "2025-03") == 1
        assert usage.get_count("user-1", "job_extraction", "2025-05") == 0

    def test_monthly_records(self, db_path):
        """Test monthly records are ordered by operation."""
        usage = UsageRepository(db_path)
        usage.increment_or_create("user-1", "skill_matching", "2025-03")
        usage.increment_or_create("user-1", "job_extraction", "2025-03", request_delta=2)
        usage.increment_or_create("user-1", "job_extraction", "2025-02")

        records = usage.get_monthly_records("user-1", "2025-03")
        assert [(r.operation, r.request_count) for r in records] == [
            ("job_extraction", 2), ("skill_matching", 1)
        ]


class TestAccountRepository:
    """Test user accounts and stored credentials."""

    def test_missing_account(self, db_path):
        """Test unknown users have no account."""
        accounts = AccountRepository(db_path)

        assert accounts.get_account("nobody") is None
        assert accounts.get_encrypted_credential("nobody") is None

    def test_upsert_account(self, db_path):
        """Test account settings round-trip."""
        accounts = AccountRepository(db_path)
        accounts.upsert_account(UserAccount(user_id="user-1", subscription_tier="pro"))

        account = accounts.get_account("user-1")
        assert account.subscription_tier == "pro"
        assert account.api_key_mode == ApiKeyMode.PLATFORM
        assert account.has_own_credential is False

    def test_set_and_clear_credential(self, db_path):
        """Test storing a credential switches to self-hosted and back."""
        accounts = AccountRepository(db_path)
        accounts.set_credential("user-1", "iv:tag:ct")

        account = accounts.get_account("user-1")
        assert account.subscription_tier == "self_hosted"
        assert account.api_key_mode == ApiKeyMode.SELF_HOSTED
        assert account.has_own_credential is True
        assert accounts.get_encrypted_credential("user-1") == "iv:tag:ct"

        accounts.clear_credential("user-1")

        account = accounts.get_account("user-1")
        assert account.subscription_tier == "free"
        assert account.api_key_mode == ApiKeyMode.PLATFORM
        assert account.encrypted_credential is None
