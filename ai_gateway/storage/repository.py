"""
Repository pattern for data access.

Handles the response cache, the monthly usage ledger and user accounts.
Each write is a single statement so concurrent callers rely on SQLite's own
atomicity instead of application locks.
"""

from datetime import datetime, timezone
from typing import List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .models import ApiKeyMode, CacheEntry, UsageRecord, UserAccount


def month_key(now: datetime) -> str:
    """Format the calendar month used to bucket usage (YYYY-MM)."""
    return now.strftime("%Y-%m")


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the cache, usage and account tables if they don't exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS ai_response_cache (
                cache_key TEXT PRIMARY KEY,
                operation TEXT NOT NULL,
                model TEXT NOT NULL,
                value TEXT NOT NULL,
                created_at TEXT NOT NULL,
                expires_at TEXT NOT NULL
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS ai_usage (
                user_id TEXT NOT NULL,
                operation TEXT NOT NULL,
                month_key TEXT NOT NULL,
                request_count INTEGER NOT NULL DEFAULT 0,
                tokens_used INTEGER NOT NULL DEFAULT 0,
                last_used_at TEXT NOT NULL,
                PRIMARY KEY (user_id, operation, month_key)
            )
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS user_account (
                user_id TEXT PRIMARY KEY,
                subscription_tier TEXT NOT NULL DEFAULT 'free',
                api_key_mode TEXT NOT NULL DEFAULT 'platform',
                encrypted_credential TEXT,
                updated_at TEXT NOT NULL
            )
        """)
        conn.commit()
    finally:
        conn.close()


class CacheRepository:
    """Key to (value, expiry) store for gateway responses."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def get(self, cache_key: str) -> Optional[CacheEntry]:
        """Fetch a cache entry, expired or not."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT cache_key, operation, model, value, created_at, expires_at
                FROM ai_response_cache
                WHERE cache_key = ?
            """, (cache_key,))
            row = cursor.fetchone()
            if row is None:
                return None
            return CacheEntry(
                cache_key=row[0],
                operation=row[1],
                model=row[2],
                value=row[3],
                created_at=datetime.fromisoformat(row[4]),
                expires_at=datetime.fromisoformat(row[5])
            )
        finally:
            conn.close()

    def upsert(self, entry: CacheEntry) -> None:
        """Insert an entry or overwrite the existing one for its key."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO ai_response_cache
                (cache_key, operation, model, value, created_at, expires_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(cache_key) DO UPDATE SET
                    operation = excluded.operation,
                    model = excluded.model,
                    value = excluded.value,
                    created_at = excluded.created_at,
                    expires_at = excluded.expires_at
            """, (
                entry.cache_key,
                entry.operation,
                entry.model,
                entry.value,
                entry.created_at.isoformat(),
                entry.expires_at.isoformat()
            ))
            conn.commit()
        finally:
            conn.close()

    def delete(self, cache_key: str) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("DELETE FROM ai_response_cache WHERE cache_key = ?", (cache_key,))
            conn.commit()
        finally:
            conn.close()

    def purge_expired(self, now: datetime) -> int:
        """Delete every expired entry.

        Returns:
            Number of entries removed
        """
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute(
                "DELETE FROM ai_response_cache WHERE expires_at <= ?",
                (now.isoformat(),)
            )
            conn.commit()
            return cursor.rowcount
        finally:
            conn.close()


class UsageRepository:
    """Per-user, per-operation, per-month request and token counters."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def increment_or_create(
        self,
        user_id: str,
        operation: str,
        month: str,
        request_delta: int = 1,
        token_delta: int = 0,
        now: Optional[datetime] = None
    ) -> None:
        """Atomically add to a usage record, creating it on first use.

        Args:
            user_id: Caller identity
            operation: Operation name
            month: Month bucket (YYYY-MM)
            request_delta: Requests to add
            token_delta: Estimated tokens to add
            now: Timestamp stored as last use
        """
        now = now or datetime.now(timezone.utc)
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO ai_usage
                (user_id, operation, month_key, request_count, tokens_used, last_used_at)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, operation, month_key) DO UPDATE SET
                    request_count = request_count + excluded.request_count,
                    tokens_used = tokens_used + excluded.tokens_used,
                    last_used_at = excluded.last_used_at
            """, (user_id, operation, month, request_delta, token_delta, now.isoformat()))
            conn.commit()
        finally:
            conn.close()

    def get_record(self, user_id: str, operation: str, month: str) -> Optional[UsageRecord]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT user_id, operation, month_key, request_count, tokens_used, last_used_at
                FROM ai_usage
                WHERE user_id = ? AND operation = ? AND month_key = ?
            """, (user_id, operation, month))
            row = cursor.fetchone()
            return _row_to_usage(row) if row else None
        finally:
            conn.close()

    def get_count(self, user_id: str, operation: str, month: str) -> int:
        """Requests recorded for a user and operation in a month (0 if none)."""
        record = self.get_record(user_id, operation, month)
        return record.request_count if record else 0

    def get_monthly_records(self, user_id: str, month: str) -> List[UsageRecord]:
        """All usage records of a user for one month, by operation name."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT user_id, operation, month_key, request_count, tokens_used, last_used_at
                FROM ai_usage
                WHERE user_id = ? AND month_key = ?
                ORDER BY operation
            """, (user_id, month))
            return [_row_to_usage(row) for row in cursor.fetchall()]
        finally:
            conn.close()


def _row_to_usage(row) -> UsageRecord:
    return UsageRecord(
        user_id=row[0],
        operation=row[1],
        month_key=row[2],
        request_count=row[3],
        tokens_used=row[4],
        last_used_at=datetime.fromisoformat(row[5])
    )


class AccountRepository:
    """Subscription tier and stored credential per user."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def get_account(self, user_id: str) -> Optional[UserAccount]:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                SELECT user_id, subscription_tier, api_key_mode, encrypted_credential
                FROM user_account
                WHERE user_id = ?
            """, (user_id,))
            row = cursor.fetchone()
            if row is None:
                return None
            return UserAccount(
                user_id=row[0],
                subscription_tier=row[1],
                api_key_mode=ApiKeyMode(row[2]),
                encrypted_credential=row[3]
            )
        finally:
            conn.close()

    def get_encrypted_credential(self, user_id: str) -> Optional[str]:
        account = self.get_account(user_id)
        return account.encrypted_credential if account else None

    def upsert_account(self, account: UserAccount) -> None:
        """Insert or replace a user's account settings."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO user_account
                (user_id, subscription_tier, api_key_mode, encrypted_credential, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    subscription_tier = excluded.subscription_tier,
                    api_key_mode = excluded.api_key_mode,
                    encrypted_credential = excluded.encrypted_credential,
                    updated_at = excluded.updated_at
            """, (
                account.user_id,
                account.subscription_tier,
                account.api_key_mode.value,
                account.encrypted_credential,
                datetime.now(timezone.utc).isoformat()
            ))
            conn.commit()
        finally:
            conn.close()

    def set_credential(self, user_id: str, encrypted_credential: str) -> None:
        """Store a user's own credential and switch them to self-hosted mode."""
        self.upsert_account(UserAccount(
            user_id=user_id,
            subscription_tier="self_hosted",
            api_key_mode=ApiKeyMode.SELF_HOSTED,
            encrypted_credential=encrypted_credential
        ))

    def clear_credential(self, user_id: str) -> None:
        """Remove a user's credential and return them to the free platform tier."""
        self.upsert_account(UserAccount(
            user_id=user_id,
            subscription_tier="free",
            api_key_mode=ApiKeyMode.PLATFORM,
            encrypted_credential=None
        ))
