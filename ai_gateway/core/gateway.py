"""
Tiered gateway: the single entry point for AI requests.

Request flow:
1. Resolve caller context (tier, billing mode, credential)
2. Feature gate and monthly quota (SaaS deployments only)
3. Cache read unless a refresh is forced or the tier does not cache
4. Unified processor on a miss
5. Cache write on success and one usage increment per completed call,
   both best effort
6. Cost estimate for observability

Every outcome is a GatewayResponse. The only exception that escapes is
ConfigurationError, raised while resolving the caller context.
"""

import asyncio
import hashlib
import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import structlog

from ai_gateway.config.loader import ConfigurationError, PlatformSettings
from ai_gateway.storage.models import ApiKeyMode, CacheEntry
from ai_gateway.storage.repository import (
    AccountRepository,
    CacheRepository,
    UsageRepository,
    month_key,
)

from .credentials import CredentialDecryptionError, CredentialVault, mask_credential
from .effects import run_best_effort
from .guardrails import (
    FeatureNotAvailable,
    GuardrailViolation,
    enforce_batch_access,
    enforce_feature_access,
    enforce_monthly_quota,
)
from .pricing import PRICING_TABLE, PricingTable, calculate_cost
from .processor import UnifiedProcessor
from .tiers import TIER_TABLE, SubscriptionTier, TierLimits, TierTable, parse_tier
from .token_counter import estimate_usage
from .types import (
    AIError,
    AIRequest,
    ErrorKind,
    GatewayRequest,
    GatewayResponse,
    OperationOverrides,
)

logger = structlog.get_logger(__name__)

_MISS = object()


def _normalize(text: Optional[str]) -> str:
    return " ".join((text or "").split())


def cache_key(
    operation: str,
    model: str,
    content: str,
    additional_instructions: Optional[str] = None,
) -> str:
    """Deterministic cache key for a fully resolved request.

    Whitespace differences in content or instructions map to the same key.
    """
    payload = json.dumps(
        {
            "operation": operation,
            "model": model,
            "content": _normalize(content),
            "instructions": _normalize(additional_instructions),
        },
        sort_keys=True,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class CallerContext:
    """Who is calling and who pays for it."""
    tier: SubscriptionTier
    mode: ApiKeyMode
    credential: str = field(repr=False)

    @property
    def platform_billed(self) -> bool:
        return self.mode == ApiKeyMode.PLATFORM


@dataclass(frozen=True)
class UsageStats:
    """Monthly usage summary for one user."""
    user_id: str
    month_key: str
    tier: SubscriptionTier
    mode: ApiKeyMode
    total_requests: int
    total_tokens: int
    monthly_limit: Optional[int]
    by_operation: Dict[str, int]


class Gateway:
    """Tier, quota and cache aware front of the unified processor.

    Constructed once per process and shared by reference; it holds no
    mutable state of its own besides the stores it was given.
    """

    def __init__(
        self,
        processor: UnifiedProcessor,
        cache: CacheRepository,
        usage: UsageRepository,
        accounts: AccountRepository,
        vault: CredentialVault,
        settings: PlatformSettings,
        tiers: TierTable = TIER_TABLE,
        pricing: PricingTable = PRICING_TABLE,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.processor = processor
        self.cache = cache
        self.usage = usage
        self.accounts = accounts
        self.vault = vault
        self.settings = settings
        self.tiers = tiers
        self.pricing = pricing
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    # Caller context

    def _account_tier(self, user_id: str) -> Tuple[SubscriptionTier, ApiKeyMode]:
        account = self.accounts.get_account(user_id)
        if account is None:
            return SubscriptionTier.FREE, ApiKeyMode.PLATFORM
        if account.has_own_credential:
            return SubscriptionTier.SELF_HOSTED, ApiKeyMode.SELF_HOSTED
        tier = parse_tier(account.subscription_tier)
        if tier == SubscriptionTier.SELF_HOSTED:
            # self_hosted without a stored key is not a paying tier
            logger.warning("self_hosted_tier_without_credential", user_id=user_id)
            tier = SubscriptionTier.FREE
        return tier, ApiKeyMode.PLATFORM

    def resolve_context(self, user_id: str, custom_credential: Optional[str] = None) -> CallerContext:
        """Resolve tier, billing mode and credential for a caller.

        Raises:
            ConfigurationError: If no usable credential exists
        """
        if custom_credential:
            return CallerContext(SubscriptionTier.SELF_HOSTED, ApiKeyMode.SELF_HOSTED, custom_credential)

        account = self.accounts.get_account(user_id)
        if account is not None and account.has_own_credential:
            try:
                credential = self.vault.decrypt(account.encrypted_credential)
            except CredentialDecryptionError as e:
                raise ConfigurationError(
                    f"Stored API key for user {user_id} cannot be decrypted. "
                    "Please configure your API key again."
                ) from e
            return CallerContext(SubscriptionTier.SELF_HOSTED, ApiKeyMode.SELF_HOSTED, credential)

        if self.settings.is_self_hosted:
            if not self.settings.default_credential:
                raise ConfigurationError(
                    "OpenAI API key required for self-hosted deployment. "
                    "Configure your API key in Settings or set OPENAI_API_KEY."
                )
            return CallerContext(
                SubscriptionTier.SELF_HOSTED, ApiKeyMode.SELF_HOSTED, self.settings.default_credential
            )

        if not self.settings.default_credential:
            raise ConfigurationError(
                "AI service not configured. Platform OpenAI API key is missing."
            )
        tier, mode = self._account_tier(user_id)
        return CallerContext(tier, mode, self.settings.default_credential)

    def _tracks_usage(self, context: CallerContext) -> bool:
        return self.settings.is_saas and context.platform_billed

    # Single request

    async def request(self, request: GatewayRequest) -> GatewayResponse:
        """Run one request through gates, cache and processor.

        Raises:
            ConfigurationError: If no usable credential exists
        """
        start = time.perf_counter()
        context = self.resolve_context(request.user_id, request.custom_credential)
        return await self._execute(request, context, start)

    async def _execute(self, request: GatewayRequest, context: CallerContext, start: float) -> GatewayResponse:
        limits = self.tiers.get_limits(context.tier)
        config = self.processor.operation_info(request.operation)
        now = self.clock()
        month = month_key(now)

        try:
            remaining = self._enforce_guardrails(request, config.name, context, limits, month)
        except GuardrailViolation as e:
            logger.info(
                "gateway_request_rejected",
                operation=request.operation,
                user_id=request.user_id,
                tier=context.tier.value,
                reason=e.kind.value,
            )
            return self._error_response(request, config.model, context, e.to_error(), start)

        key = cache_key(config.name, config.model, request.content, request.additional_instructions)

        if limits.caching_enabled and not request.force_refresh:
            cached = self._read_cache(key, now)
            if cached is not _MISS:
                response = GatewayResponse(
                    operation=request.operation,
                    model=config.model,
                    success=True,
                    tier=context.tier.value,
                    data=cached,
                    cached=True,
                    elapsed_ms=self._elapsed(start),
                    remaining_quota=remaining + 1 if remaining is not None else None,
                )
                self._log_outcome(request, context, response)
                return response

        result = await self.processor.process(AIRequest(
            operation=request.operation,
            content=request.content,
            additional_instructions=request.additional_instructions,
            overrides=OperationOverrides(
                credential=context.credential,
                use_web_search=None if limits.include_web_search else False,
            ),
            user_id=request.user_id,
        ))

        token_usage = estimate_usage(result.input_length, result.output_length)
        cost = calculate_cost(result.model, token_usage, self.pricing)
        usage_tracked = False

        if result.success and limits.caching_enabled:
            self._write_cache(key, config.name, result.model, result.data, limits)
        # counted whether or not the call succeeded
        if self._tracks_usage(context):
            usage_tracked = self._track_usage(
                request.user_id, config.name, month, token_usage.total_tokens
            )

        response = GatewayResponse(
            operation=request.operation,
            model=result.model,
            success=result.success,
            tier=context.tier.value,
            data=result.data,
            error=result.error,
            cached=False,
            cost_estimate=cost,
            elapsed_ms=self._elapsed(start),
            usage_tracked=usage_tracked,
            remaining_quota=remaining,
        )
        self._log_outcome(request, context, response)
        return response

    def _enforce_guardrails(
        self,
        request: GatewayRequest,
        operation: str,
        context: CallerContext,
        limits: TierLimits,
        month: str,
    ) -> Optional[int]:
        """Apply the feature gate and quota; return requests left after this one."""
        if not self.settings.is_saas:
            return None
        enforce_feature_access(operation, context.tier, limits)
        if not context.platform_billed or limits.is_unlimited:
            return None

        used = run_best_effort(
            lambda: self.usage.get_count(request.user_id, operation, month),
            "usage_read",
            user_id=request.user_id,
            operation=operation,
        )
        return enforce_monthly_quota(operation, limits, used or 0)

    def _read_cache(self, key: str, now: datetime) -> Any:
        entry = run_best_effort(lambda: self.cache.get(key), "cache_read", cache_key=key[:16])
        if entry is None:
            return _MISS
        if entry.is_expired(now):
            run_best_effort(lambda: self.cache.delete(key), "cache_delete", cache_key=key[:16])
            return _MISS
        try:
            return json.loads(entry.value)
        except (ValueError, RecursionError):
            logger.warning("cache_entry_corrupt", cache_key=key[:16])
            run_best_effort(lambda: self.cache.delete(key), "cache_delete", cache_key=key[:16])
            return _MISS

    def _write_cache(self, key: str, operation: str, model: str, data: Any, limits: TierLimits) -> None:
        def write():
            created = self.clock()
            self.cache.upsert(CacheEntry(
                cache_key=key,
                operation=operation,
                model=model,
                value=json.dumps(data),
                created_at=created,
                expires_at=created + limits.cache_ttl,
            ))

        run_best_effort(write, "cache_write", cache_key=key[:16], operation=operation)

    def _track_usage(self, user_id: str, operation: str, month: str, tokens: int) -> bool:
        def track():
            self.usage.increment_or_create(
                user_id, operation, month, request_delta=1, token_delta=tokens, now=self.clock()
            )
            return True

        return bool(run_best_effort(track, "usage_increment", user_id=user_id, operation=operation))

    def _error_response(
        self,
        request: GatewayRequest,
        model: str,
        context: CallerContext,
        error: AIError,
        start: float,
    ) -> GatewayResponse:
        return GatewayResponse(
            operation=request.operation,
            model=model,
            success=False,
            tier=context.tier.value,
            error=error,
            elapsed_ms=self._elapsed(start),
        )

    @staticmethod
    def _elapsed(start: float) -> float:
        return (time.perf_counter() - start) * 1000

    def _log_outcome(self, request: GatewayRequest, context: CallerContext, response: GatewayResponse) -> None:
        logger.info(
            "gateway_request",
            operation=request.operation,
            user_id=request.user_id,
            tier=context.tier.value,
            mode=context.mode.value,
            success=response.success,
            cached=response.cached,
            cost_estimate=response.cost_estimate,
            elapsed_ms=round(response.elapsed_ms, 1),
            usage_tracked=response.usage_tracked,
        )

    # Batch

    async def request_batch(self, requests: Sequence[GatewayRequest]) -> List[GatewayResponse]:
        """Run several requests for one caller with bounded concurrency.

        Results are returned in input order. A failing item never cancels
        the others.

        Raises:
            ValueError: If the items belong to different callers
            ConfigurationError: If the caller has no usable credential
        """
        if not requests:
            return []
        user_ids = {item.user_id for item in requests}
        if len(user_ids) > 1:
            raise ValueError("All batch items must belong to the same caller")

        start = time.perf_counter()
        first = requests[0]
        context = self.resolve_context(first.user_id, first.custom_credential)
        limits = self.tiers.get_limits(context.tier)

        try:
            enforce_batch_access(context.tier, limits)
        except FeatureNotAvailable as e:
            logger.info("batch_rejected", user_id=first.user_id, tier=context.tier.value, items=len(requests))
            return [
                self._error_response(item, self.processor.operation_info(item.operation).model,
                                     context, e.to_error(), start)
                for item in requests
            ]

        semaphore = asyncio.Semaphore(limits.batch_concurrency)

        async def run(item: GatewayRequest) -> GatewayResponse:
            async with semaphore:
                return await self.request(item)

        logger.info(
            "batch_started",
            user_id=first.user_id,
            tier=context.tier.value,
            items=len(requests),
            concurrency=limits.batch_concurrency,
        )
        results = await asyncio.gather(*(run(item) for item in requests), return_exceptions=True)

        responses = []
        for item, result in zip(requests, results):
            if isinstance(result, GatewayResponse):
                responses.append(result)
                continue
            if not isinstance(result, Exception):
                raise result
            kind = ErrorKind.CONFIGURATION if isinstance(result, ConfigurationError) else ErrorKind.SERVICE_ERROR
            logger.warning(
                "batch_item_failed",
                operation=item.operation,
                error=str(result),
                error_type=type(result).__name__,
            )
            responses.append(self._error_response(
                item,
                self.processor.operation_info(item.operation).model,
                context,
                AIError(kind, str(result), details={"error_type": type(result).__name__}),
                start,
            ))
        return responses

    # Account management

    def save_user_credential(self, user_id: str, credential: str) -> None:
        """Encrypt and store a user's own API key.

        Raises:
            ValueError: If the credential is empty
        """
        credential = (credential or "").strip()
        if not credential:
            raise ValueError("API key cannot be empty")
        self.accounts.set_credential(user_id, self.vault.encrypt(credential))
        logger.info("user_credential_saved", user_id=user_id, credential=mask_credential(credential))

    def remove_user_credential(self, user_id: str) -> None:
        self.accounts.clear_credential(user_id)
        logger.info("user_credential_removed", user_id=user_id)

    def get_user_usage_stats(self, user_id: str) -> UsageStats:
        """Summarize a user's platform-billed usage for the current month."""
        tier, mode = self._account_tier(user_id)
        month = month_key(self.clock())
        records = self.usage.get_monthly_records(user_id, month)
        return UsageStats(
            user_id=user_id,
            month_key=month,
            tier=tier,
            mode=mode,
            total_requests=sum(record.request_count for record in records),
            total_tokens=sum(record.tokens_used for record in records),
            monthly_limit=self.tiers.get_limits(tier).monthly_request_limit,
            by_operation={record.operation: record.request_count for record in records},
        )

    def purge_expired_cache(self) -> int:
        """Delete expired cache entries; returns how many were removed."""
        removed = self.cache.purge_expired(self.clock())
        logger.info("cache_purged", removed=removed)
        return removed
