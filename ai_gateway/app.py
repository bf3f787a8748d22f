"""
Component wiring.

Builds one instance of every gateway component from process settings.
Callers construct the gateway once at startup and share it by reference.
"""

from typing import Any, Optional

import structlog

from ai_gateway.config.loader import GatewayOverrides, PlatformSettings
from ai_gateway.core.credentials import CredentialResolver, CredentialVault
from ai_gateway.core.gateway import Gateway
from ai_gateway.core.operations import OperationRegistry
from ai_gateway.core.pricing import PRICING_TABLE
from ai_gateway.core.processor import UnifiedProcessor
from ai_gateway.core.tiers import TIER_TABLE
from ai_gateway.sdk.openai_client import OpenAIModelClient
from ai_gateway.storage.repository import (
    AccountRepository,
    CacheRepository,
    UsageRepository,
    initialize_schema,
)

logger = structlog.get_logger(__name__)


def build_gateway(
    settings: PlatformSettings,
    model_client: Optional[Any] = None,
    overrides: Optional[GatewayOverrides] = None,
) -> Gateway:
    """Construct a ready-to-use gateway.

    Args:
        settings: Process settings
        model_client: Model client to use (defaults to OpenAIModelClient)
        overrides: Tier and price tables loaded from an override file

    Returns:
        Gateway wired to SQLite stores at ``settings.db_path``
    """
    initialize_schema(settings.db_path)

    accounts = AccountRepository(settings.db_path)
    vault = CredentialVault(settings.encryption_secret)
    resolver = CredentialResolver(accounts, vault, settings.default_credential)
    processor = UnifiedProcessor(
        registry=OperationRegistry(),
        model_client=model_client or OpenAIModelClient(),
        credentials=resolver,
        timeout=settings.request_timeout,
    )

    logger.debug(
        "gateway_built",
        deployment_mode=settings.deployment_mode.value,
        db_path=settings.db_path,
        overrides=overrides is not None,
    )
    return Gateway(
        processor=processor,
        cache=CacheRepository(settings.db_path),
        usage=UsageRepository(settings.db_path),
        accounts=accounts,
        vault=vault,
        settings=settings,
        tiers=overrides.tiers if overrides else TIER_TABLE,
        pricing=overrides.pricing if overrides else PRICING_TABLE,
    )
