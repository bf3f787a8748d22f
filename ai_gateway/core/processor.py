"""
Unified request processor.

Runs one operation end to end: configuration, credential, prompt, model
call, response recovery and validation. Failures come back as
``AIResponse(success=False)``; nothing is retried and no fallback value is
ever substituted for a failed call.
"""

import asyncio
import time
from typing import Any, Dict, List, Optional

import structlog

from ai_gateway.config.loader import ConfigurationError
from ai_gateway.sdk.openai_client import EmptyCompletionError

from .credentials import CredentialDecryptionError, CredentialResolver
from .operations import (
    DEFAULT_OPERATION,
    OperationConfig,
    OperationRegistry,
    ReasoningEffort,
    ResultShape,
    build_prompt,
)
from .recovery import missing_fields, parse_ai_response
from .types import AIError, AIRequest, AIResponse, ErrorKind, OperationOverrides

logger = structlog.get_logger(__name__)

_SNIPPET_LENGTH = 200


def validate_result(config: OperationConfig, value: Any) -> Optional[AIError]:
    """Check a parsed value against the operation's shape and required fields."""
    if config.shape == ResultShape.OBJECT and not isinstance(value, dict):
        return AIError(
            ErrorKind.VALIDATION_ERROR,
            f"Expected a JSON object for {config.name}, got {type(value).__name__}",
        )
    if config.shape == ResultShape.COLLECTION and not isinstance(value, list):
        return AIError(
            ErrorKind.VALIDATION_ERROR,
            f"Expected a JSON array for {config.name}, got {type(value).__name__}",
        )

    if config.required_fields:
        items = value if isinstance(value, list) else [value]
        missing = sorted({
            name for item in items
            for name in missing_fields(item, config.required_fields)
        })
        if missing:
            return AIError(
                ErrorKind.VALIDATION_ERROR,
                f"Missing essential fields in {config.name}: {', '.join(missing)}",
                details={"missing_fields": missing},
            )
    return None


class UnifiedProcessor:
    """Combines the registry, model client and recovery parser.

    Constructed once per process and shared by reference.
    """

    def __init__(
        self,
        registry: OperationRegistry,
        model_client: Any,
        credentials: CredentialResolver,
        timeout: Optional[float] = None,
    ):
        self.registry = registry
        self.model_client = model_client
        self.credentials = credentials
        self.timeout = timeout

    def _resolve_credential(self, request: AIRequest) -> str:
        override = request.overrides.credential if request.overrides else None
        try:
            return self.credentials.resolve(request.user_id, override)
        except CredentialDecryptionError as e:
            raise ConfigurationError(
                f"Stored API key for user {request.user_id} cannot be decrypted: {e}"
            ) from e

    async def _call_model(self, config: OperationConfig, prompt: str, credential: str) -> str:
        call = self.model_client.complete(
            prompt,
            model=config.model,
            reasoning_effort=config.reasoning,
            verbosity=config.verbosity,
            credential=credential,
            use_web_search=config.use_web_search,
        )
        if self.timeout is None:
            return await call
        return await asyncio.wait_for(call, self.timeout)

    async def process(self, request: AIRequest) -> AIResponse:
        """Process one AI request.

        Raises:
            ConfigurationError: If no credential is available
        """
        start = time.perf_counter()
        config = self.registry.get_config(request.operation).merged(request.overrides)
        credential = self._resolve_credential(request)
        prompt = build_prompt(config, request.content, request.additional_instructions)
        input_length = len(request.content)

        try:
            text = await self._call_model(config, prompt, credential)
        except EmptyCompletionError as e:
            return self._finish(request, config, start, input_length, 0,
                                error=AIError(ErrorKind.EMPTY_RESPONSE, str(e)))
        except asyncio.TimeoutError:
            return self._finish(request, config, start, input_length, 0, error=AIError(
                ErrorKind.SERVICE_ERROR,
                f"AI service error in {request.operation}: timed out after {self.timeout}s",
            ))
        except Exception as e:
            return self._finish(request, config, start, input_length, 0, error=AIError(
                ErrorKind.SERVICE_ERROR,
                f"AI service error in {request.operation}: {e}",
                raw_snippet=request.content[:_SNIPPET_LENGTH],
                details={"error_type": type(e).__name__},
            ))

        parsed = parse_ai_response(text, config.required_fields, config.allows_collection)
        if not parsed.success:
            return self._finish(request, config, start, input_length, len(text),
                                error=parsed.error, raw_response=text, repairs=parsed.repairs)

        error = validate_result(config, parsed.value)
        if error is not None:
            return self._finish(request, config, start, input_length, len(text),
                                error=error, raw_response=text, repairs=parsed.repairs)

        return self._finish(request, config, start, input_length, len(text),
                            data=parsed.value, raw_response=text,
                            repairs=parsed.repairs, salvaged=parsed.salvaged)

    def _finish(
        self,
        request: AIRequest,
        config: OperationConfig,
        start: float,
        input_length: int,
        output_length: int,
        data: Any = None,
        error: Optional[AIError] = None,
        raw_response: Optional[str] = None,
        repairs: Optional[List[str]] = None,
        salvaged: bool = False,
    ) -> AIResponse:
        processing_time_ms = (time.perf_counter() - start) * 1000
        success = error is None
        logger.info(
            "ai_operation",
            operation=request.operation,
            model=config.model,
            success=success,
            input_length=input_length,
            output_length=output_length,
            processing_time_ms=round(processing_time_ms, 1),
            error_kind=error.kind.value if error else None,
            repairs=repairs or [],
        )
        return AIResponse(
            operation=request.operation,
            model=config.model,
            success=success,
            data=data,
            error=error,
            raw_response=raw_response,
            processing_time_ms=processing_time_ms,
            input_length=input_length,
            output_length=output_length,
            repairs=list(repairs or []),
            salvaged=salvaged,
        )

    def available_operations(self) -> List[str]:
        return self.registry.names()

    def operation_info(self, operation: str) -> OperationConfig:
        return self.registry.get_config(operation)

    async def health_check(self, credential: Optional[str] = None) -> Dict[str, Any]:
        """Send a minimal completion and report whether the model answered.

        A reply that is not valid JSON still counts as healthy: the service
        is reachable and responding.
        """
        start = time.perf_counter()
        request = AIRequest(
            operation=DEFAULT_OPERATION,
            content='Health check. Respond with {"status": "ok"}.',
            overrides=OperationOverrides(
                model="gpt-5-nano",
                reasoning=ReasoningEffort.MINIMAL,
                credential=credential,
            ),
        )
        try:
            response = await self.process(request)
        except ConfigurationError as e:
            status, message = "error", str(e)
        else:
            if response.success or response.error.kind.is_bad_answer:
                status, message = "healthy", "Service is operational"
            else:
                status, message = "error", response.error.message

        return {
            "status": status,
            "service": "unified-processor",
            "model": "gpt-5-nano",
            "message": message,
            "response_time_ms": (time.perf_counter() - start) * 1000,
        }
