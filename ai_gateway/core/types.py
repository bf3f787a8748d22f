"""
Request and response types shared by the processor and the gateway.

Every public entry point returns one of the response types below instead of
raising, so callers branch on ``success`` and inspect ``error.kind``.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, List, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(Enum):
    """Categories of failure surfaced to callers."""
    CONFIGURATION = "configuration_error"
    UPGRADE_REQUIRED = "upgrade_required"
    QUOTA_EXCEEDED = "quota_exceeded"
    SERVICE_ERROR = "service_error"
    EMPTY_RESPONSE = "empty_response"
    PARSING_ERROR = "parsing_error"
    VALIDATION_ERROR = "validation_error"

    @property
    def is_bad_answer(self) -> bool:
        """True when the model answered but the answer was unusable."""
        return self in (
            ErrorKind.EMPTY_RESPONSE,
            ErrorKind.PARSING_ERROR,
            ErrorKind.VALIDATION_ERROR,
        )


@dataclass(frozen=True)
class AIError:
    """Error descriptor attached to failed responses."""
    kind: ErrorKind
    message: str
    raw_snippet: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class OperationOverrides:
    """Per-call overrides; fields left as None keep the operation default."""
    model: Optional[str] = None
    reasoning: Optional[Any] = None
    verbosity: Optional[Any] = None
    use_web_search: Optional[bool] = None
    credential: Optional[str] = None


@dataclass(frozen=True)
class AIRequest:
    """One call into the unified processor."""
    operation: str
    content: str
    additional_instructions: Optional[str] = None
    overrides: Optional[OperationOverrides] = None
    user_id: Optional[str] = None


@dataclass
class AIResponse(Generic[T]):
    """Outcome of a single processor call with observability metadata."""
    operation: str
    model: str
    success: bool
    data: Optional[T] = None
    error: Optional[AIError] = None
    raw_response: Optional[str] = None
    processing_time_ms: float = 0.0
    input_length: int = 0
    output_length: int = 0
    repairs: List[str] = field(default_factory=list)
    salvaged: bool = False


@dataclass(frozen=True)
class GatewayRequest:
    """Request accepted by the gateway entry point."""
    operation: str
    content: str
    user_id: str
    additional_instructions: Optional[str] = None
    force_refresh: bool = False
    custom_credential: Optional[str] = None


@dataclass
class GatewayResponse(Generic[T]):
    """Gateway outcome: processor result plus tier, cache and cost data."""
    operation: str
    model: str
    success: bool
    tier: str
    data: Optional[T] = None
    error: Optional[AIError] = None
    cached: bool = False
    cost_estimate: float = 0.0
    elapsed_ms: float = 0.0
    usage_tracked: bool = False
    remaining_quota: Optional[int] = None
