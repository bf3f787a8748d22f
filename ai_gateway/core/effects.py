"""
Non-critical side effects.

Cache writes and usage increments must never change the outcome of the
request they belong to: their errors are logged and discarded here.
"""

from typing import Any, Callable, Optional, TypeVar

import structlog

logger = structlog.get_logger(__name__)

R = TypeVar("R")


def run_best_effort(effect: Callable[[], R], description: str, **log_context: Any) -> Optional[R]:
    """Run ``effect`` and swallow any exception it raises.

    Args:
        effect: Zero-argument callable performing the side effect
        description: Short name used in the log event
        **log_context: Extra key/values for the log event

    Returns:
        The effect's return value, or None if it failed
    """
    try:
        return effect()
    except Exception as e:
        logger.warning(
            "best_effort_failed",
            effect=description,
            error=str(e),
            error_type=type(e).__name__,
            **log_context,
        )
        return None
