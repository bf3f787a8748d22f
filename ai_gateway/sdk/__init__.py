"""
SDK adapters for AI Gateway.

Provides the model client used by the unified processor.
"""

from .openai_client import EmptyCompletionError, OpenAIModelClient

__all__ = ["EmptyCompletionError", "OpenAIModelClient"]
