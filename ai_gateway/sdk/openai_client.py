"""
OpenAI model client.

Thin async wrapper that sends one prompt and returns the text. It imposes no
token cap and performs no retries: errors reach the caller unmodified.
"""

import hashlib
from typing import Any, Callable, Dict, Optional

import structlog
from openai import AsyncOpenAI

from ..core.operations import ReasoningEffort, Verbosity

logger = structlog.get_logger(__name__)


class EmptyCompletionError(Exception):
    """The model call succeeded but returned no text."""


class OpenAIModelClient:
    """Model client backed by the OpenAI SDK.

    Plain operations use Chat Completions; operations that need web search
    use the Responses API with the ``web_search`` tool. One SDK client is
    kept per credential.
    """

    def __init__(self, client_factory: Optional[Callable[..., Any]] = None):
        self._client_factory = client_factory or AsyncOpenAI
        self._clients: Dict[str, Any] = {}

    def _get_client(self, credential: str) -> Any:
        if not credential or not credential.strip():
            raise ValueError("credential is required and cannot be empty")
        fingerprint = hashlib.sha256(credential.encode("utf-8")).hexdigest()
        client = self._clients.get(fingerprint)
        if client is None:
            client = self._client_factory(api_key=credential, max_retries=0)
            self._clients[fingerprint] = client
        return client

    async def complete(
        self,
        prompt: str,
        *,
        model: str,
        reasoning_effort: ReasoningEffort,
        credential: str,
        verbosity: Optional[Verbosity] = None,
        use_web_search: bool = False,
    ) -> str:
        """Send a prompt and return the model's text.

        Args:
            prompt: Full prompt text (required)
            model: Model identifier
            reasoning_effort: Reasoning effort for the call
            credential: API key to authenticate with
            verbosity: Optional text verbosity
            use_web_search: Route through the Responses API with web search

        Returns:
            The generated text

        Raises:
            ValueError: If prompt or credential is empty
            EmptyCompletionError: If the model returned no text
            OpenAI API errors: Propagated without modification
        """
        if not prompt or not prompt.strip():
            raise ValueError("prompt is required and cannot be empty")

        client = self._get_client(credential)
        logger.debug(
            "model_call_started",
            model=model,
            reasoning=reasoning_effort.value,
            web_search=use_web_search,
            prompt_length=len(prompt),
        )

        if use_web_search:
            response = await client.responses.create(
                model=model,
                input=prompt,
                tools=[{"type": "web_search"}],
                reasoning={"effort": reasoning_effort.value},
            )
            text = response.output_text
        else:
            options: Dict[str, Any] = {"reasoning_effort": reasoning_effort.value}
            if verbosity is not None:
                options["verbosity"] = verbosity.value
            response = await client.chat.completions.create(
                model=model,
                messages=[{"role": "user", "content": prompt}],
                **options,
            )
            text = response.choices[0].message.content if response.choices else None

        if not text:
            raise EmptyCompletionError(f"{model} returned empty content")
        return text
