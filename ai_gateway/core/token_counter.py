"""
Token estimation for usage accounting.

The model client returns text only, so token counts are estimated from
character lengths.
"""

from dataclasses import dataclass

CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation."""
    prompt_tokens: int
    completion_tokens: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens


def estimate_tokens(char_count: int) -> int:
    """Estimate tokens for a character count, rounding up."""
    if char_count <= 0:
        return 0
    return -(-char_count // CHARS_PER_TOKEN)


def estimate_usage(input_length: int, output_length: int) -> TokenUsage:
    """Build a TokenUsage from input and output character lengths."""
    return TokenUsage(
        prompt_tokens=estimate_tokens(input_length),
        completion_tokens=estimate_tokens(output_length),
    )
