"""
Token counting and usage tracking.

Approximates token counts from text so requests can be priced before the
generation service reports real numbers.
"""

import math
from dataclasses import dataclass
from typing import Optional

CHARS_PER_TOKEN = 4


def estimate_tokens(text: Optional[str], chars_per_token: int = CHARS_PER_TOKEN) -> int:
    """Estimate the token count of text as ceil(characters / chars_per_token).

    Not a real tokenizer: it only needs to be cheap and monotonic in the
    length of the text.

    Args:
        text: Text to measure; None counts as empty
        chars_per_token: Characters assumed per token

    Returns:
        Estimated token count, 0 for empty text

    Raises:
        ValueError: If chars_per_token is not positive
    """
    if chars_per_token <= 0:
        raise ValueError("chars_per_token must be > 0")
    if not text:
        return 0
    return math.ceil(len(text) / chars_per_token)


@dataclass(frozen=True)
class TokenUsage:
    """Token counts for one generation call."""
    prompt_tokens: int
    completion_tokens: int

    def __post_init__(self):
        if self.prompt_tokens < 0 or self.completion_tokens < 0:
            raise ValueError("token counts must be >= 0")

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens
