"""
Credit pricing.

Converts token usage into credits, the unit the daily allowance is kept in.
Output tokens are weighted higher than input tokens.
"""

from dataclasses import dataclass

from .token_counter import CHARS_PER_TOKEN, TokenUsage

DAILY_CREDIT_LIMIT = 20000
INPUT_TOKEN_WEIGHT = 1
OUTPUT_TOKEN_WEIGHT = 5


@dataclass(frozen=True)
class CreditPolicy:
    """Daily allowance and token weights shared by every user."""
    daily_limit: int = DAILY_CREDIT_LIMIT
    input_weight: int = INPUT_TOKEN_WEIGHT
    output_weight: int = OUTPUT_TOKEN_WEIGHT
    chars_per_token: int = CHARS_PER_TOKEN

    def __post_init__(self):
        """Validate policy values are positive."""
        if self.daily_limit <= 0:
            raise ValueError("daily_limit must be > 0")
        if self.input_weight <= 0:
            raise ValueError("input_weight must be > 0")
        if self.output_weight <= 0:
            raise ValueError("output_weight must be > 0")
        if self.chars_per_token <= 0:
            raise ValueError("chars_per_token must be > 0")


DEFAULT_POLICY = CreditPolicy()


def calculate_credits(usage: TokenUsage, policy: CreditPolicy = DEFAULT_POLICY) -> int:
    """Calculate the credits charged for a token usage.

    Args:
        usage: Token usage data
        policy: Weights to apply

    Returns:
        prompt_tokens * input_weight + completion_tokens * output_weight
    """
    return usage.prompt_tokens * policy.input_weight + usage.completion_tokens * policy.output_weight
