"""Token arithmetic for chat message cost."""
from typing import Optional

from storage.models import TokenUsage
import config


def calculate_message_cost(tokens_used: Optional[TokenUsage]) -> float:
    """Estimated USD cost of one generation from its token usage."""
    if not tokens_used:
        return 0.0

    return (
        tokens_used.cached * config.CACHED_TOKEN_RATE
        + tokens_used.prompt * config.PROMPT_TOKEN_RATE
        + tokens_used.candidates * config.OUTPUT_TOKEN_RATE
    )
