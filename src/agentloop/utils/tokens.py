"""Token estimation utilities."""

from __future__ import annotations

# Average characters per token for English prose (GPT-style tokenization)
CHARS_PER_TOKEN = 4


def estimate_tokens(text: str | None) -> int:
    """Estimate the number of tokens in a text string.

    Uses the character-length heuristic of ~4 characters per token, rounded
    down. Cheap enough to call on every cache lookup.

    Args:
        text: The text to estimate tokens for.

    Returns:
        Estimated token count (0 for empty or missing text).
    """
    if not text:
        return 0
    return len(text) // CHARS_PER_TOKEN


__all__ = ["CHARS_PER_TOKEN", "estimate_tokens"]
