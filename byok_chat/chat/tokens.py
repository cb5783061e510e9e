"""Approximate token counting.

Provider tokenizers are not available on the client; this heuristic of
roughly four characters per token (English prose, BPE tokenizers) is used
when a provider does not report usage.
"""
import math
from collections.abc import Callable, Iterable

TokenEstimator = Callable[[str], int]

CHARS_PER_TOKEN = 4
# per-message framing overhead (role markers, separators)
MESSAGE_OVERHEAD = 4


def estimate_tokens(text: str) -> int:
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_message_tokens(
    contents: Iterable[str], estimator: TokenEstimator = estimate_tokens
) -> int:
    """Estimate the prompt size of a sequence of message contents."""
    return sum(estimator(c) + MESSAGE_OVERHEAD for c in contents)
