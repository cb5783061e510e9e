"""Conversation truncation to a model's context budget.

Policy: recency first. A leading system message is always kept and its cost
is taken from the budget before anything else (even when it alone exceeds
the budget). The remaining messages are walked from newest to oldest; the
first one that does not fit, and everything older, is dropped. Callers that
need summarization instead must do it before calling this.
"""
import logging
from collections.abc import Sequence

from .models import Message, Role
from .tokens import TokenEstimator, estimate_tokens

logger = logging.getLogger("byok.chat")


def message_cost(
    message: Message,
    estimator: TokenEstimator = estimate_tokens,
    overhead: int = 0,
) -> int:
    if message.token_count is not None:
        return message.token_count + overhead
    return estimator(message.content) + overhead


def truncate_messages(
    messages: Sequence[Message],
    max_tokens: int,
    estimator: TokenEstimator = estimate_tokens,
    overhead: int = 0,
) -> list[Message]:
    """Select the most recent messages that fit in ``max_tokens``.

    Args:
        messages: Full conversation, oldest first.
        max_tokens: Token budget for the prompt.
        estimator: Used for messages without a ``token_count``.
        overhead: Per-message framing tokens added to every cost, the
            system message included.

    Returns:
        Selected messages in original order.
    """
    if not messages:
        return []
    head: list[Message] = []
    body = list(messages)
    remaining = max_tokens
    if body[0].role is Role.SYSTEM:
        system = body.pop(0)
        head.append(system)
        remaining -= message_cost(system, estimator, overhead)

    kept: list[Message] = []
    for message in reversed(body):
        cost = message_cost(message, estimator, overhead)
        if cost > remaining:
            break
        kept.append(message)
        remaining -= cost
    kept.reverse()

    dropped = len(body) - len(kept)
    if dropped:
        logger.debug(
            "Truncated %d of %d message(s) to fit %d tokens",
            dropped, len(messages), max_tokens,
        )
    return head + kept
