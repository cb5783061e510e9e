"""Chat core: messages, truncation, cost estimation and the send flow."""
from .models import ChatFragment, Conversation, Message, Role, TokenUsage
from .tokens import estimate_tokens
from .truncation import truncate_messages
from .pricing import (
    DEFAULT_PRICING,
    CostEstimate,
    CostEstimator,
    ModelPrice,
    PricingTable,
)
from .service import ChatService, ChatTurn

__all__ = [
    "ChatFragment",
    "Conversation",
    "Message",
    "Role",
    "TokenUsage",
    "estimate_tokens",
    "truncate_messages",
    "DEFAULT_PRICING",
    "CostEstimate",
    "CostEstimator",
    "ModelPrice",
    "PricingTable",
    "ChatService",
    "ChatTurn",
]
