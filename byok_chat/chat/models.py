"""Chat data models: messages, conversations, usage and stream fragments."""
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


class TokenUsage(BaseModel):
    """Prompt/completion token counts."""

    model_config = ConfigDict(frozen=True)

    prompt_tokens: int = Field(default=0, ge=0)
    completion_tokens: int = Field(default=0, ge=0)
    total_tokens: int = Field(default=0, ge=0)

    @classmethod
    def of(cls, prompt_tokens: int = 0, completion_tokens: int = 0) -> "TokenUsage":
        return cls(
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=prompt_tokens + completion_tokens,
        )

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
            total_tokens=self.total_tokens + other.total_tokens,
        )

    def merge(self, other: "TokenUsage") -> "TokenUsage":
        """Combine two partial reports of the same request (per-field max)."""
        prompt = max(self.prompt_tokens, other.prompt_tokens)
        completion = max(self.completion_tokens, other.completion_tokens)
        total = max(self.total_tokens, other.total_tokens, prompt + completion)
        return TokenUsage(
            prompt_tokens=prompt, completion_tokens=completion, total_tokens=total,
        )


class Message(BaseModel):
    """A single chat message. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str
    token_count: Optional[int] = Field(default=None, ge=0)
    timestamp: datetime = Field(default_factory=_utcnow)

    @classmethod
    def system(cls, content: str, **kwargs) -> "Message":
        return cls(role=Role.SYSTEM, content=content, **kwargs)

    @classmethod
    def user(cls, content: str, **kwargs) -> "Message":
        return cls(role=Role.USER, content=content, **kwargs)

    @classmethod
    def assistant(cls, content: str, **kwargs) -> "Message":
        return cls(role=Role.ASSISTANT, content=content, **kwargs)

    def revise(self, content: str) -> "Message":
        """Return an edited copy; the original is left untouched."""
        return Message(role=self.role, content=content)


class ChatFragment(BaseModel):
    """One incremental unit of a streamed response."""

    model_config = ConfigDict(frozen=True)

    delta_text: str = ""
    usage_so_far: Optional[TokenUsage] = None
    finish_reason: Optional[str] = None

    @property
    def is_final(self) -> bool:
        return self.finish_reason is not None


class Conversation(BaseModel):
    """Ordered messages exchanged with one provider model."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    provider_id: str
    model_id: str
    messages: list[Message] = Field(default_factory=list)
    usage: TokenUsage = Field(default_factory=TokenUsage)
    estimated_cost: float = 0.0
    pricing_available: bool = True

    @classmethod
    def start(
        cls,
        provider_id: str,
        model_id: str,
        first_message: str,
        system_prompt: Optional[str] = None,
    ) -> "Conversation":
        """Create a conversation from the first user message."""
        conversation = cls(provider_id=provider_id, model_id=model_id)
        if system_prompt:
            conversation.append(Message.system(system_prompt))
        conversation.append(Message.user(first_message))
        return conversation

    def append(self, message: Message) -> Message:
        self.messages.append(message)
        return message

    def record_usage(self, usage: TokenUsage, cost: float, pricing_available: bool = True) -> None:
        """Accumulate one request's usage and cost."""
        self.usage = self.usage + usage
        self.estimated_cost += cost
        if not pricing_available:
            self.pricing_available = False
