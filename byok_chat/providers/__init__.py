"""Streaming provider abstraction.

One adapter per AI provider, a registry keyed by provider id, and a stream
normalizer that turns any adapter's raw stream into ChatFragments.
"""
from typing import Optional

import aiohttp

from .base import (
    ChatRequest,
    HttpStream,
    ModelInfo,
    ProviderAdapter,
    ProviderRegistry,
    ProviderStream,
    StreamEvent,
)
from .errors import ErrorKind, ProviderError, classify_error, classify_exception
from .sse import ServerSentEvent, SSEDecoder
from .stream import StreamNormalizer
from .openai import OpenAIAdapter
from .anthropic import AnthropicAdapter
from .gemini import GeminiAdapter


def default_registry(session: Optional[aiohttp.ClientSession] = None) -> ProviderRegistry:
    """Registry with every built-in adapter, optionally sharing one HTTP session."""
    return ProviderRegistry([
        AnthropicAdapter(session=session),
        OpenAIAdapter(session=session),
        GeminiAdapter(session=session),
    ])


__all__ = [
    "ChatRequest",
    "HttpStream",
    "ModelInfo",
    "ProviderAdapter",
    "ProviderRegistry",
    "ProviderStream",
    "StreamEvent",
    "ErrorKind",
    "ProviderError",
    "classify_error",
    "classify_exception",
    "ServerSentEvent",
    "SSEDecoder",
    "StreamNormalizer",
    "OpenAIAdapter",
    "AnthropicAdapter",
    "GeminiAdapter",
    "default_registry",
]
