"""Provider adapter interface, shared request/event types and HTTP transport.

Each provider conforms to ``ProviderAdapter``; there is no base class. The
adapter's job ends at opening the HTTP stream and mapping one server-sent
event to a provider-neutral ``StreamEvent``; everything downstream is
provider agnostic.
"""
import asyncio
import logging
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Optional, Protocol, runtime_checkable

import aiohttp
import orjson

from ..chat.models import Message, TokenUsage
from .errors import classify_error, classify_exception
from .sse import ServerSentEvent

logger = logging.getLogger("byok.providers")

DEFAULT_CONTEXT_WINDOW = 8192
DEFAULT_TIMEOUT = aiohttp.ClientTimeout(total=None, sock_connect=15, sock_read=120)


@dataclass(frozen=True, slots=True)
class ChatRequest:
    model_id: str
    messages: Sequence[Message]
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


@dataclass(frozen=True, slots=True)
class ModelInfo:
    id: str
    display_name: str
    context_window: int


@dataclass(frozen=True, slots=True)
class StreamEvent:
    """Provider-neutral view of one streamed event."""

    text: str = ""
    usage: Optional[TokenUsage] = None
    finish_reason: Optional[str] = None
    done: bool = False
    error: Optional[Any] = None


@runtime_checkable
class ProviderStream(Protocol):
    """Raw byte source for one streamed response.

    ``read`` returns ``b""`` once the transport is exhausted.
    """

    async def read(self) -> bytes:
        ...

    async def aclose(self) -> None:
        ...


@runtime_checkable
class ProviderAdapter(Protocol):
    provider_id: str
    display_name: str

    def detect_from_key_shape(self, candidate: str) -> Optional[str]:
        ...

    def context_window(self, model_id: str) -> int:
        ...

    async def list_models(self, credential: str) -> list[ModelInfo]:
        ...

    async def open_stream(self, request: ChatRequest, credential: str) -> ProviderStream:
        ...

    def parse_event(self, event: ServerSentEvent) -> Optional[StreamEvent]:
        ...


def lookup_context_window(windows: Mapping[str, int], model_id: str) -> int:
    """Exact match, else the longest known model id prefixing ``model_id``."""
    if model_id in windows:
        return windows[model_id]
    candidates = [m for m in windows if model_id.startswith(m)]
    if not candidates:
        return DEFAULT_CONTEXT_WINDOW
    return windows[max(candidates, key=len)]


def decode_event_json(event: ServerSentEvent) -> Optional[dict]:
    """Decode an event's JSON payload, ignoring non-object payloads."""
    try:
        payload = orjson.loads(event.data)
    except orjson.JSONDecodeError:
        logger.warning("Ignoring non-JSON stream event (%d bytes)", len(event.data))
        return None
    return payload if isinstance(payload, dict) else None


# ---------------------------------------------------------------------------
# HTTP transport
# ---------------------------------------------------------------------------

class HttpStream:
    """``ProviderStream`` over an aiohttp response."""

    def __init__(
        self,
        response: aiohttp.ClientResponse,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self._response = response
        # set only when this stream owns the session
        self._session = session
        self._closed = False

    async def read(self) -> bytes:
        if self._closed:
            return b""
        return await self._response.content.readany()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._response.close()
        if self._session is not None:
            await self._session.close()


async def open_sse_stream(
    provider_id: str,
    url: str,
    headers: Mapping[str, str],
    payload: Mapping[str, Any],
    session: Optional[aiohttp.ClientSession] = None,
    params: Optional[Mapping[str, str]] = None,
) -> HttpStream:
    """POST a streaming request and return the open response stream.

    Raises:
        ProviderError: On transport failure or any non-2xx response.
    """
    owned = session is None
    if owned:
        session = aiohttp.ClientSession(timeout=DEFAULT_TIMEOUT)
    try:
        response = await session.post(
            url,
            data=orjson.dumps(payload),
            params=params,
            headers={
                **headers,
                "Content-Type": "application/json",
                "Accept": "text/event-stream",
            },
        )
    except (aiohttp.ClientError, asyncio.TimeoutError) as err:
        if owned:
            await session.close()
        raise classify_exception(provider_id, err) from err
    if response.status >= 400:
        try:
            body = await response.read()
        finally:
            response.release()
            if owned:
                await session.close()
        error = classify_error(provider_id, response.status, body)
        logger.warning("Provider request failed: %s", error)
        raise error
    logger.debug("Stream opened: provider=%s status=%s", provider_id, response.status)
    return HttpStream(response, session if owned else None)


async def fetch_json(
    provider_id: str,
    url: str,
    headers: Mapping[str, str],
    session: Optional[aiohttp.ClientSession] = None,
    params: Optional[Mapping[str, str]] = None,
) -> dict:
    """GET a JSON document from a provider API.

    Raises:
        ProviderError: On transport failure or any non-2xx response.
    """
    owned = session is None
    if owned:
        session = aiohttp.ClientSession(timeout=DEFAULT_TIMEOUT)
    try:
        async with session.get(url, headers=headers, params=params) as response:
            body = await response.read()
            if response.status >= 400:
                raise classify_error(provider_id, response.status, body)
            return orjson.loads(body)
    except (aiohttp.ClientError, asyncio.TimeoutError) as err:
        raise classify_exception(provider_id, err) from err
    finally:
        if owned:
            await session.close()


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class ProviderRegistry:
    """Adapters keyed by provider id."""

    def __init__(self, adapters: Sequence[ProviderAdapter] = ()) -> None:
        self._adapters: dict[str, ProviderAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: ProviderAdapter) -> None:
        if not isinstance(adapter, ProviderAdapter):
            raise TypeError(f"{adapter!r} does not implement ProviderAdapter")
        self._adapters[adapter.provider_id] = adapter

    def get(self, provider_id: str) -> ProviderAdapter:
        try:
            return self._adapters[provider_id]
        except KeyError:
            raise KeyError(f"Unknown provider: {provider_id}") from None

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._adapters

    def __iter__(self) -> Iterator[ProviderAdapter]:
        return iter(self._adapters.values())

    def __len__(self) -> int:
        return len(self._adapters)

    def ids(self) -> list[str]:
        return list(self._adapters)

    def detect_provider(self, candidate: str) -> Optional[str]:
        """Guess which provider issued an API key from its shape."""
        candidate = candidate.strip()
        for adapter in self._adapters.values():
            provider_id = adapter.detect_from_key_shape(candidate)
            if provider_id is not None:
                return provider_id
        return None
