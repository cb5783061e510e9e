"""
StreamNormalizer — Uniform fragment stream over any provider's SSE wire format.

Pipeline per read::

    transport bytes -> SSEDecoder -> ServerSentEvent
                    -> adapter.parse_event -> StreamEvent -> ChatFragment

The sequence is lazy, finite and single-use. Exactly one transport read is in
flight at a time and fragments are yielded in arrival order. Cancellation is
cooperative: ``cancel()`` sets a flag observed before every read and every
yield; the transport is closed exactly once on every exit path.
"""
import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from typing import Optional

import aiohttp

from ..chat.models import ChatFragment, TokenUsage
from ..chat.tokens import TokenEstimator, estimate_tokens
from .base import ProviderStream, StreamEvent
from .errors import classify_error, classify_exception
from .sse import ServerSentEvent, SSEDecoder

logger = logging.getLogger("byok.providers")

EventParser = Callable[[ServerSentEvent], Optional[StreamEvent]]

_TRANSPORT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError)


class StreamNormalizer:
    """Turn a provider byte stream into ``ChatFragment`` objects.

    Args:
        stream: Open transport from a provider adapter.
        parse_event: Adapter hook mapping a server-sent event to a StreamEvent.
        provider_id: Used to classify failures.
        estimator: Token estimator used when the provider reports no usage.
        prompt_tokens: Estimated prompt size, used with ``estimator``.
    """

    def __init__(
        self,
        stream: ProviderStream,
        parse_event: EventParser,
        provider_id: str,
        estimator: TokenEstimator = estimate_tokens,
        prompt_tokens: int = 0,
    ) -> None:
        self._stream = stream
        self._parse = parse_event
        self._provider_id = provider_id
        self._estimator = estimator
        self._prompt_tokens = prompt_tokens
        self._cancelled = False
        self._closed = False
        self._started = False
        self._parts: list[str] = []
        self.usage: Optional[TokenUsage] = None
        self.usage_estimated = False
        self.finish_reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def text(self) -> str:
        """Text accumulated so far."""
        return "".join(self._parts)

    def cancel(self) -> None:
        """Request cancellation; takes effect at the next suspension point."""
        if not self._cancelled:
            logger.debug("Stream cancellation requested: provider=%s", self._provider_id)
        self._cancelled = True

    async def aclose(self) -> None:
        """Cancel and close the transport immediately."""
        self.cancel()
        await self._close()

    async def _close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._stream.aclose()

    def __aiter__(self) -> AsyncIterator[ChatFragment]:
        if self._started:
            raise RuntimeError("StreamNormalizer can only be consumed once")
        self._started = True
        return self._fragments()

    def _final_usage(self, reported: Optional[TokenUsage]) -> TokenUsage:
        if reported is not None:
            return reported
        self.usage_estimated = True
        return TokenUsage.of(self._prompt_tokens, self._estimator(self.text))

    async def _read(self) -> Optional[bytes]:
        """Read one chunk; None means the sequence must stop (cancelled)."""
        if self._cancelled:
            return None
        try:
            chunk = await self._stream.read()
        except _TRANSPORT_ERRORS as err:
            if self._cancelled:
                return None
            raise classify_exception(self._provider_id, err) from err
        if self._cancelled:
            return None
        return chunk

    async def _fragments(self) -> AsyncIterator[ChatFragment]:
        decoder = SSEDecoder()
        reported: Optional[TokenUsage] = None
        done = False
        try:
            while not done:
                chunk = await self._read()
                if chunk is None:
                    return
                events = decoder.feed(chunk) if chunk else decoder.flush()
                for sse in events:
                    event = self._parse(sse)
                    if event is None:
                        continue
                    if event.error is not None:
                        error = classify_error(self._provider_id, None, event.error)
                        logger.warning("Provider stream error: %s", error)
                        raise error
                    if event.usage is not None:
                        reported = event.usage if reported is None else reported.merge(event.usage)
                    if event.finish_reason:
                        self.finish_reason = event.finish_reason
                    if event.text:
                        self._parts.append(event.text)
                        if self._cancelled:
                            return
                        yield ChatFragment(delta_text=event.text)
                    if event.done:
                        done = True
                        break
                if not chunk:
                    break
            if self._cancelled:
                return
            self.usage = self._final_usage(reported)
            self.finish_reason = self.finish_reason or "stop"
            yield ChatFragment(usage_so_far=self.usage, finish_reason=self.finish_reason)
        finally:
            await self._close()
