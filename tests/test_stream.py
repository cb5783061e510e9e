"""
Tests for SSE framing and StreamNormalizer.

Tests cover:
- SSEDecoder line reassembly, comments, multi-line data, CRLF
- Normalization of OpenAI, Anthropic and Gemini streams
- Chunk-boundary invariance
- Estimated usage when the provider reports none
- Cooperative cancellation and single close
- In-stream error events and transport failures
"""
import aiohttp
import pytest

from byok_chat.chat.models import TokenUsage
from byok_chat.providers import (
    AnthropicAdapter,
    ErrorKind,
    GeminiAdapter,
    OpenAIAdapter,
    ProviderError,
    SSEDecoder,
    StreamNormalizer,
)

from conftest import FakeStream, split_every

OPENAI_STREAM = (
    b'data: {"id":"c1","choices":[{"index":0,"delta":{"role":"assistant","content":""},"finish_reason":null}]}\n\n'
    b'data: {"id":"c1","choices":[{"index":0,"delta":{"content":"Hello"},"finish_reason":null}]}\n\n'
    b'data: {"id":"c1","choices":[{"index":0,"delta":{"content":", w\xc3\xb6rld"},"finish_reason":null}]}\n\n'
    b'data: {"id":"c1","choices":[{"index":0,"delta":{},"finish_reason":"stop"}]}\n\n'
    b'data: {"id":"c1","choices":[],"usage":{"prompt_tokens":12,"completion_tokens":3,"total_tokens":15}}\n\n'
    b'data: [DONE]\n\n'
)

ANTHROPIC_STREAM = (
    b'event: message_start\n'
    b'data: {"type":"message_start","message":{"id":"m1","usage":{"input_tokens":25,"output_tokens":1}}}\n\n'
    b'event: ping\n'
    b'data: {"type":"ping"}\n\n'
    b'event: content_block_start\n'
    b'data: {"type":"content_block_start","index":0,"content_block":{"type":"text","text":""}}\n\n'
    b'event: content_block_delta\n'
    b'data: {"type":"content_block_delta","index":0,"delta":{"type":"text_delta","text":"Hi"}}\n\n'
    b'event: content_block_delta\n'
    b'data: {"type":"content_block_delta","index":0,"delta":{"type":"text_delta","text":" there"}}\n\n'
    b'event: content_block_stop\n'
    b'data: {"type":"content_block_stop","index":0}\n\n'
    b'event: message_delta\n'
    b'data: {"type":"message_delta","delta":{"stop_reason":"end_turn"},"usage":{"output_tokens":7}}\n\n'
    b'event: message_stop\n'
    b'data: {"type":"message_stop"}\n\n'
)

GEMINI_STREAM = (
    b'data: {"candidates":[{"content":{"parts":[{"text":"Bon"}],"role":"model"}}]}\r\n\r\n'
    b'data: {"candidates":[{"content":{"parts":[{"text":"jour"}],"role":"model"},"finishReason":"STOP"}],'
    b'"usageMetadata":{"promptTokenCount":5,"candidatesTokenCount":2,"totalTokenCount":7}}\r\n\r\n'
)

CASES = {
    "openai": (
        OpenAIAdapter(), OPENAI_STREAM, ["Hello", ", wörld"], TokenUsage.of(12, 3),
    ),
    "anthropic": (
        AnthropicAdapter(), ANTHROPIC_STREAM, ["Hi", " there"], TokenUsage.of(25, 7),
    ),
    "gemini": (
        GeminiAdapter(), GEMINI_STREAM, ["Bon", "jour"], TokenUsage.of(5, 2),
    ),
}


def normalizer_for(adapter, chunks, **kwargs) -> tuple[StreamNormalizer, FakeStream]:
    stream = kwargs.pop("stream", None) or FakeStream(chunks)
    return (
        StreamNormalizer(stream, adapter.parse_event, adapter.provider_id, **kwargs),
        stream,
    )


async def collect(normalizer):
    return [fragment async for fragment in normalizer]


# --- Test SSE Decoder ---

class TestSSEDecoder:
    """Tests for SSEDecoder."""

    def test_single_event(self):
        events = SSEDecoder().feed(b"data: hello\n\n")
        assert [e.data for e in events] == ["hello"]

    def test_line_split_across_chunks(self):
        """Test an event split mid-line is emitted once complete."""
        decoder = SSEDecoder()
        assert decoder.feed(b'data: {"a"') == []
        assert decoder.feed(b": 1}") == []
        events = decoder.feed(b"\n\n")
        assert [e.data for e in events] == ['{"a": 1}']

    def test_utf8_split_across_chunks(self):
        """Test a multi-byte character split between reads."""
        decoder = SSEDecoder()
        payload = "data: café\n\n".encode("utf-8")
        cut = payload.index(b"\xa9")
        assert decoder.feed(payload[:cut]) == []
        assert [e.data for e in decoder.feed(payload[cut:])] == ["café"]

    def test_comments_ignored(self):
        events = SSEDecoder().feed(b": keep-alive\n\ndata: x\n\n")
        assert [e.data for e in events] == ["x"]

    def test_multiline_data(self):
        events = SSEDecoder().feed(b"data: a\ndata: b\n\n")
        assert events[0].data == "a\nb"

    def test_event_and_id_fields(self):
        events = SSEDecoder().feed(b"event: ping\nid: 7\ndata: {}\n\n")
        assert events[0].event == "ping"
        assert events[0].id == "7"

    def test_crlf(self):
        events = SSEDecoder().feed(b"data: one\r\n\r\ndata: two\r\n\r\n")
        assert [e.data for e in events] == ["one", "two"]

    def test_no_space_after_colon(self):
        assert SSEDecoder().feed(b"data:x\n\n")[0].data == "x"

    def test_flush_pending(self):
        """Test an unterminated final event is emitted on flush."""
        decoder = SSEDecoder()
        assert decoder.feed(b"data: tail") == []
        assert [e.data for e in decoder.flush()] == ["tail"]
        assert decoder.flush() == []


# --- Test Normalization ---

class TestNormalize:
    """Tests for provider stream normalization."""

    @pytest.mark.parametrize("provider", sorted(CASES))
    async def test_fragments(self, provider):
        adapter, raw, texts, usage = CASES[provider]
        normalizer, stream = normalizer_for(adapter, [raw])
        fragments = await collect(normalizer)

        assert [f.delta_text for f in fragments[:-1]] == texts
        final = fragments[-1]
        assert final.is_final
        assert final.finish_reason == "stop"
        assert final.usage_so_far == usage
        assert all(not f.is_final for f in fragments[:-1])
        assert normalizer.text == "".join(texts)
        assert normalizer.usage_estimated is False
        assert stream.close_calls == 1

    @pytest.mark.parametrize("provider", sorted(CASES))
    @pytest.mark.parametrize("size", [1, 3, 7, 64])
    async def test_chunk_boundaries(self, provider, size):
        """Test the fragment sequence does not depend on read boundaries."""
        adapter, raw, _, _ = CASES[provider]
        whole, _ = normalizer_for(adapter, [raw])
        pieces, _ = normalizer_for(adapter, split_every(raw, size))
        assert await collect(pieces) == await collect(whole)

    async def test_estimated_usage(self):
        """Test usage is estimated when the provider reports none."""
        raw = (
            b'data: {"choices":[{"delta":{"content":"abcdefgh"},"finish_reason":"stop"}]}\n\n'
            b"data: [DONE]\n\n"
        )
        normalizer, _ = normalizer_for(OpenAIAdapter(), [raw], prompt_tokens=10)
        fragments = await collect(normalizer)
        assert fragments[-1].usage_so_far == TokenUsage(
            prompt_tokens=10, completion_tokens=2, total_tokens=12,
        )
        assert normalizer.usage_estimated is True

    async def test_missing_finish_reason_defaults_to_stop(self):
        raw = b'data: {"candidates":[{"content":{"parts":[{"text":"x"}]}}]}\n\n'
        normalizer, _ = normalizer_for(GeminiAdapter(), [raw])
        fragments = await collect(normalizer)
        assert fragments[-1].finish_reason == "stop"

    async def test_non_json_event_skipped(self):
        raw = b"data: not-json\n\n" + OPENAI_STREAM
        normalizer, _ = normalizer_for(OpenAIAdapter(), [raw])
        fragments = await collect(normalizer)
        assert [f.delta_text for f in fragments[:-1]] == ["Hello", ", wörld"]

    async def test_single_use(self):
        normalizer, _ = normalizer_for(OpenAIAdapter(), [OPENAI_STREAM])
        await collect(normalizer)
        with pytest.raises(RuntimeError):
            aiter(normalizer)


# --- Test Cancellation ---

class TestCancellation:
    """Tests for cooperative cancellation."""

    async def test_no_fragments_after_cancel(self):
        normalizer, stream = normalizer_for(
            OpenAIAdapter(), split_every(OPENAI_STREAM, 16),
        )
        seen = []
        async for fragment in normalizer:
            seen.append(fragment)
            normalizer.cancel()
        assert [f.delta_text for f in seen] == ["Hello"]
        assert normalizer.cancelled
        assert stream.close_calls == 1

    async def test_cancel_before_start(self):
        normalizer, stream = normalizer_for(OpenAIAdapter(), [OPENAI_STREAM])
        normalizer.cancel()
        assert await collect(normalizer) == []
        assert stream.reads == 0
        assert stream.close_calls == 1

    async def test_aclose_after_break(self):
        """Test closing after the consumer stops early closes once."""
        normalizer, stream = normalizer_for(OpenAIAdapter(), [OPENAI_STREAM])
        async for _ in normalizer:
            break
        await normalizer.aclose()
        await normalizer.aclose()
        assert normalizer.closed
        assert stream.close_calls == 1

    async def test_cancel_idempotent(self):
        normalizer, _ = normalizer_for(OpenAIAdapter(), [OPENAI_STREAM])
        normalizer.cancel()
        normalizer.cancel()
        assert normalizer.cancelled


# --- Test Stream Failures ---

class TestStreamErrors:
    """Tests for errors surfacing mid-stream."""

    async def test_error_event(self):
        raw = (
            ANTHROPIC_STREAM.split(b"event: content_block_stop")[0]
            + b"event: error\n"
            b'data: {"type":"error","error":{"type":"overloaded_error","message":"Overloaded"}}\n\n'
        )
        normalizer, stream = normalizer_for(AnthropicAdapter(), [raw])
        seen = []
        with pytest.raises(ProviderError) as exc:
            async for fragment in normalizer:
                seen.append(fragment.delta_text)
        assert seen == ["Hi", " there"]
        assert exc.value.kind is ErrorKind.RATE_LIMITED
        assert exc.value.retryable
        assert exc.value.provider_id == "anthropic"
        assert stream.close_calls == 1

    async def test_openai_error_event(self):
        raw = b'data: {"error":{"message":"You exceeded your current quota","type":"insufficient_quota"}}\n\n'
        normalizer, _ = normalizer_for(OpenAIAdapter(), [raw])
        with pytest.raises(ProviderError) as exc:
            await collect(normalizer)
        assert exc.value.kind is ErrorKind.INSUFFICIENT_QUOTA
        assert not exc.value.retryable

    async def test_transport_error(self):
        """Test a dropped connection becomes a retryable network failure."""
        adapter = OpenAIAdapter()
        first = OPENAI_STREAM.split(b"\n\n")[1] + b"\n\n"
        stream = FakeStream([first], error=aiohttp.ClientConnectionError("reset"))
        normalizer, _ = normalizer_for(adapter, [], stream=stream)
        seen = []
        with pytest.raises(ProviderError) as exc:
            async for fragment in normalizer:
                seen.append(fragment.delta_text)
        assert seen == ["Hello"]
        assert exc.value.kind is ErrorKind.NETWORK_FAILURE
        assert exc.value.retryable
        assert stream.close_calls == 1
