"""Anthropic messages API adapter.

The stream is a sequence of typed events: ``message_start`` carries input
usage, ``content_block_delta`` carries text, ``message_delta`` carries the
stop reason and output usage, ``message_stop`` ends the message.
"""
from typing import Optional

import aiohttp

from ..chat.models import Role, TokenUsage
from .base import (
    ChatRequest,
    HttpStream,
    ModelInfo,
    StreamEvent,
    decode_event_json,
    fetch_json,
    lookup_context_window,
    open_sse_stream,
)
from .sse import ServerSentEvent

API_VERSION = "2023-06-01"
DEFAULT_MAX_TOKENS = 4096

CONTEXT_WINDOWS = {
    "claude-": 200_000,
    "claude-2.0": 100_000,
}
_STOP_REASONS = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
    "tool_use": "tool_calls",
}


def _usage(raw: Optional[dict]) -> Optional[TokenUsage]:
    if not raw:
        return None
    return TokenUsage.of(
        raw.get("input_tokens") or 0, raw.get("output_tokens") or 0,
    )


class AnthropicAdapter:
    provider_id = "anthropic"
    display_name = "Anthropic"

    def __init__(
        self,
        base_url: str = "https://api.anthropic.com/v1",
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._session = session

    def detect_from_key_shape(self, candidate: str) -> Optional[str]:
        if candidate.startswith("sk-ant-"):
            return self.provider_id
        return None

    def context_window(self, model_id: str) -> int:
        return lookup_context_window(CONTEXT_WINDOWS, model_id)

    @staticmethod
    def _headers(credential: str) -> dict[str, str]:
        return {
            "x-api-key": credential,
            "anthropic-version": API_VERSION,
            # requests come straight from the user's device
            "anthropic-dangerous-direct-browser-access": "true",
        }

    def build_payload(self, request: ChatRequest) -> dict:
        system = "\n\n".join(
            m.content for m in request.messages if m.role is Role.SYSTEM
        )
        payload: dict = {
            "model": request.model_id,
            "messages": [
                {"role": m.role.value, "content": m.content}
                for m in request.messages
                if m.role is not Role.SYSTEM
            ],
            "max_tokens": request.max_tokens or DEFAULT_MAX_TOKENS,
            "stream": True,
        }
        if system:
            payload["system"] = system
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        return payload

    async def list_models(self, credential: str) -> list[ModelInfo]:
        data = await fetch_json(
            self.provider_id,
            f"{self.base_url}/models",
            self._headers(credential),
            session=self._session,
        )
        return [
            ModelInfo(
                id=item["id"],
                display_name=item.get("display_name") or item["id"],
                context_window=self.context_window(item["id"]),
            )
            for item in data.get("data", [])
        ]

    async def open_stream(self, request: ChatRequest, credential: str) -> HttpStream:
        return await open_sse_stream(
            self.provider_id,
            f"{self.base_url}/messages",
            self._headers(credential),
            self.build_payload(request),
            session=self._session,
        )

    def parse_event(self, event: ServerSentEvent) -> Optional[StreamEvent]:
        payload = decode_event_json(event)
        if payload is None:
            return None
        kind = payload.get("type") or event.event
        if kind == "error":
            return StreamEvent(error=payload)
        if kind == "message_start":
            return StreamEvent(usage=_usage((payload.get("message") or {}).get("usage")))
        if kind == "content_block_delta":
            delta = payload.get("delta") or {}
            if delta.get("type") == "text_delta":
                return StreamEvent(text=delta.get("text") or "")
            return None
        if kind == "message_delta":
            stop = (payload.get("delta") or {}).get("stop_reason")
            return StreamEvent(
                usage=_usage(payload.get("usage")),
                finish_reason=_STOP_REASONS.get(stop, stop) if stop else None,
            )
        if kind == "message_stop":
            return StreamEvent(done=True)
        # ping, content_block_start, content_block_stop
        return None
