"""OpenAI chat completions adapter."""
from typing import Optional

import aiohttp

from ..chat.models import TokenUsage
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

CONTEXT_WINDOWS = {
    "gpt-4o": 128_000,
    "gpt-4o-mini": 128_000,
    "gpt-4-turbo": 128_000,
    "gpt-4": 8_192,
    "gpt-3.5-turbo": 16_385,
    "o1": 200_000,
    "o1-mini": 128_000,
    "o3-mini": 200_000,
}
_CHAT_MODEL_PREFIXES = ("gpt-", "o1", "o3", "chatgpt-")


class OpenAIAdapter:
    provider_id = "openai"
    display_name = "OpenAI"

    def __init__(
        self,
        base_url: str = "https://api.openai.com/v1",
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._session = session

    def detect_from_key_shape(self, candidate: str) -> Optional[str]:
        if candidate.startswith("sk-") and not candidate.startswith("sk-ant-"):
            return self.provider_id
        return None

    def context_window(self, model_id: str) -> int:
        return lookup_context_window(CONTEXT_WINDOWS, model_id)

    @staticmethod
    def _headers(credential: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {credential}"}

    def build_payload(self, request: ChatRequest) -> dict:
        payload: dict = {
            "model": request.model_id,
            "messages": [
                {"role": m.role.value, "content": m.content} for m in request.messages
            ],
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if request.max_tokens is not None:
            payload["max_tokens"] = request.max_tokens
        return payload

    async def list_models(self, credential: str) -> list[ModelInfo]:
        data = await fetch_json(
            self.provider_id,
            f"{self.base_url}/models",
            self._headers(credential),
            session=self._session,
        )
        models = [
            ModelInfo(
                id=item["id"],
                display_name=item["id"],
                context_window=self.context_window(item["id"]),
            )
            for item in data.get("data", [])
            if item.get("id", "").startswith(_CHAT_MODEL_PREFIXES)
        ]
        return sorted(models, key=lambda m: m.id)

    async def open_stream(self, request: ChatRequest, credential: str) -> HttpStream:
        return await open_sse_stream(
            self.provider_id,
            f"{self.base_url}/chat/completions",
            self._headers(credential),
            self.build_payload(request),
            session=self._session,
        )

    def parse_event(self, event: ServerSentEvent) -> Optional[StreamEvent]:
        if event.data.strip() == "[DONE]":
            return StreamEvent(done=True)
        payload = decode_event_json(event)
        if payload is None:
            return None
        if "error" in payload:
            return StreamEvent(error=payload)
        text = ""
        finish_reason = None
        choices = payload.get("choices") or []
        if choices:
            choice = choices[0]
            text = (choice.get("delta") or {}).get("content") or ""
            finish_reason = choice.get("finish_reason")
        usage = None
        if payload.get("usage"):
            raw = payload["usage"]
            usage = TokenUsage(
                prompt_tokens=raw.get("prompt_tokens", 0),
                completion_tokens=raw.get("completion_tokens", 0),
                total_tokens=raw.get("total_tokens", 0),
            )
        return StreamEvent(text=text, usage=usage, finish_reason=finish_reason)
