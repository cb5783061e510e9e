"""Google Gemini adapter (``streamGenerateContent`` with ``alt=sse``).

Gemini sends no explicit done marker; the stream ends when the connection
closes.
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

CONTEXT_WINDOWS = {
    "gemini-1.5-pro": 2_097_152,
    "gemini-1.5-flash": 1_048_576,
    "gemini-2.0-flash": 1_048_576,
    "gemini-1.0-pro": 32_760,
}
_FINISH_REASONS = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
}


class GeminiAdapter:
    provider_id = "gemini"
    display_name = "Google Gemini"

    def __init__(
        self,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._session = session

    def detect_from_key_shape(self, candidate: str) -> Optional[str]:
        if candidate.startswith("AIza") and len(candidate) == 39:
            return self.provider_id
        return None

    def context_window(self, model_id: str) -> int:
        return lookup_context_window(CONTEXT_WINDOWS, model_id)

    @staticmethod
    def _headers(credential: str) -> dict[str, str]:
        return {"x-goog-api-key": credential}

    def build_payload(self, request: ChatRequest) -> dict:
        contents = [
            {
                "role": "model" if m.role is Role.ASSISTANT else "user",
                "parts": [{"text": m.content}],
            }
            for m in request.messages
            if m.role is not Role.SYSTEM
        ]
        payload: dict = {"contents": contents}
        system = [
            {"text": m.content} for m in request.messages if m.role is Role.SYSTEM
        ]
        if system:
            payload["systemInstruction"] = {"parts": system}
        generation: dict = {}
        if request.temperature is not None:
            generation["temperature"] = request.temperature
        if request.max_tokens is not None:
            generation["maxOutputTokens"] = request.max_tokens
        if generation:
            payload["generationConfig"] = generation
        return payload

    async def list_models(self, credential: str) -> list[ModelInfo]:
        data = await fetch_json(
            self.provider_id,
            f"{self.base_url}/models",
            self._headers(credential),
            session=self._session,
        )
        models = []
        for item in data.get("models", []):
            if "generateContent" not in item.get("supportedGenerationMethods", []):
                continue
            model_id = item["name"].removeprefix("models/")
            models.append(
                ModelInfo(
                    id=model_id,
                    display_name=item.get("displayName") or model_id,
                    context_window=item.get("inputTokenLimit")
                    or self.context_window(model_id),
                )
            )
        return models

    async def open_stream(self, request: ChatRequest, credential: str) -> HttpStream:
        return await open_sse_stream(
            self.provider_id,
            f"{self.base_url}/models/{request.model_id}:streamGenerateContent",
            self._headers(credential),
            self.build_payload(request),
            session=self._session,
            params={"alt": "sse"},
        )

    def parse_event(self, event: ServerSentEvent) -> Optional[StreamEvent]:
        payload = decode_event_json(event)
        if payload is None:
            return None
        if "error" in payload:
            return StreamEvent(error=payload)
        text = ""
        finish_reason = None
        candidates = payload.get("candidates") or []
        if candidates:
            candidate = candidates[0]
            parts = (candidate.get("content") or {}).get("parts") or []
            text = "".join(p.get("text", "") for p in parts)
            reason = candidate.get("finishReason")
            if reason:
                finish_reason = _FINISH_REASONS.get(reason, reason.lower())
        usage = None
        meta = payload.get("usageMetadata")
        if meta:
            prompt = meta.get("promptTokenCount") or 0
            completion = meta.get("candidatesTokenCount") or 0
            usage = TokenUsage(
                prompt_tokens=prompt,
                completion_tokens=completion,
                total_tokens=meta.get("totalTokenCount") or prompt + completion,
            )
        return StreamEvent(text=text, usage=usage, finish_reason=finish_reason)
