"""Provider error taxonomy and classification.

``classify_error`` is a pure function of provider identity and the raw
status/body: no network calls, no side effects. The core never retries by
itself; ``retryable`` is a hint for whoever owns retry policy.
"""
import asyncio
from enum import Enum
from typing import Any, Optional, Union

import aiohttp
import orjson


class ErrorKind(str, Enum):
    INVALID_CREDENTIAL = "invalid_credential"
    RATE_LIMITED = "rate_limited"
    INSUFFICIENT_QUOTA = "insufficient_quota"
    CONTEXT_LENGTH_EXCEEDED = "context_length_exceeded"
    NETWORK_FAILURE = "network_failure"
    UNKNOWN = "unknown"


RETRYABLE_KINDS = frozenset({ErrorKind.NETWORK_FAILURE, ErrorKind.RATE_LIMITED})


class ProviderError(Exception):
    """Classified provider failure."""

    def __init__(
        self,
        provider_id: str,
        kind: ErrorKind,
        message: str = "",
        status: Optional[int] = None,
    ) -> None:
        self.provider_id = provider_id
        self.kind = kind
        self.status = status
        self.message = message
        super().__init__(
            f"[{provider_id}] {kind.value}"
            + (f" (HTTP {status})" if status is not None else "")
            + (f": {message}" if message else "")
        )

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS


Body = Union[None, str, bytes, dict]

_QUOTA_MARKERS = (
    "insufficient_quota",
    "billing_hard_limit",
    "credit balance is too low",
    "exceeded your current quota",
)
_CONTEXT_MARKERS = (
    "context_length_exceeded",
    "maximum context length",
    "prompt is too long",
    "too many tokens",
    "exceeds the maximum number of tokens",
    "input token count",
)
_CREDENTIAL_MARKERS = (
    "invalid_api_key",
    "authentication_error",
    "permission_error",
    "api_key_invalid",
    "api key not valid",
    "incorrect api key",
    "unauthenticated",
    "permission_denied",
)
_RATE_MARKERS = (
    "rate_limit",
    "rate limit",
    "resource_exhausted",
    "overloaded_error",
)
_SERVER_MARKERS = (
    "server_error",
    "api_error",
    "internal error",
)


def _parse_body(body: Body) -> tuple[dict, str]:
    """Return the decoded JSON body (if any) and a lower-cased search text."""
    if body is None:
        return {}, ""
    if isinstance(body, dict):
        return body, orjson.dumps(body).decode("utf-8").lower()
    if isinstance(body, bytes):
        body = body.decode("utf-8", errors="replace")
    try:
        parsed = orjson.loads(body)
    except orjson.JSONDecodeError:
        return {}, body.lower()
    if not isinstance(parsed, dict):
        return {}, body.lower()
    return parsed, body.lower()


def _error_message(parsed: dict, text: str) -> str:
    err: Any = parsed.get("error", parsed)
    if isinstance(err, dict) and isinstance(err.get("message"), str):
        return err["message"]
    if isinstance(err, str):
        return err
    return text[:200]


def _classify_text(text: str) -> Optional[ErrorKind]:
    if any(m in text for m in _QUOTA_MARKERS):
        return ErrorKind.INSUFFICIENT_QUOTA
    if any(m in text for m in _CONTEXT_MARKERS):
        return ErrorKind.CONTEXT_LENGTH_EXCEEDED
    if any(m in text for m in _CREDENTIAL_MARKERS):
        return ErrorKind.INVALID_CREDENTIAL
    if any(m in text for m in _RATE_MARKERS):
        return ErrorKind.RATE_LIMITED
    if any(m in text for m in _SERVER_MARKERS):
        return ErrorKind.NETWORK_FAILURE
    return None


def classify_error(provider_id: str, status: Optional[int], body: Body = None) -> ProviderError:
    """Map a raw provider failure to the shared taxonomy.

    Args:
        provider_id: Provider that produced the failure.
        status: HTTP status, or None when no response was received (or the
            failure arrived inside an open stream).
        body: Raw error body (text, bytes or decoded JSON).

    Returns:
        ProviderError carrying the kind and retryable hint.
    """
    parsed, text = _parse_body(body)
    message = _error_message(parsed, text)
    from_body = _classify_text(text)

    if status is None:
        kind = from_body or (ErrorKind.NETWORK_FAILURE if not text else ErrorKind.UNKNOWN)
    elif status in (401, 403):
        kind = ErrorKind.INVALID_CREDENTIAL
    elif status == 402:
        kind = ErrorKind.INSUFFICIENT_QUOTA
    elif status == 413:
        kind = ErrorKind.CONTEXT_LENGTH_EXCEEDED
    elif status == 429:
        # OpenAI reports an exhausted balance as 429 insufficient_quota
        if from_body is ErrorKind.INSUFFICIENT_QUOTA:
            kind = ErrorKind.INSUFFICIENT_QUOTA
        else:
            kind = ErrorKind.RATE_LIMITED
    elif status == 529:
        kind = ErrorKind.RATE_LIMITED
    elif status in (408, 504) or status >= 500:
        kind = ErrorKind.NETWORK_FAILURE
    else:
        # Gemini rejects bad keys with 400 API_KEY_INVALID
        kind = from_body or ErrorKind.UNKNOWN
    return ProviderError(provider_id, kind, message=message, status=status)


def classify_exception(provider_id: str, exc: BaseException) -> ProviderError:
    """Map a transport-level exception raised while talking to a provider."""
    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, aiohttp.ClientResponseError):
        return classify_error(provider_id, exc.status, exc.message)
    if isinstance(exc, (aiohttp.ClientError, asyncio.TimeoutError, ConnectionError)):
        return ProviderError(
            provider_id, ErrorKind.NETWORK_FAILURE, message=str(exc) or type(exc).__name__,
        )
    return ProviderError(provider_id, ErrorKind.UNKNOWN, message=str(exc))
