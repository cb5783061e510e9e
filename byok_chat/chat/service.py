"""
ChatService — End-to-end send flow.

    conversation -> truncate to context window -> credential from vault
                 -> provider stream -> StreamNormalizer -> fragments
                 -> usage + cost recorded on the conversation

Security Note:
    The decrypted credential only lives in the local scope of ``start_turn``
    and inside the adapter's request headers. It is never logged or stored on
    the service.
"""
import logging
from collections.abc import AsyncIterator
from typing import Optional

from ..providers.base import ChatRequest, ModelInfo, ProviderRegistry
from ..providers.errors import ErrorKind, ProviderError
from ..providers.stream import StreamNormalizer
from ..vault.credential_vault import CredentialVault
from .models import ChatFragment, Conversation, Message, Role
from .pricing import CostEstimate, CostEstimator
from .tokens import MESSAGE_OVERHEAD, TokenEstimator, estimate_tokens
from .truncation import message_cost, truncate_messages

logger = logging.getLogger("byok.chat")

# completion budget kept free when the caller sets no max_tokens
DEFAULT_COMPLETION_RESERVE = 1024


class ChatTurn:
    """One in-flight assistant response.

    Iterate it for ChatFragments; call ``cancel()`` to abort. When the stream
    completes, the assistant message, token usage and cost are recorded on the
    conversation before the final fragment is yielded. A cancelled or failed
    turn records nothing.
    """

    def __init__(
        self,
        conversation: Conversation,
        normalizer: StreamNormalizer,
        costs: CostEstimator,
        sent: list[Message],
    ) -> None:
        self.conversation = conversation
        self.sent = sent
        self._normalizer = normalizer
        self._costs = costs
        self.message: Optional[Message] = None
        self.cost: Optional[CostEstimate] = None

    @property
    def completed(self) -> bool:
        return self.message is not None

    def cancel(self) -> None:
        self._normalizer.cancel()

    async def aclose(self) -> None:
        await self._normalizer.aclose()

    def __aiter__(self) -> AsyncIterator[ChatFragment]:
        return self._run()

    async def _run(self) -> AsyncIterator[ChatFragment]:
        async for fragment in self._normalizer:
            if fragment.is_final:
                self._record(fragment)
            yield fragment

    def _record(self, fragment: ChatFragment) -> None:
        conversation = self.conversation
        usage = fragment.usage_so_far
        self.message = conversation.append(
            Message.assistant(
                self._normalizer.text,
                token_count=usage.completion_tokens if usage else None,
            )
        )
        if usage is None:
            return
        self.cost = self._costs.estimate(
            conversation.provider_id, conversation.model_id, usage,
        )
        conversation.record_usage(usage, self.cost.cost, self.cost.available)
        logger.debug(
            "Turn complete: conversation=%s tokens=%d estimated=%s",
            conversation.id, usage.total_tokens, self._normalizer.usage_estimated,
        )


class ChatService:
    """Wires the vault, provider registry and cost estimator together."""

    def __init__(
        self,
        vault: CredentialVault,
        registry: ProviderRegistry,
        costs: Optional[CostEstimator] = None,
        estimator: TokenEstimator = estimate_tokens,
    ) -> None:
        self._vault = vault
        self._registry = registry
        self._costs = costs or CostEstimator()
        self._estimator = estimator

    async def add_credential(self, candidate: str, provider_id: Optional[str] = None) -> str:
        """Store an API key, detecting its provider from the key shape if needed.

        Raises:
            ValueError: If the provider cannot be determined.
            LockedError: If the vault is locked.
        """
        candidate = candidate.strip()
        provider_id = provider_id or self._registry.detect_provider(candidate)
        if provider_id is None or provider_id not in self._registry:
            raise ValueError("Unable to determine the provider for this API key")
        await self._vault.store_credential(provider_id, candidate)
        logger.info("Credential stored for provider=%s", provider_id)
        return provider_id

    async def _credential(self, provider_id: str) -> str:
        credential = await self._vault.retrieve_credential(provider_id)
        if credential is None:
            raise ProviderError(
                provider_id, ErrorKind.INVALID_CREDENTIAL, "No credential stored",
            )
        return credential

    async def list_models(self, provider_id: str) -> list[ModelInfo]:
        adapter = self._registry.get(provider_id)
        return await adapter.list_models(await self._credential(provider_id))

    async def send(
        self,
        conversation: Conversation,
        content: str,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        context_budget: Optional[int] = None,
    ) -> ChatTurn:
        """Append a user message and start streaming the reply."""
        conversation.append(
            Message.user(content, token_count=self._estimator(content))
        )
        return await self.start_turn(
            conversation,
            temperature=temperature,
            max_tokens=max_tokens,
            context_budget=context_budget,
        )

    async def start_turn(
        self,
        conversation: Conversation,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        context_budget: Optional[int] = None,
    ) -> ChatTurn:
        """Stream a reply to the conversation as it stands.

        Args:
            conversation: Conversation whose last message awaits a reply.
            temperature: Sampling temperature, provider default if None.
            max_tokens: Completion cap, also reserved out of the context window.
            context_budget: Prompt budget override; defaults to the model's
                context window minus the completion reserve.

        Raises:
            ProviderError: If no credential is stored or the request fails.
            LockedError: If the vault is locked.
        """
        adapter = self._registry.get(conversation.provider_id)
        if context_budget is None:
            reserve = max_tokens or DEFAULT_COMPLETION_RESERVE
            context_budget = max(0, adapter.context_window(conversation.model_id) - reserve)
        selected = truncate_messages(
            conversation.messages, context_budget, self._estimator, MESSAGE_OVERHEAD,
        )
        if not any(m.role is not Role.SYSTEM for m in selected):
            raise ProviderError(
                conversation.provider_id,
                ErrorKind.CONTEXT_LENGTH_EXCEEDED,
                "Latest message does not fit the context budget",
            )
        prompt_tokens = sum(
            message_cost(m, self._estimator, MESSAGE_OVERHEAD) for m in selected
        )
        request = ChatRequest(
            model_id=conversation.model_id,
            messages=selected,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        credential = await self._credential(conversation.provider_id)
        stream = await adapter.open_stream(request, credential)
        logger.debug(
            "Turn started: conversation=%s provider=%s messages=%d/%d",
            conversation.id, conversation.provider_id,
            len(selected), len(conversation.messages),
        )
        normalizer = StreamNormalizer(
            stream,
            adapter.parse_event,
            conversation.provider_id,
            estimator=self._estimator,
            prompt_tokens=prompt_tokens,
        )
        return ChatTurn(conversation, normalizer, self._costs, selected)
