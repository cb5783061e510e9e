"""
Cost estimation from a versioned pricing table.

Pricing data is configuration, not derived at runtime. The table maps
``providerId -> modelId -> {promptPricePerK, completionPricePerK}`` (USD per
1000 tokens) and can be swapped while the client runs.
"""
import logging
from pathlib import Path
from typing import Optional

import orjson
from pydantic import BaseModel, ConfigDict, Field

from ..exceptions import PricingUnavailable
from .models import TokenUsage

logger = logging.getLogger("byok.chat")


class ModelPrice(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    prompt_price_per_k: float = Field(alias="promptPricePerK", ge=0)
    completion_price_per_k: float = Field(alias="completionPricePerK", ge=0)


class PricingTable(BaseModel):
    """Versioned per-provider, per-model prices."""

    model_config = ConfigDict(frozen=True)

    version: str
    currency: str = "USD"
    providers: dict[str, dict[str, ModelPrice]] = Field(default_factory=dict)

    @classmethod
    def from_file(cls, path: str | Path) -> "PricingTable":
        """Load a table from a JSON file."""
        data = orjson.loads(Path(path).read_bytes())
        return cls.model_validate(data)

    def lookup(self, provider_id: str, model_id: str) -> Optional[ModelPrice]:
        """Exact model match, else the longest known model id prefixing it.

        Dated snapshots (``gpt-4o-2024-08-06``) resolve to their family entry.
        """
        models = self.providers.get(provider_id)
        if not models:
            return None
        if model_id in models:
            return models[model_id]
        candidates = [m for m in models if model_id.startswith(m)]
        if not candidates:
            return None
        return models[max(candidates, key=len)]


class CostEstimate(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    cost: float
    currency: str = "USD"
    pricing_version: Optional[str] = None
    unavailable: Optional[PricingUnavailable] = None

    @property
    def available(self) -> bool:
        return self.unavailable is None


DEFAULT_PRICING = PricingTable.model_validate({
    "version": "2025-01",
    "providers": {
        "openai": {
            "gpt-4o": {"promptPricePerK": 0.0025, "completionPricePerK": 0.01},
            "gpt-4o-mini": {"promptPricePerK": 0.00015, "completionPricePerK": 0.0006},
            "gpt-4-turbo": {"promptPricePerK": 0.01, "completionPricePerK": 0.03},
            "gpt-3.5-turbo": {"promptPricePerK": 0.0005, "completionPricePerK": 0.0015},
            "o1": {"promptPricePerK": 0.015, "completionPricePerK": 0.06},
            "o1-mini": {"promptPricePerK": 0.003, "completionPricePerK": 0.012},
        },
        "anthropic": {
            "claude-3-5-sonnet": {"promptPricePerK": 0.003, "completionPricePerK": 0.015},
            "claude-3-5-haiku": {"promptPricePerK": 0.0008, "completionPricePerK": 0.004},
            "claude-3-opus": {"promptPricePerK": 0.015, "completionPricePerK": 0.075},
            "claude-3-haiku": {"promptPricePerK": 0.00025, "completionPricePerK": 0.00125},
        },
        "gemini": {
            "gemini-1.5-pro": {"promptPricePerK": 0.00125, "completionPricePerK": 0.005},
            "gemini-1.5-flash": {"promptPricePerK": 0.000075, "completionPricePerK": 0.0003},
            "gemini-2.0-flash": {"promptPricePerK": 0.0001, "completionPricePerK": 0.0004},
        },
    },
})


class CostEstimator:
    """Maps token usage to an estimated cost.

    Never raises for unknown models: the estimate is zero and carries a
    PricingUnavailable signal.
    """

    def __init__(self, table: Optional[PricingTable] = None) -> None:
        self._table = table or DEFAULT_PRICING

    @property
    def table(self) -> PricingTable:
        return self._table

    def swap_table(self, table: PricingTable) -> None:
        """Replace the pricing table; later estimates use the new one."""
        logger.info(
            "Pricing table swapped: %s -> %s", self._table.version, table.version,
        )
        self._table = table

    def estimate(self, provider_id: str, model_id: str, usage: TokenUsage) -> CostEstimate:
        table = self._table
        price = table.lookup(provider_id, model_id)
        if price is None:
            signal = PricingUnavailable(provider_id, model_id)
            logger.warning("%s", signal)
            return CostEstimate(
                cost=0.0,
                currency=table.currency,
                pricing_version=table.version,
                unavailable=signal,
            )
        cost = (
            usage.prompt_tokens / 1000 * price.prompt_price_per_k
            + usage.completion_tokens / 1000 * price.completion_price_per_k
        )
        return CostEstimate(
            cost=cost, currency=table.currency, pricing_version=table.version,
        )
