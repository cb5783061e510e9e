"""
Tests for cost estimation.

Tests cover:
- Cost arithmetic from per-1k prices
- Unknown provider/model pairs (non-fatal)
- Dated model snapshot lookup
- Table swapping and loading from JSON
- Conversation usage accumulation
"""
import orjson
import pytest

from byok_chat.chat.models import Conversation, TokenUsage
from byok_chat.chat.pricing import CostEstimator, DEFAULT_PRICING, PricingTable
from byok_chat.exceptions import PricingUnavailable

TABLE = PricingTable.model_validate({
    "version": "test-1",
    "providers": {
        "openai": {
            "gpt-4o": {"promptPricePerK": 0.0025, "completionPricePerK": 0.01},
            "gpt-4o-mini": {"promptPricePerK": 0.00015, "completionPricePerK": 0.0006},
        },
    },
})


# --- Test Estimate ---

class TestCostEstimator:
    """Tests for CostEstimator.estimate."""

    def test_cost(self):
        estimate = CostEstimator(TABLE).estimate(
            "openai", "gpt-4o", TokenUsage.of(1000, 500),
        )
        assert estimate.cost == pytest.approx(0.0025 + 0.005)
        assert estimate.available
        assert estimate.pricing_version == "test-1"
        assert estimate.currency == "USD"

    def test_unknown_model(self):
        """Test an unknown pair costs zero and reports unavailability."""
        estimate = CostEstimator(TABLE).estimate(
            "openai", "mystery-model", TokenUsage.of(100, 100),
        )
        assert estimate.cost == 0.0
        assert not estimate.available
        assert isinstance(estimate.unavailable, PricingUnavailable)
        assert estimate.unavailable.model_id == "mystery-model"

    def test_unknown_provider(self):
        estimate = CostEstimator(TABLE).estimate("acme", "gpt-4o", TokenUsage.of(1, 1))
        assert estimate.unavailable.provider_id == "acme"

    def test_dated_snapshot_uses_longest_prefix(self):
        estimator = CostEstimator(TABLE)
        dated = estimator.estimate("openai", "gpt-4o-mini-2024-07-18", TokenUsage.of(1000, 0))
        assert dated.cost == pytest.approx(0.00015)

    def test_zero_usage(self):
        assert CostEstimator(TABLE).estimate("openai", "gpt-4o", TokenUsage()).cost == 0.0

    def test_default_table(self):
        estimator = CostEstimator()
        assert estimator.table is DEFAULT_PRICING
        for provider in ("openai", "anthropic", "gemini"):
            assert DEFAULT_PRICING.providers[provider]

    def test_swap_table(self):
        estimator = CostEstimator(TABLE)
        usage = TokenUsage.of(1000, 0)
        before = estimator.estimate("openai", "gpt-4o", usage)
        estimator.swap_table(PricingTable.model_validate({
            "version": "test-2",
            "providers": {
                "openai": {"gpt-4o": {"promptPricePerK": 1.0, "completionPricePerK": 1.0}},
            },
        }))
        after = estimator.estimate("openai", "gpt-4o", usage)
        assert before.cost == pytest.approx(0.0025)
        assert after.cost == pytest.approx(1.0)
        assert after.pricing_version == "test-2"


# --- Test Table Loading ---

class TestPricingTable:
    """Tests for PricingTable."""

    def test_from_file(self, tmp_path):
        path = tmp_path / "pricing.json"
        path.write_bytes(orjson.dumps({
            "version": "2025-02",
            "currency": "EUR",
            "providers": {
                "anthropic": {
                    "claude-3-5-sonnet": {
                        "promptPricePerK": 0.003,
                        "completionPricePerK": 0.015,
                    },
                },
            },
        }))
        table = PricingTable.from_file(path)
        assert table.version == "2025-02"
        assert table.currency == "EUR"
        price = table.lookup("anthropic", "claude-3-5-sonnet-20241022")
        assert price.completion_price_per_k == 0.015

    def test_negative_price_rejected(self):
        with pytest.raises(ValueError):
            PricingTable.model_validate({
                "version": "bad",
                "providers": {
                    "openai": {"x": {"promptPricePerK": -1, "completionPricePerK": 0}},
                },
            })


# --- Test Conversation Accounting ---

class TestConversationUsage:
    """Tests for Conversation.record_usage."""

    def test_accumulates(self):
        conversation = Conversation.start("openai", "gpt-4o", "hello")
        conversation.record_usage(TokenUsage.of(10, 5), 0.01)
        conversation.record_usage(TokenUsage.of(20, 5), 0.02)
        assert conversation.usage == TokenUsage.of(30, 10)
        assert conversation.estimated_cost == pytest.approx(0.03)
        assert conversation.pricing_available

    def test_unavailable_sticks(self):
        conversation = Conversation.start("openai", "gpt-4o", "hello")
        conversation.record_usage(TokenUsage.of(1, 1), 0.0, pricing_available=False)
        conversation.record_usage(TokenUsage.of(1, 1), 0.01)
        assert conversation.pricing_available is False

    def test_start_with_system_prompt(self):
        conversation = Conversation.start("openai", "gpt-4o", "hello", system_prompt="be brief")
        assert [m.role.value for m in conversation.messages] == ["system", "user"]
