"""
Unit tests for pricing calculations.

Tests endpoint classification, cost accuracy and rounding behavior.
"""

from datetime import datetime, timezone

import pytest

from usage_governor.config.loader import PricingConfig
from usage_governor.core.pricing import (
    CostCategory,
    calculate_cost,
    classify_endpoint,
    cost_for_record,
)
from usage_governor.storage.models import UsageRecord

PRICING = PricingConfig()


class TestEndpointClassification:
    """Test mapping endpoints to cost categories."""

    @pytest.mark.parametrize("endpoint, category", [
        ("/api/ai/text", CostCategory.TEXT_GENERATION),
        ("/api/ai/image", CostCategory.IMAGE_GENERATION),
        ("/api/game-content/flashcards", CostCategory.GAME_CONTENT),
        ("/api/users/me", CostCategory.OTHER),
    ])
    def test_classify(self, endpoint, category):
        assert classify_endpoint(endpoint) == category


class TestCostCalculation:
    """Test cost calculation accuracy and rounding."""

    def test_text_cost_uses_tokens_and_model(self):
        """2000 tokens on nova-premium: 2 * $0.002 * 2.0."""
        cost = calculate_cost("/api/ai/text", PRICING, model="nova-premium", tokens=2000)
        assert cost == pytest.approx(0.008)

    def test_text_cost_defaults_tokens(self):
        """Missing token count falls back to the configured default."""
        cost = calculate_cost("/api/ai/text", PRICING, model="nova-fast")
        assert cost == pytest.approx(0.002)

    def test_unknown_model_uses_unit_multiplier(self):
        cost = calculate_cost("/api/ai/text", PRICING, model="mystery", tokens=1000)
        assert cost == pytest.approx(0.002)

    def test_image_cost_uses_size_multiplier(self):
        cost = calculate_cost("/api/ai/image", PRICING, image_size="512x512")
        assert cost == pytest.approx(0.04)

    def test_image_cost_defaults_size(self):
        assert calculate_cost("/api/ai/image", PRICING) == pytest.approx(0.02)

    def test_game_content_flat_rate(self):
        assert calculate_cost("/api/game-content/quiz", PRICING) == pytest.approx(0.01)

    def test_other_endpoints_are_free(self):
        assert calculate_cost("/api/users/me", PRICING) == 0.0

    def test_rounding_is_up_to_six_places(self):
        """0.0000015 rounds up to 0.000002, never down."""
        pricing = PricingConfig(text_per_1k_tokens=0.0015)
        assert calculate_cost("/api/ai/text", pricing, tokens=1) == 0.000002

    def test_zero_tokens(self):
        assert calculate_cost("/api/ai/text", PRICING, tokens=0) == 0.0

    def test_negative_rate_rejected(self):
        with pytest.raises(ValueError, match="cannot be negative"):
            PricingConfig(image_per_image=-1)


class TestRecordCost:
    """Test pricing of usage records."""

    def _record(self, **overrides) -> UsageRecord:
        values = dict(
            subject="alice",
            endpoint="/api/ai/image",
            method="POST",
            timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc),
            response_time_ms=50.0,
            status_code=200,
        )
        values.update(overrides)
        return UsageRecord(**values)

    def test_supplied_cost_wins(self):
        assert cost_for_record(self._record(cost=1.25), PRICING) == 1.25

    def test_derived_cost(self):
        record = self._record(image_size="1024x1024")
        assert cost_for_record(record, PRICING) == pytest.approx(0.08)
