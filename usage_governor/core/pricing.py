"""
Pricing calculations for usage records.

Derives the monetary cost of an operation from its endpoint category,
model, token count and image size.
"""

from decimal import ROUND_UP, Decimal
from enum import Enum
from typing import Optional

from usage_governor.config.loader import PricingConfig
from usage_governor.storage.models import UsageRecord

COST_QUANTUM = Decimal("0.000001")


class CostCategory(Enum):
    """Cost-bearing operation classes, keyed by endpoint path fragment."""
    TEXT_GENERATION = "text_generation"
    IMAGE_GENERATION = "image_generation"
    GAME_CONTENT = "game_content"
    OTHER = "other"


# Checked in order; first fragment contained in the endpoint wins.
_ENDPOINT_FRAGMENTS = (
    ("/text", CostCategory.TEXT_GENERATION),
    ("/image", CostCategory.IMAGE_GENERATION),
    ("/game-content", CostCategory.GAME_CONTENT),
)


def classify_endpoint(endpoint: str) -> CostCategory:
    """Map an endpoint path to its cost category."""
    for fragment, category in _ENDPOINT_FRAGMENTS:
        if fragment in endpoint:
            return category
    return CostCategory.OTHER


def calculate_cost(
    endpoint: str,
    pricing: PricingConfig,
    model: Optional[str] = None,
    tokens: Optional[int] = None,
    image_size: Optional[str] = None,
) -> float:
    """Calculate cost for one operation with conservative rounding.

    - text generation: tokens / 1000 * per-1k rate * model multiplier
      (token count defaults to ``pricing.default_tokens``)
    - image generation: per-image rate * size multiplier
    - game content: flat per-request rate
    - anything else: free

    Unknown models and sizes use a multiplier of 1.0.

    Args:
        endpoint: Endpoint or action path of the operation
        pricing: Rate configuration
        model: Model used, if any
        tokens: Tokens consumed, if known
        image_size: Requested image size, e.g. "512x512"

    Returns:
        Cost rounded UP to six decimal places
    """
    category = classify_endpoint(endpoint)

    if category == CostCategory.TEXT_GENERATION:
        token_count = Decimal(tokens if tokens is not None else pricing.default_tokens)
        multiplier = pricing.text_model_multipliers.get(
            model or pricing.default_text_model, 1.0
        )
        cost = (
            (token_count / Decimal("1000"))
            * Decimal(str(pricing.text_per_1k_tokens))
            * Decimal(str(multiplier))
        )
    elif category == CostCategory.IMAGE_GENERATION:
        multiplier = pricing.image_size_multipliers.get(
            image_size or pricing.default_image_size, 1.0
        )
        cost = Decimal(str(pricing.image_per_image)) * Decimal(str(multiplier))
    elif category == CostCategory.GAME_CONTENT:
        cost = Decimal(str(pricing.game_content_per_request))
    else:
        cost = Decimal("0")

    return float(cost.quantize(COST_QUANTUM, rounding=ROUND_UP))


def cost_for_record(record: UsageRecord, pricing: PricingConfig) -> float:
    """Cost of a usage record: the caller-supplied value, else the derived one."""
    if record.cost is not None:
        return record.cost
    return calculate_cost(
        record.endpoint,
        pricing,
        model=record.model,
        tokens=record.tokens,
        image_size=record.image_size,
    )
