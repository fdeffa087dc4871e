"""Per-model token pricing and cost derivation."""

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

import structlog

from ..domain.models import CostBreakdown, TokenUsage

logger = structlog.get_logger()

PER_MILLION = 1_000_000


@dataclass(frozen=True)
class ModelPrice:
    """USD per one million tokens."""

    input: float
    output: float
    cached: float = 0.0


FREE = ModelPrice(0.0, 0.0, 0.0)

DEFAULT_PRICES: Dict[str, Dict[str, ModelPrice]] = {
    "openai": {
        "gpt-4o": ModelPrice(2.50, 10.00, 1.25),
        "gpt-4o-mini": ModelPrice(0.15, 0.60, 0.075),
        "o3-mini": ModelPrice(1.10, 4.40, 0.55),
    },
    "gemini": {"*": FREE},
    "groq": {
        "llama-3.3-70b-versatile": ModelPrice(0.59, 0.79, 0.0),
    },
    "error_fallback": {"*": FREE},
}

FALLBACK_PRICE = DEFAULT_PRICES["openai"]["gpt-4o"]


class PricingTable:
    """Looks up a (provider, model) price, then the provider wildcard, then a default row."""

    def __init__(self, prices: Optional[Dict[str, Dict[str, ModelPrice]]] = None, default: ModelPrice = FALLBACK_PRICE):
        self.prices = prices if prices is not None else DEFAULT_PRICES
        self.default = default

    @classmethod
    def from_file(cls, path: str) -> "PricingTable":
        raw = json.loads(Path(path).read_text(encoding="utf-8"))
        prices = {
            provider: {model: ModelPrice(**row) for model, row in models.items()}
            for provider, models in raw.items()
        }
        logger.info("pricing_table_loaded", path=path, providers=sorted(prices))
        return cls(prices)

    def price_for(self, provider: str, model: str) -> ModelPrice:
        models = self.prices.get(provider, {})
        if model in models:
            return models[model]
        if "*" in models:
            return models["*"]
        logger.debug("pricing_default_row_used", provider=provider, model=model)
        return self.default

    def cost(self, provider: str, model: str, tokens: TokenUsage) -> CostBreakdown:
        """Cached tokens bill at the cached rate; thinking tokens bill as output."""
        price = self.price_for(provider, model)
        uncached = max(tokens.input - tokens.cached, 0)
        input_cost = uncached / PER_MILLION * price.input
        cached_cost = tokens.cached / PER_MILLION * price.cached
        output_cost = (tokens.output + tokens.thinking) / PER_MILLION * price.output
        return CostBreakdown(
            input=input_cost,
            output=output_cost,
            cached=cached_cost,
            total=input_cost + output_cost + cached_cost,
            currency="USD",
        )
