"""Cost derivation for LLM and tool nodes.

Resolution order for a finished node:

1. an explicit cost reported by the end event
2. token counts priced through the rate table
3. token counts estimated from text length (~4 characters per token),
   priced through the same table

Rates are USD per 1K tokens.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

from agenttrace.graph.schemas import Node, NodeType, TokenUsage

CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class ModelRate:
    """Input/output price per 1K tokens for one model."""

    input_per_1k: float
    output_per_1k: float

    def to_dict(self) -> dict[str, float]:
        return {"input_per_1k": self.input_per_1k, "output_per_1k": self.output_per_1k}


def _default_rates() -> dict[str, ModelRate]:
    return {
        "gpt-4": ModelRate(0.03, 0.06),
        "gpt-4-turbo": ModelRate(0.01, 0.03),
        "gpt-4o": ModelRate(0.005, 0.015),
        "gpt-4o-mini": ModelRate(0.00015, 0.0006),
        "gpt-3.5-turbo": ModelRate(0.0015, 0.002),
        "claude-3-opus": ModelRate(0.015, 0.075),
        "claude-3-sonnet": ModelRate(0.003, 0.015),
        "claude-3-haiku": ModelRate(0.00025, 0.00125),
    }


@dataclass
class CostRateTable:
    """Model pricing used when an event does not report its own cost.

    Lookup is exact first, then the longest known prefix (so dated model
    names like ``gpt-4-0613`` price as ``gpt-4``), then the default tier.
    """

    rates: dict[str, ModelRate] = field(default_factory=_default_rates)
    default_model: str = "gpt-3.5-turbo"

    def rate_for(self, model: str | None) -> ModelRate:
        name = (model or "").strip().lower()
        if name in self.rates:
            return self.rates[name]

        prefix_matches = [key for key in self.rates if name.startswith(key)]
        if prefix_matches:
            return self.rates[max(prefix_matches, key=len)]

        return self.rates.get(self.default_model) or ModelRate(0.0, 0.0)

    def price(self, tokens: TokenUsage, model: str | None = None) -> float:
        rate = self.rate_for(model)
        return (tokens.prompt / 1000) * rate.input_per_1k + (
            tokens.completion / 1000
        ) * rate.output_per_1k

    def to_dict(self) -> dict[str, Any]:
        return {
            "rates": {name: rate.to_dict() for name, rate in self.rates.items()},
            "default_model": self.default_model,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> CostRateTable:
        rates = data.get("rates")
        return cls(
            rates=(
                {name: ModelRate(**rate) for name, rate in rates.items()}
                if rates is not None
                else _default_rates()
            ),
            default_model=data.get("default_model", "gpt-3.5-turbo"),
        )


def estimate_tokens(text: str) -> int:
    """Rough token count for a piece of text."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_usage(node: Node) -> TokenUsage:
    """Token usage estimated from a node's input and output text."""
    return TokenUsage(
        prompt=estimate_tokens(node.input_text()),
        completion=estimate_tokens(node.output_text()),
    )


def _model_of(node: Node) -> str | None:
    return getattr(node.data, "model", None) or node.metadata.get("model")


def derive_cost(node: Node, table: CostRateTable) -> tuple[float | None, TokenUsage | None]:
    """Fill in cost and tokens for a finished node.

    Only LLM and tool nodes are priced; chain and custom nodes keep whatever
    the event reported.

    Returns:
        (cost, tokens) to store on the node.
    """
    if node.type not in (NodeType.LLM, NodeType.TOOL):
        return node.cost, node.tokens

    tokens = node.tokens
    if tokens is None or tokens.total == 0:
        tokens = estimate_usage(node)

    if node.cost is not None:
        return node.cost, tokens

    return table.price(tokens, _model_of(node)), tokens
