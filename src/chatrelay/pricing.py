"""Per-exchange cost accounting.

Prices are expressed per token (and per search query for search-augmented
models) in dollars. Costs are rounded to ``COST_DECIMALS`` places so equal
inputs always produce the same stored value.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Sequence

import yaml
from pydantic import BaseModel, ConfigDict, Field, NonNegativeFloat, ValidationError

from . import tokens
from .errors import UnknownModel
from .types import StreamState

COST_DECIMALS = 8


@dataclass(frozen=True)
class ModelPrice:
    input: float
    output: float
    search: float = 0.0


class _PriceModel(BaseModel):
    input: NonNegativeFloat
    output: NonNegativeFloat
    search: NonNegativeFloat = 0.0

    model_config = ConfigDict(extra="forbid")


class _PriceTableModel(BaseModel):
    models: dict[str, _PriceModel] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")


class PriceTable:
    def __init__(self, prices: Mapping[str, ModelPrice]):
        self._prices = dict(prices)

    def __contains__(self, model: object) -> bool:
        return model in self._prices

    def models(self) -> list[str]:
        return sorted(self._prices)

    def get(self, model: str) -> ModelPrice:
        try:
            return self._prices[model]
        except KeyError:
            raise UnknownModel(f"Unknown model: {model}") from None

    @classmethod
    def from_mapping(cls, data: Any) -> "PriceTable":
        try:
            parsed = _PriceTableModel.model_validate(data or {})
        except ValidationError as exc:
            problems = []
            for error in exc.errors():
                location = " -> ".join(str(item) for item in error.get("loc", ())) or "<root>"
                problems.append(f"{location}: {error.get('msg', 'invalid value')}")
            raise ValueError("; ".join(problems)) from exc
        return cls(
            {
                name: ModelPrice(
                    input=float(price.input),
                    output=float(price.output),
                    search=float(price.search),
                )
                for name, price in parsed.models.items()
            }
        )


def load_price_table(path: str) -> PriceTable:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    return PriceTable.from_mapping(data)


def calculate_cost(
    prompt_tokens: int,
    completion_tokens: int,
    model: str,
    *,
    table: PriceTable,
    searches: int = 0,
) -> float:
    if prompt_tokens < 0 or completion_tokens < 0 or searches < 0:
        raise ValueError("token and search counts must be non-negative")
    price = table.get(model)
    unrounded = (
        prompt_tokens * price.input
        + completion_tokens * price.output
        + searches * price.search
    )
    return max(round(unrounded, COST_DECIMALS), 0.0)


def estimate_cost(
    messages: Sequence[Mapping[str, str]],
    response: str,
    model: str,
    *,
    table: PriceTable,
) -> float:
    # price lookup first so an unknown model fails before tokenizing
    table.get(model)
    prompt_tokens = tokens.count_message_tokens(messages, model)
    completion_tokens = tokens.count_tokens(response, model)
    return calculate_cost(prompt_tokens, completion_tokens, model, table=table)


def cost_for_exchange(
    state: StreamState,
    messages: Sequence[Mapping[str, str]],
    model: str,
    *,
    table: PriceTable,
) -> float:
    if state.usage_received:
        return calculate_cost(
            state.prompt_tokens,
            state.completion_tokens,
            model,
            table=table,
            searches=state.search_queries,
        )
    return estimate_cost(messages, state.response, model, table=table)
