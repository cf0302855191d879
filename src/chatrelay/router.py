import logging
import os
import tomllib
from dataclasses import dataclass
from typing import Dict, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import UnsupportedAction
from .pricing import PriceTable, load_price_table

logger = logging.getLogger(__name__)

PROVIDERS_FILE = "providers.toml"
PRICING_FILE = "pricing.yaml"
CANCEL_ACTION = "cancel"


@dataclass
class ProviderDef:
    name: str
    type: Literal["openai", "perplexity"]
    base_url: str
    auth_env: str | None
    models: tuple[str, ...]
    timeout_s: float = 60.0


@dataclass
class LoadedConfig:
    providers: Dict[str, ProviderDef]
    pricing: PriceTable


@dataclass(frozen=True)
class ProviderRoute:
    provider: str
    type: str
    model: str


class _ProviderModel(BaseModel):
    type: Literal["openai", "perplexity"] = "openai"
    base_url: str = ""
    auth_env: str | None = None
    models: list[str] = Field(min_length=1)
    timeout_s: float = Field(default=60.0, gt=0)

    model_config = ConfigDict(extra="forbid")

    @field_validator("models")
    @classmethod
    def _strip_models(cls, value: list[str]) -> list[str]:
        cleaned = [item.strip() for item in value if item and item.strip()]
        if not cleaned:
            raise ValueError("provider must list at least one model")
        return cleaned


def _format_validation_error(name: str, exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = " -> ".join(str(item) for item in (name, *error.get("loc", ())))
        problems.append(f"{location}: {error.get('msg', 'invalid value')}")
    return "; ".join(problems)


def parse_provider_defs(data: dict[str, object]) -> Dict[str, ProviderDef]:
    providers: Dict[str, ProviderDef] = {}
    owners: dict[str, str] = {}
    for name, raw in data.items():
        try:
            parsed = _ProviderModel.model_validate(raw)
        except ValidationError as exc:
            raise ValueError(_format_validation_error(name, exc)) from exc
        for model in parsed.models:
            if model == CANCEL_ACTION:
                raise ValueError(f"Provider '{name}' may not declare reserved model '{model}'")
            previous = owners.get(model)
            if previous is not None:
                raise ValueError(
                    "Model '{model}' is declared by both '{first}' and '{second}'".format(
                        model=model, first=previous, second=name
                    )
                )
            owners[model] = name
        providers[name] = ProviderDef(
            name=name,
            type=parsed.type,
            base_url=parsed.base_url,
            auth_env=parsed.auth_env,
            models=tuple(parsed.models),
            timeout_s=float(parsed.timeout_s),
        )
    return providers


def load_config(config_dir: str) -> LoadedConfig:
    prov_path = os.path.join(config_dir, PROVIDERS_FILE)
    with open(prov_path, "rb") as f:
        prov_data = tomllib.load(f)
    providers = parse_provider_defs(prov_data)
    pricing_path = os.path.join(config_dir, PRICING_FILE)
    pricing = load_price_table(pricing_path)
    validate_pricing(providers, pricing)
    return LoadedConfig(providers=providers, pricing=pricing)


def validate_pricing(providers: Dict[str, ProviderDef], pricing: PriceTable) -> list[str]:
    # unpriced models stay routable; their exchanges fail with UnknownModel at cost time
    unpriced: list[str] = []
    for name, defn in providers.items():
        missing = [model for model in defn.models if model not in pricing]
        if missing:
            logger.warning(
                "config.unpriced_models provider=%s models=%s", name, ",".join(missing)
            )
            unpriced.extend(missing)
    return unpriced


class RequestRouter:
    def __init__(self, providers: Dict[str, ProviderDef]):
        self.providers = providers
        self._by_model: dict[str, ProviderDef] = {}
        for defn in providers.values():
            for model in defn.models:
                self._by_model[model] = defn

    def models(self) -> list[str]:
        return sorted(self._by_model)

    def resolve(self, action: str) -> ProviderRoute:
        defn = self._by_model.get(action)
        if defn is None:
            raise UnsupportedAction(f"Unsupported action: {action}")
        return ProviderRoute(provider=defn.name, type=defn.type, model=action)
