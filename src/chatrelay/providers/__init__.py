import os
from typing import Dict, Mapping

from ..errors import ProviderUnavailable
from ..router import ProviderDef
from .base import BaseProvider, EventStream
from .openai import OpenAIProvider
from .perplexity import PerplexityProvider


class CredentialCache:
    """Fetch-once-then-reuse API keys, owned by one service instance."""

    def __init__(self, environ: Mapping[str, str] | None = None):
        self._environ = environ if environ is not None else os.environ
        self._keys: dict[str, str] = {}

    def get(self, defn: ProviderDef) -> str:
        env_name = defn.auth_env
        if not env_name:
            raise ProviderUnavailable(f"provider '{defn.name}' has no auth_env configured")
        cached = self._keys.get(env_name)
        if cached:
            return cached
        key = (self._environ.get(env_name) or "").strip()
        if not key:
            raise ProviderUnavailable(f"provider '{defn.name}' is missing credentials in {env_name}")
        self._keys[env_name] = key
        return key

    def invalidate(self, env_name: str) -> None:
        self._keys.pop(env_name, None)


class ProviderRegistry:
    _PROVIDER_FACTORIES: dict[str, type[BaseProvider]] = {
        "openai": OpenAIProvider,
        "perplexity": PerplexityProvider,
    }

    def __init__(self, providers: Dict[str, ProviderDef]):
        self.providers: dict[str, BaseProvider] = {}
        for name, d in providers.items():
            provider_type = (d.type or "").strip()
            factory = self._PROVIDER_FACTORIES.get(provider_type)
            if factory is None:
                display_type = provider_type or "<missing>"
                raise ValueError(
                    f"Unknown provider type '{display_type}' for provider '{name}'"
                )
            self.providers[name] = factory(d)

    def get(self, name: str) -> BaseProvider:
        return self.providers[name]

    async def aclose(self) -> None:
        for provider in self.providers.values():
            await provider.aclose()


__all__ = [
    "BaseProvider",
    "CredentialCache",
    "EventStream",
    "OpenAIProvider",
    "PerplexityProvider",
    "ProviderRegistry",
]
