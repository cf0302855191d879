import logging
from pathlib import Path

import pytest

from src.chatrelay.errors import UnsupportedAction
from src.chatrelay.providers import CredentialCache, ProviderRegistry
from src.chatrelay.providers.openai import OpenAIProvider
from src.chatrelay.providers.perplexity import PerplexityProvider
from src.chatrelay.router import ProviderRoute, RequestRouter, load_config, parse_provider_defs
from src.chatrelay.errors import ProviderUnavailable

REPO_CONFIG_DIR = Path(__file__).resolve().parents[1] / "config"


def write_config(tmp_path, providers: str, pricing: str | None = None) -> str:
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    (config_dir / "providers.toml").write_text(providers, encoding="utf-8")
    (config_dir / "pricing.yaml").write_text(
        pricing
        if pricing is not None
        else "models:\n  gpt-4o: {input: 0.000005, output: 0.00002}\n  sonar: {input: 0.000001, output: 0.000001, search: 0.005}\n",
        encoding="utf-8",
    )
    return str(config_dir)


BASIC_PROVIDERS = """
[openai]
type = "openai"
auth_env = "OPENAI_API_KEY"
models = ["gpt-4o"]

[perplexity]
type = "perplexity"
base_url = "https://api.perplexity.ai"
auth_env = "PERPLEXITY_API_KEY"
models = ["sonar"]
"""


def test_load_config_builds_routes(tmp_path) -> None:
    cfg = load_config(write_config(tmp_path, BASIC_PROVIDERS))
    router = RequestRouter(cfg.providers)

    assert router.models() == ["gpt-4o", "sonar"]
    assert router.resolve("gpt-4o") == ProviderRoute(provider="openai", type="openai", model="gpt-4o")
    assert router.resolve("sonar").provider == "perplexity"


def test_resolve_rejects_unknown_action(tmp_path) -> None:
    router = RequestRouter(load_config(write_config(tmp_path, BASIC_PROVIDERS)).providers)

    with pytest.raises(UnsupportedAction) as excinfo:
        router.resolve("gpt-9")

    assert excinfo.value.message == "Unsupported action: gpt-9"
    assert excinfo.value.status_code == 400


def test_load_config_rejects_unknown_keys(tmp_path) -> None:
    config_dir = write_config(
        tmp_path,
        """
[openai]
type = "openai"
models = ["gpt-4o"]
rpm = 60
""",
    )

    with pytest.raises(ValueError) as excinfo:
        load_config(config_dir)

    message = str(excinfo.value)
    assert "openai" in message
    assert "rpm" in message


def test_load_config_rejects_empty_model_list(tmp_path) -> None:
    config_dir = write_config(tmp_path, '[openai]\ntype = "openai"\nmodels = []\n')

    with pytest.raises(ValueError) as excinfo:
        load_config(config_dir)

    assert "models" in str(excinfo.value)


def test_parse_provider_defs_rejects_reserved_cancel_model() -> None:
    with pytest.raises(ValueError) as excinfo:
        parse_provider_defs({"openai": {"type": "openai", "models": ["cancel"]}})

    assert "cancel" in str(excinfo.value)


def test_parse_provider_defs_rejects_model_claimed_twice() -> None:
    with pytest.raises(ValueError) as excinfo:
        parse_provider_defs(
            {
                "a": {"type": "openai", "models": ["gpt-4o"]},
                "b": {"type": "openai", "models": ["gpt-4o"]},
            }
        )

    message = str(excinfo.value)
    assert "'a'" in message and "'b'" in message


def test_unpriced_models_are_warned_not_rejected(tmp_path, caplog: pytest.LogCaptureFixture) -> None:
    config_dir = write_config(
        tmp_path, BASIC_PROVIDERS, pricing="models:\n  gpt-4o: {input: 0.000005, output: 0.00002}\n"
    )

    with caplog.at_level(logging.WARNING, logger="src.chatrelay.router"):
        cfg = load_config(config_dir)

    assert "sonar" not in cfg.pricing
    assert any("config.unpriced_models" in record.getMessage() for record in caplog.records)


def test_shipped_config_prices_every_model() -> None:
    cfg = load_config(str(REPO_CONFIG_DIR))

    routed = RequestRouter(cfg.providers).models()
    assert "gpt-4o" in routed and "sonar" in routed
    assert all(model in cfg.pricing for model in routed)


def test_provider_registry_builds_each_type(tmp_path) -> None:
    cfg = load_config(write_config(tmp_path, BASIC_PROVIDERS))
    registry = ProviderRegistry(cfg.providers)

    assert isinstance(registry.get("openai"), OpenAIProvider)
    assert isinstance(registry.get("perplexity"), PerplexityProvider)


def test_provider_registry_rejects_unknown_type(tmp_path) -> None:
    cfg = load_config(write_config(tmp_path, BASIC_PROVIDERS))
    cfg.providers["openai"].type = "mystery"  # type: ignore[assignment]

    with pytest.raises(ValueError) as excinfo:
        ProviderRegistry(cfg.providers)

    assert "Unknown provider type 'mystery' for provider 'openai'" in str(excinfo.value)


def test_credential_cache_reads_once() -> None:
    environ = {"OPENAI_API_KEY": "sk-first"}
    cache = CredentialCache(environ)
    cfg = parse_provider_defs({"openai": {"type": "openai", "auth_env": "OPENAI_API_KEY", "models": ["gpt-4o"]}})

    assert cache.get(cfg["openai"]) == "sk-first"
    environ["OPENAI_API_KEY"] = "sk-second"
    assert cache.get(cfg["openai"]) == "sk-first"

    cache.invalidate("OPENAI_API_KEY")
    assert cache.get(cfg["openai"]) == "sk-second"


def test_credential_cache_missing_key_is_provider_unavailable() -> None:
    cfg = parse_provider_defs({"openai": {"type": "openai", "auth_env": "OPENAI_API_KEY", "models": ["gpt-4o"]}})

    with pytest.raises(ProviderUnavailable) as excinfo:
        CredentialCache({}).get(cfg["openai"])

    assert "OPENAI_API_KEY" in excinfo.value.message
