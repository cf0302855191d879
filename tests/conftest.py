"""Shared fakes for the chat relay tests and project import setup."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Any, Iterable

import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
ROOT_STR = str(ROOT_DIR)
if ROOT_STR not in sys.path:
    sys.path.insert(0, ROOT_STR)

from src.chatrelay.config import Settings  # noqa: E402
from src.chatrelay.errors import ConnectionGone  # noqa: E402
from src.chatrelay.pricing import ModelPrice, PriceTable  # noqa: E402
from src.chatrelay.providers import CredentialCache, ProviderRegistry  # noqa: E402
from src.chatrelay.providers.base import BaseProvider, EventStream  # noqa: E402
from src.chatrelay.router import ProviderDef, RequestRouter  # noqa: E402
from src.chatrelay.service import ChatService  # noqa: E402
from src.chatrelay.sessions import InMemoryConnectionStore  # noqa: E402
from src.chatrelay import tokens  # noqa: E402
from src.chatrelay.transcripts import InMemoryTranscriptStore  # noqa: E402
from src.chatrelay.types import StreamEvent  # noqa: E402


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


class CharEncoding:
    """One token per character; keeps tests off the tokenizer download."""

    def encode(self, text: str, **kwargs: Any) -> list[int]:
        return [ord(ch) for ch in text]


@pytest.fixture(autouse=True)
def offline_tokenizer(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(tokens, "_encoding_for", lambda model: CharEncoding())


class RecordingGateway:
    def __init__(self) -> None:
        self.sent: list[tuple[str, dict[str, Any]]] = []
        self.gone: set[str] = set()

    async def send(self, connection_id: str, payload: dict[str, Any]) -> None:
        if connection_id in self.gone:
            raise ConnectionGone(f"connection {connection_id} is closed")
        self.sent.append((connection_id, payload))

    def payloads(self, connection_id: str | None = None) -> list[dict[str, Any]]:
        return [
            payload for target, payload in self.sent if connection_id is None or target == connection_id
        ]


class ScriptedProvider(BaseProvider):
    """Replays a fixed list of events, optionally slowly or ending in an error."""

    def __init__(
        self,
        defn: ProviderDef,
        events: Iterable[StreamEvent] = (),
        *,
        delay: float = 0.0,
        error: Exception | None = None,
        open_error: Exception | None = None,
        hang: bool = False,
        title: str = "A Short Title",
        complete_error: Exception | None = None,
    ) -> None:
        super().__init__(defn)
        self.events = list(events)
        self.delay = delay
        self.error = error
        self.open_error = open_error
        self.hang = hang
        self.title = title
        self.complete_error = complete_error
        self.stream_calls: list[dict[str, Any]] = []
        self.complete_calls: list[dict[str, Any]] = []
        self.closed_streams = 0

    async def _events(self):
        for event in self.events:
            if self.delay:
                await asyncio.sleep(self.delay)
            yield event
        if self.error is not None:
            raise self.error
        if self.hang:
            await asyncio.Event().wait()

    async def _on_close(self) -> None:
        self.closed_streams += 1

    async def open_stream(self, api_key: str, model: str, messages: list[dict[str, Any]]) -> EventStream:
        self.stream_calls.append({"api_key": api_key, "model": model, "messages": messages})
        if self.open_error is not None:
            raise self.open_error
        return EventStream(self._events(), on_close=self._on_close)

    async def complete(self, api_key: str, model: str, messages: list[dict[str, Any]]) -> str:
        self.complete_calls.append({"api_key": api_key, "model": model, "messages": messages})
        if self.complete_error is not None:
            raise self.complete_error
        return self.title


OPENAI_DEF = ProviderDef(
    name="openai",
    type="openai",
    base_url="",
    auth_env="OPENAI_API_KEY",
    models=("gpt-4o", "gpt-4o-mini"),
)
PERPLEXITY_DEF = ProviderDef(
    name="perplexity",
    type="perplexity",
    base_url="https://api.perplexity.ai",
    auth_env="PERPLEXITY_API_KEY",
    models=("sonar",),
)

TEST_PRICES = PriceTable(
    {
        "gpt-4o": ModelPrice(input=0.000005, output=0.00002),
        "gpt-4o-mini": ModelPrice(input=0.00000015, output=0.0000006),
        "sonar": ModelPrice(input=0.000001, output=0.000001, search=0.005),
    }
)


def build_service(
    *,
    openai: ScriptedProvider | None = None,
    perplexity: ScriptedProvider | None = None,
    settings: Settings | None = None,
    gateway: Any = None,
    pricing: PriceTable = TEST_PRICES,
    namer_enabled: bool = False,
) -> ChatService:
    providers = {OPENAI_DEF.name: OPENAI_DEF, PERPLEXITY_DEF.name: PERPLEXITY_DEF}
    registry = ProviderRegistry(providers)
    registry.providers["openai"] = openai or ScriptedProvider(OPENAI_DEF)
    registry.providers["perplexity"] = perplexity or ScriptedProvider(PERPLEXITY_DEF)
    settings = settings or Settings(
        metrics_dir="",
        stream_timeout_s=5.0,
        cancel_poll_interval_s=0.01,
        namer_enabled=namer_enabled,
    )
    return ChatService(
        settings=settings,
        router=RequestRouter(providers),
        providers=registry,
        pricing=pricing,
        gateway=gateway or RecordingGateway(),
        connections=InMemoryConnectionStore(),
        transcripts=InMemoryTranscriptStore(),
        credentials=CredentialCache({"OPENAI_API_KEY": "sk-test", "PERPLEXITY_API_KEY": "pplx-test"}),
    )
