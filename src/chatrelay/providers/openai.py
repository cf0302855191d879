from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from typing import Any, List

import openai

from ..errors import ProviderUnavailable
from ..router import ProviderDef
from ..types import FinishEvent, StreamEvent, TextDelta, UsageEvent
from .base import BaseProvider, EventStream

ClientFactory = Callable[[str], Any]


class OpenAIProvider(BaseProvider):
    """Structured-stream provider backed by the ``openai`` SDK."""

    def __init__(self, defn: ProviderDef, *, client_factory: ClientFactory | None = None):
        super().__init__(defn)
        self._client_factory = client_factory or self._default_client
        self._clients: dict[str, Any] = {}

    def _default_client(self, api_key: str) -> openai.AsyncOpenAI:
        return openai.AsyncOpenAI(
            api_key=api_key,
            base_url=self.defn.base_url or None,
            timeout=self.defn.timeout_s,
            max_retries=0,
        )

    def _client(self, api_key: str) -> Any:
        client = self._clients.get(api_key)
        if client is None:
            client = self._client_factory(api_key)
            self._clients[api_key] = client
        return client

    async def open_stream(
        self,
        api_key: str,
        model: str,
        messages: List[dict[str, Any]],
    ) -> EventStream:
        client = self._client(api_key)
        try:
            stream = await client.chat.completions.create(
                model=model,
                messages=messages,
                stream=True,
                stream_options={"include_usage": True},
            )
        except openai.APIError as exc:
            raise ProviderUnavailable(f"{self.name}: {exc}") from exc

        async def close_stream() -> None:
            close = getattr(stream, "close", None)
            if close is not None:
                await close()

        return EventStream(self._iter_events(stream), on_close=close_stream)

    async def _iter_events(self, stream: Any) -> AsyncIterator[StreamEvent]:
        try:
            async for chunk in stream:
                for event in map_chunk(chunk):
                    yield event
        except openai.APIError as exc:
            raise ProviderUnavailable(f"{self.name}: {exc}") from exc

    async def complete(
        self,
        api_key: str,
        model: str,
        messages: List[dict[str, Any]],
    ) -> str:
        client = self._client(api_key)
        try:
            response = await client.chat.completions.create(model=model, messages=messages)
        except openai.APIError as exc:
            raise ProviderUnavailable(f"{self.name}: {exc}") from exc
        choices = getattr(response, "choices", None) or []
        if not choices:
            return ""
        message = getattr(choices[0], "message", None)
        content = getattr(message, "content", None)
        return content if isinstance(content, str) else ""

    async def aclose(self) -> None:
        clients = list(self._clients.values())
        self._clients.clear()
        for client in clients:
            close = getattr(client, "close", None)
            if close is not None:
                await close()


def map_chunk(chunk: Any) -> list[StreamEvent]:
    events: list[StreamEvent] = []
    usage = getattr(chunk, "usage", None)
    if usage is not None:
        events.append(
            UsageEvent(
                prompt_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                completion_tokens=getattr(usage, "completion_tokens", 0) or 0,
            )
        )
    choices = getattr(chunk, "choices", None) or []
    if choices:
        choice = choices[0]
        delta = getattr(choice, "delta", None)
        text = getattr(delta, "content", None) if delta is not None else None
        if isinstance(text, str) and text:
            events.append(TextDelta(text=text))
        finish_reason = getattr(choice, "finish_reason", None)
        if isinstance(finish_reason, str) and finish_reason:
            events.append(FinishEvent(finish_reason=finish_reason))
    return events
