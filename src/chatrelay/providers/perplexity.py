from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any, List

import httpx

from ..errors import ProviderUnavailable
from ..framing import FrameParser
from ..router import ProviderDef
from ..types import CitationsEvent, FinishEvent, StreamEvent, TextDelta, UsageEvent
from .base import BaseProvider, EventStream

DEFAULT_BASE_URL = "https://api.perplexity.ai"
CHAT_PATH = "/chat/completions"


class PerplexityProvider(BaseProvider):
    """Raw-stream provider: the body is a ``data:`` framed event stream."""

    def __init__(
        self,
        defn: ProviderDef,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        super().__init__(defn)
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    @property
    def url(self) -> str:
        base = (self.defn.base_url or DEFAULT_BASE_URL).rstrip("/")
        if base.endswith(CHAT_PATH):
            return base
        return f"{base}{CHAT_PATH}"

    def _client(self) -> httpx.AsyncClient:
        if self._http is None:
            self._http = httpx.AsyncClient(
                timeout=httpx.Timeout(self.defn.timeout_s, connect=10.0),
                transport=self._transport,
            )
        return self._http

    def _build_request(
        self,
        api_key: str,
        model: str,
        messages: List[dict[str, Any]],
        *,
        stream: bool,
    ) -> httpx.Request:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {api_key}",
        }
        payload = {"model": model, "messages": messages, "stream": stream}
        return self._client().build_request("POST", self.url, headers=headers, json=payload)

    async def open_stream(
        self,
        api_key: str,
        model: str,
        messages: List[dict[str, Any]],
    ) -> EventStream:
        request = self._build_request(api_key, model, messages, stream=True)
        try:
            response = await self._client().send(request, stream=True)
        except httpx.HTTPError as exc:
            raise ProviderUnavailable(f"{self.name}: {exc}") from exc
        if response.status_code >= 400:
            try:
                body = (await response.aread()).decode("utf-8", errors="replace")
            except httpx.HTTPError:
                body = ""
            finally:
                await response.aclose()
            detail = body.strip()[:200] or response.reason_phrase
            raise ProviderUnavailable(
                f"{self.name}: upstream status {response.status_code}: {detail}"
            )
        return EventStream(self._iter_events(response), on_close=response.aclose)

    async def _iter_events(self, response: httpx.Response) -> AsyncIterator[StreamEvent]:
        parser = FrameParser()
        mapper = PayloadMapper()
        try:
            async for chunk in response.aiter_text():
                for payload in parser.feed(chunk):
                    for event in mapper.map(payload):
                        yield event
        except httpx.HTTPError as exc:
            raise ProviderUnavailable(f"{self.name}: {exc}") from exc
        for payload in parser.flush():
            for event in mapper.map(payload):
                yield event

    async def complete(
        self,
        api_key: str,
        model: str,
        messages: List[dict[str, Any]],
    ) -> str:
        request = self._build_request(api_key, model, messages, stream=False)
        try:
            response = await self._client().send(request)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ProviderUnavailable(f"{self.name}: {exc}") from exc
        data = response.json()
        choices = data.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            return ""
        message = choices[0].get("message") or {}
        content = message.get("content") if isinstance(message, dict) else None
        return content if isinstance(content, str) else ""

    async def aclose(self) -> None:
        if self._http is not None:
            await self._http.aclose()
            self._http = None


class PayloadMapper:
    """Maps parsed stream payloads to events; citations are emitted once."""

    def __init__(self) -> None:
        self.citations_sent = False

    def map(self, payload: dict[str, Any]) -> list[StreamEvent]:
        events: list[StreamEvent] = []
        citations = payload.get("citations")
        if not self.citations_sent and isinstance(citations, list) and citations:
            self.citations_sent = True
            events.append(CitationsEvent(citations=[str(item) for item in citations]))
        usage = payload.get("usage")
        if isinstance(usage, dict):
            prompt_tokens = usage.get("prompt_tokens")
            completion_tokens = usage.get("completion_tokens")
            searches = usage.get("num_search_queries")
            if isinstance(prompt_tokens, int) or isinstance(completion_tokens, int):
                events.append(
                    UsageEvent(
                        prompt_tokens=prompt_tokens if isinstance(prompt_tokens, int) else 0,
                        completion_tokens=(
                            completion_tokens if isinstance(completion_tokens, int) else 0
                        ),
                        search_queries=searches if isinstance(searches, int) else 0,
                    )
                )
        choices = payload.get("choices")
        if isinstance(choices, list) and choices and isinstance(choices[0], dict):
            choice = choices[0]
            delta = choice.get("delta")
            if isinstance(delta, dict):
                text = delta.get("content")
                if isinstance(text, str) and text:
                    events.append(TextDelta(text=text))
            finish_reason = choice.get("finish_reason")
            if isinstance(finish_reason, str) and finish_reason:
                events.append(FinishEvent(finish_reason=finish_reason))
        return events
