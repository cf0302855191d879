from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, List

from ..router import ProviderDef
from ..types import StreamEvent


class EventStream:
    """Single-pass iterator over provider events that owns the upstream call.

    ``aclose`` releases the underlying connection even when the iterator was
    never advanced, which is what the relay relies on to abort a stream after
    a cancel or timeout.
    """

    def __init__(
        self,
        events: AsyncIterator[StreamEvent],
        on_close: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self._events = events
        self._on_close = on_close
        self._closed = False

    def __aiter__(self) -> "EventStream":
        return self

    async def __anext__(self) -> StreamEvent:
        if self._closed:
            raise StopAsyncIteration
        return await self._events.__anext__()

    @property
    def closed(self) -> bool:
        return self._closed

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            aclose = getattr(self._events, "aclose", None)
            if aclose is not None:
                await aclose()
        finally:
            if self._on_close is not None:
                await self._on_close()


class BaseProvider:
    def __init__(self, defn: ProviderDef):
        self.defn = defn

    @property
    def name(self) -> str:
        return self.defn.name

    async def open_stream(
        self,
        api_key: str,
        model: str,
        messages: List[dict[str, Any]],
    ) -> EventStream:
        raise NotImplementedError

    async def complete(
        self,
        api_key: str,
        model: str,
        messages: List[dict[str, Any]],
    ) -> str:
        raise NotImplementedError

    async def aclose(self) -> None:
        return None
