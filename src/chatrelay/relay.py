"""Forward provider events to the client connection under supervision.

The relay is the only writer of client-bound messages for an exchange. It
checks ``StatusFlags`` before each event and emits exactly one terminal
signal: ``done`` when the stream ends on its own, otherwise ``canceled`` or
``timeout`` (cancel wins when both are set).
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator
from typing import Any

from .errors import ConnectionGone, ProviderUnavailable
from .gateway import ClientGateway
from .supervisor import StatusFlags
from .types import CitationsEvent, FinishEvent, StreamEvent, StreamState, TextDelta, UsageEvent

logger = logging.getLogger(__name__)

DONE_SIGNAL: dict[str, Any] = {"done": True}
CANCELED_SIGNAL: dict[str, Any] = {"canceled": True}
TIMEOUT_SIGNAL: dict[str, Any] = {"timeout": True}


class DeltaRelay:
    def __init__(
        self,
        gateway: ClientGateway,
        connection_id: str,
        flags: StatusFlags,
        *,
        microbatch_window_s: float = 0.0,
    ) -> None:
        self.gateway = gateway
        self.connection_id = connection_id
        self.flags = flags
        self.microbatch_window_s = max(microbatch_window_s, 0.0)
        self.connection_lost = False
        self.terminal: dict[str, Any] | None = None
        self._pending: list[str] = []
        self._pending_since: float | None = None

    async def run(self, events: AsyncIterator[StreamEvent]) -> StreamState:
        state = StreamState()
        iterator = events.__aiter__()
        flag_waiter = asyncio.ensure_future(self.flags.changed.wait())
        next_event: asyncio.Future[StreamEvent] | None = None
        try:
            while True:
                if self.flags.stopped:
                    await self._stop(state)
                    break
                if next_event is None:
                    next_event = asyncio.ensure_future(iterator.__anext__())
                done, _ = await asyncio.wait(
                    {next_event, flag_waiter},
                    timeout=self._flush_delay(),
                    return_when=asyncio.FIRST_COMPLETED,
                )
                if not done:
                    await self._flush_text()
                    continue
                if self.flags.stopped:
                    continue
                finished, next_event = next_event, None
                try:
                    event = finished.result()
                except StopAsyncIteration:
                    await self._finish(state)
                    break
                except ProviderUnavailable as exc:
                    await self._fail(state, exc)
                    break
                await self._handle(event, state)
        finally:
            flag_waiter.cancel()
            if next_event is not None:
                # an event may have completed in the same wait that saw a flag
                if not next_event.done():
                    next_event.cancel()
                try:
                    with contextlib.suppress(asyncio.CancelledError, StopAsyncIteration):
                        await next_event
                except Exception as exc:
                    logger.warning(
                        "relay.event_discarded connection=%s error=%s", self.connection_id, exc
                    )
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception as exc:
                    logger.warning(
                        "relay.close_failed connection=%s error=%s", self.connection_id, exc
                    )
        return state

    async def _handle(self, event: StreamEvent, state: StreamState) -> None:
        if isinstance(event, UsageEvent):
            state.prompt_tokens = event.prompt_tokens
            state.completion_tokens = event.completion_tokens
            state.search_queries = event.search_queries
            state.usage_received = True
        elif isinstance(event, CitationsEvent):
            if state.citations is None:
                state.citations = list(event.citations)
                await self._send({"citations": state.citations})
        elif isinstance(event, TextDelta):
            state.response += event.text
            state.fragments += 1
            await self._push_text(event.text)
        elif isinstance(event, FinishEvent):
            state.finish_reason = event.finish_reason

    async def _push_text(self, text: str) -> None:
        if self.microbatch_window_s <= 0:
            await self._send({"text": text})
            return
        loop = asyncio.get_running_loop()
        if self._pending_since is None:
            self._pending_since = loop.time()
        self._pending.append(text)
        if loop.time() - self._pending_since >= self.microbatch_window_s:
            await self._flush_text()

    def _flush_delay(self) -> float | None:
        if self._pending_since is None:
            return None
        elapsed = asyncio.get_running_loop().time() - self._pending_since
        return max(self.microbatch_window_s - elapsed, 0.0)

    async def _flush_text(self) -> None:
        if not self._pending:
            self._pending_since = None
            return
        text = "".join(self._pending)
        self._pending.clear()
        self._pending_since = None
        await self._send({"text": text})

    async def _finish(self, state: StreamState) -> None:
        await self._flush_text()
        if self.flags.stopped:
            await self._stop(state)
            return
        await self._terminal(DONE_SIGNAL)

    async def _stop(self, state: StreamState) -> None:
        await self._flush_text()
        state.canceled = self.flags.is_canceled
        state.timed_out = self.flags.timeout_triggered
        if self.flags.is_canceled:
            logger.info("relay.stop connection=%s reason=canceled", self.connection_id)
            await self._terminal(CANCELED_SIGNAL)
        else:
            logger.info("relay.stop connection=%s reason=timeout", self.connection_id)
            await self._terminal(TIMEOUT_SIGNAL)

    async def _fail(self, state: StreamState, exc: ProviderUnavailable) -> None:
        await self._flush_text()
        state.failed = True
        state.errors.append(exc.message)
        logger.error(
            "relay.provider_failed connection=%s fragments=%d error=%s",
            self.connection_id,
            state.fragments,
            exc.message,
        )
        await self._send({"error": {"type": exc.error_type, "message": exc.message}})

    async def _terminal(self, signal: dict[str, Any]) -> None:
        if self.terminal is not None:
            return
        self.terminal = signal
        await self._send(signal)

    async def _send(self, payload: dict[str, Any]) -> None:
        if self.connection_lost:
            return
        try:
            await self.gateway.send(self.connection_id, payload)
        except ConnectionGone as exc:
            self.connection_lost = True
            logger.warning(
                "relay.connection_lost connection=%s error=%s", self.connection_id, exc.message
            )
