from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Callable, Coroutine
from typing import Any

from .config import Settings
from .errors import ChatRelayError, InvalidRequest, NoActiveConnection, ProviderUnavailable
from .gateway import ClientGateway
from .metrics import MetricsLogger
from .namer import ConversationNamer
from .pricing import PriceTable, cost_for_exchange
from .providers import CredentialCache, ProviderRegistry
from .relay import DeltaRelay
from .router import CANCEL_ACTION, ProviderRoute, RequestRouter, load_config
from .sessions import ConnectionStore, InMemoryConnectionStore
from .supervisor import StatusFlags, Supervisor
from .transcripts import (
    InMemoryTranscriptStore,
    SqliteTranscriptStore,
    TranscriptStore,
    TranscriptWriter,
    build_history,
)
from .types import Conversation, DispatchResult, InboundRequest, SessionRecord, StreamState

logger = logging.getLogger(__name__)

CANCELED_BODY = "Processing canceled"
STREAMED_BODY = "Streaming response sent to client"
PARTIAL_BODY = "Provider failed mid-stream; partial response saved"
FAILED_BODY = "Error streaming response from provider"
SECONDS_PER_DAY = 86400


def _log_exchange_event(
    level: int,
    *,
    event: str,
    session_id: str,
    provider: str | None,
    detail: str | None = None,
) -> None:
    provider_value = provider or "unknown"
    message = f"{event} session={session_id} provider={provider_value}"
    if detail:
        message = f"{message} detail={detail}"
    logger.log(level, message)


class ChatService:
    """Resolves sessions, routes requests and runs exchanges end to end.

    One instance owns every piece of per-process state: provider clients,
    cached credentials and the background naming tasks.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        router: RequestRouter,
        providers: ProviderRegistry,
        pricing: PriceTable,
        gateway: ClientGateway,
        connections: ConnectionStore | None = None,
        transcripts: TranscriptStore | None = None,
        credentials: CredentialCache | None = None,
        metrics: MetricsLogger | None = None,
        namer: ConversationNamer | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.router = router
        self.providers = providers
        self.pricing = pricing
        self.gateway = gateway
        self.connections = connections or InMemoryConnectionStore()
        self.transcripts = transcripts or InMemoryTranscriptStore()
        self.credentials = credentials or CredentialCache()
        self.metrics = metrics or MetricsLogger(None)
        self.writer = TranscriptWriter(self.transcripts)
        self.clock = clock
        if namer is None and settings.namer_enabled:
            namer = ConversationNamer(
                router=router,
                providers=providers,
                credentials=self.credentials,
                transcripts=self.transcripts,
                gateway=gateway,
                model=settings.namer_model,
            )
        self.namer = namer
        self._background: set[asyncio.Task[Any]] = set()

    @classmethod
    def from_settings(cls, settings: Settings, *, gateway: ClientGateway) -> "ChatService":
        loaded = load_config(settings.config_dir)
        transcripts: TranscriptStore
        if settings.transcript_db:
            transcripts = SqliteTranscriptStore(settings.transcript_db)
        else:
            transcripts = InMemoryTranscriptStore()
        return cls(
            settings=settings,
            router=RequestRouter(loaded.providers),
            providers=ProviderRegistry(loaded.providers),
            pricing=loaded.pricing,
            gateway=gateway,
            transcripts=transcripts,
            metrics=MetricsLogger(settings.metrics_dir),
        )

    async def register_connection(
        self,
        session_id: str,
        connection_id: str,
        user_id: str,
        *,
        conversation_id: str | None = None,
    ) -> SessionRecord:
        record = SessionRecord(
            session_id=session_id,
            connection_id=connection_id,
            user_id=user_id,
            conversation_id=conversation_id,
            delete_at=int(self.clock()) + self.settings.session_ttl_s,
        )
        await self.connections.put(record)
        return record

    async def unregister_connection(self, session_id: str, connection_id: str) -> None:
        current = await self.connections.get(session_id)
        # a reconnect under the same session id may already own the record
        if current is not None and current.connection_id != connection_id:
            return
        await self.connections.delete(session_id)

    async def dispatch(self, request: InboundRequest) -> DispatchResult:
        session = await self.connections.get(request.session_id)
        if session is None:
            raise NoActiveConnection(f"No active connection for session {request.session_id}")
        if request.action == CANCEL_ACTION:
            await self.connections.set_canceled(session.session_id)
            _log_exchange_event(
                logging.INFO, event="exchange.cancel_requested", session_id=session.session_id, provider=None
            )
            return DispatchResult(status_code=200, body=CANCELED_BODY)
        route = self.router.resolve(request.action)
        if not request.message.strip():
            raise InvalidRequest("message must not be empty")
        # a cancel that arrives from here on belongs to this exchange
        await self.connections.clear_canceled(session.session_id)
        if request.conversation_id is not None:
            await self._check_conversation(session, request.conversation_id)
        state, conversation_id = await self._run_exchange(
            session, route, request.conversation_id, request.message
        )
        if state.failed:
            body = PARTIAL_BODY if state.response else FAILED_BODY
            return DispatchResult(
                status_code=ProviderUnavailable.status_code,
                body=body,
                conversation_id=conversation_id,
                state=state,
            )
        return DispatchResult(
            status_code=200, body=STREAMED_BODY, conversation_id=conversation_id, state=state
        )

    async def _check_conversation(self, session: SessionRecord, conversation_id: str) -> None:
        conversation = await self.transcripts.get_conversation(conversation_id)
        if conversation is None or conversation.user_id != session.user_id:
            _log_exchange_event(
                logging.WARNING,
                event="exchange.conversation_rejected",
                session_id=session.session_id,
                provider=None,
                detail=f"conversation={conversation_id}",
            )
            # same answer for missing and foreign ids
            raise InvalidRequest(f"Unknown conversation {conversation_id}")

    async def _start_conversation(self, session: SessionRecord) -> str:
        now = int(self.clock())
        conversation = Conversation(
            conversation_id=str(uuid.uuid4()),
            user_id=session.user_id,
            created_at=now,
            last_message_at=now,
            expires_at=now + self.settings.conversation_ttl_days * SECONDS_PER_DAY,
        )
        await self.transcripts.put_conversation(conversation)
        await self.connections.set_conversation(session.session_id, conversation.conversation_id)
        try:
            await self.gateway.send(
                session.connection_id, {"conversationId": conversation.conversation_id}
            )
        except ChatRelayError as exc:
            logger.warning(
                "conversation.announce_failed session=%s error=%s", session.session_id, exc.message
            )
        return conversation.conversation_id

    async def _run_exchange(
        self,
        session: SessionRecord,
        route: ProviderRoute,
        conversation_id: str | None,
        prompt: str,
    ) -> tuple[StreamState, str]:
        start = time.perf_counter()
        history = await build_history(
            self.transcripts, conversation_id, prompt, limit=self.settings.history_limit
        )
        messages = [message.model_dump() for message in history]
        provider = self.providers.get(route.provider)
        try:
            api_key = self.credentials.get(provider.defn)
            stream = await provider.open_stream(api_key, route.model, messages)
        except ProviderUnavailable as exc:
            _log_exchange_event(
                logging.ERROR,
                event="exchange.open_failed",
                session_id=session.session_id,
                provider=route.provider,
                detail=exc.message,
            )
            await self._write_metrics(
                session, route, conversation_id, start, outcome="error", error=exc.message
            )
            raise

        if conversation_id is None:
            try:
                conversation_id = await self._start_conversation(session)
            except BaseException:
                await stream.aclose()
                raise
            if self.namer is not None:
                self.spawn(
                    self.namer.name(conversation_id, session.connection_id, prompt),
                    name=f"namer:{conversation_id}",
                )

        flags = StatusFlags()
        supervisor = Supervisor(
            self.connections,
            session.session_id,
            timeout_s=self.settings.stream_timeout_s,
            poll_interval_s=self.settings.cancel_poll_interval_s,
            flags=flags,
        )
        relay = DeltaRelay(
            self.gateway,
            session.connection_id,
            flags,
            microbatch_window_s=self.settings.microbatch_window_s,
        )
        async with supervisor:
            state = await relay.run(stream)
        if state.canceled:
            await self.connections.clear_canceled(session.session_id)

        if state.failed and not state.response:
            await self._write_metrics(
                session, route, conversation_id, start, outcome="error", state=state,
                error="; ".join(state.errors),
            )
            return state, conversation_id
        await self._finalize(session, route, conversation_id, prompt, messages, state, start)
        return state, conversation_id

    async def _finalize(
        self,
        session: SessionRecord,
        route: ProviderRoute,
        conversation_id: str,
        prompt: str,
        messages: list[dict[str, str]],
        state: StreamState,
        start: float,
    ) -> None:
        try:
            cost = cost_for_exchange(state, messages, route.model, table=self.pricing)
        except ChatRelayError as exc:
            _log_exchange_event(
                logging.ERROR,
                event="exchange.cost_failed",
                session_id=session.session_id,
                provider=route.provider,
                detail=exc.message,
            )
            await self._write_metrics(
                session, route, conversation_id, start, outcome="error", state=state,
                error=exc.message,
            )
            raise
        record = await self.writer.write(
            conversation_id,
            query=prompt,
            response=state.response,
            model=route.model,
            cost=cost,
            citations=state.citations,
        )
        await self._write_metrics(
            session,
            route,
            conversation_id,
            start,
            outcome=state.outcome,
            state=state,
            cost=cost,
            message_index=record.message_index,
        )
        _log_exchange_event(
            logging.WARNING if state.failed else logging.INFO,
            event=f"exchange.{state.outcome}",
            session_id=session.session_id,
            provider=route.provider,
            detail=f"conversation={conversation_id} index={record.message_index} cost={cost:.8f}",
        )

    async def _write_metrics(
        self,
        session: SessionRecord,
        route: ProviderRoute,
        conversation_id: str | None,
        start: float,
        *,
        outcome: str,
        state: StreamState | None = None,
        cost: float | None = None,
        message_index: int | None = None,
        error: str | None = None,
    ) -> None:
        record: dict[str, Any] = {
            "ts": time.time(),
            "session": session.session_id,
            "conversation": conversation_id,
            "provider": route.provider,
            "model": route.model,
            "latency_ms": int((time.perf_counter() - start) * 1000),
            "outcome": outcome,
            "ok": outcome in ("done", "canceled", "timeout"),
            "usage_prompt": state.prompt_tokens if state else 0,
            "usage_completion": state.completion_tokens if state else 0,
            "usage_reported": state.usage_received if state else False,
            "searches": state.search_queries if state else 0,
            "fragments": state.fragments if state else 0,
        }
        if cost is not None:
            record["cost"] = cost
        if message_index is not None:
            record["message_index"] = message_index
        if error is not None:
            record["error"] = error
        await self.metrics.write(record)

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("background.failed task=%s error=%s", task.get_name(), exc)

    async def drain_background(self) -> None:
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def aclose(self) -> None:
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.providers.aclose()
        close = getattr(self.transcripts, "close", None)
        if callable(close):
            close()
