"""Durable transcript of exchanges, one immutable record per exchange.

``message_index`` is assigned by reading the highest existing index for the
conversation and adding one. Stores reject a write whose key already exists,
so two exchanges racing on one conversation cannot overwrite each other: the
loser re-reads and takes the next index.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Protocol

from .types import ChatMessage, Conversation, TranscriptRecord

logger = logging.getLogger(__name__)

MAX_INDEX_ATTEMPTS = 3


class DuplicateMessageIndex(Exception):
    """Raised when a transcript record with the same key already exists."""


class TranscriptStore(Protocol):
    async def latest_messages(self, conversation_id: str, limit: int) -> list[TranscriptRecord]: ...

    async def put_message(self, record: TranscriptRecord) -> None: ...

    async def get_conversation(self, conversation_id: str) -> Conversation | None: ...

    async def put_conversation(self, conversation: Conversation) -> None: ...

    async def update_conversation(self, conversation_id: str, **fields: Any) -> None: ...


class InMemoryTranscriptStore:
    def __init__(self) -> None:
        self._messages: dict[str, dict[int, TranscriptRecord]] = {}
        self._conversations: dict[str, Conversation] = {}

    async def latest_messages(self, conversation_id: str, limit: int) -> list[TranscriptRecord]:
        if limit <= 0:
            return []
        records = self._messages.get(conversation_id, {})
        ordered = sorted(records.values(), key=lambda item: item.message_index, reverse=True)
        return ordered[:limit]

    async def put_message(self, record: TranscriptRecord) -> None:
        records = self._messages.setdefault(record.conversation_id, {})
        if record.message_index in records:
            raise DuplicateMessageIndex(f"{record.conversation_id}#{record.message_index}")
        records[record.message_index] = record

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        conversation = self._conversations.get(conversation_id)
        return conversation.model_copy() if conversation is not None else None

    async def put_conversation(self, conversation: Conversation) -> None:
        self._conversations[conversation.conversation_id] = conversation.model_copy()

    async def update_conversation(self, conversation_id: str, **fields: Any) -> None:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return
        self._conversations[conversation_id] = conversation.model_copy(update=fields)


_CONVERSATION_COLUMNS = ("title", "last_message_at", "expires_at")


class SqliteTranscriptStore:
    def __init__(self, db_path: str):
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._initialize_schema()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def _initialize_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS conversations (
                conversation_id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                title TEXT NULL,
                created_at INTEGER NOT NULL,
                last_message_at INTEGER NOT NULL,
                expires_at INTEGER NULL
            );

            CREATE TABLE IF NOT EXISTS messages (
                conversation_id TEXT NOT NULL,
                message_index INTEGER NOT NULL CHECK (message_index >= 0),
                query TEXT NOT NULL,
                response TEXT NOT NULL,
                model TEXT NOT NULL,
                cost REAL NOT NULL CHECK (cost >= 0),
                citations_json TEXT NULL,
                PRIMARY KEY (conversation_id, message_index)
            );

            CREATE INDEX IF NOT EXISTS idx_conversations_user_last
                ON conversations(user_id, last_message_at);
            """
        )
        self._conn.commit()

    def _run(self, fn: Any, *args: Any) -> Any:
        with self._lock:
            return fn(*args)

    def _select_latest(self, conversation_id: str, limit: int) -> list[TranscriptRecord]:
        rows = self._conn.execute(
            "SELECT * FROM messages WHERE conversation_id = ? "
            "ORDER BY message_index DESC LIMIT ?",
            (conversation_id, limit),
        ).fetchall()
        return [
            TranscriptRecord(
                conversation_id=row["conversation_id"],
                message_index=row["message_index"],
                query=row["query"],
                response=row["response"],
                model=row["model"],
                cost=row["cost"],
                citations=json.loads(row["citations_json"]) if row["citations_json"] else None,
            )
            for row in rows
        ]

    def _insert_message(self, record: TranscriptRecord) -> None:
        try:
            self._conn.execute(
                "INSERT INTO messages (conversation_id, message_index, query, response, model, cost, citations_json) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    record.conversation_id,
                    record.message_index,
                    record.query,
                    record.response,
                    record.model,
                    record.cost,
                    json.dumps(record.citations) if record.citations is not None else None,
                ),
            )
        except sqlite3.IntegrityError as exc:
            self._conn.rollback()
            raise DuplicateMessageIndex(
                f"{record.conversation_id}#{record.message_index}"
            ) from exc
        self._conn.commit()

    def _select_conversation(self, conversation_id: str) -> Conversation | None:
        row = self._conn.execute(
            "SELECT * FROM conversations WHERE conversation_id = ?", (conversation_id,)
        ).fetchone()
        if row is None:
            return None
        return Conversation(**dict(row))

    def _upsert_conversation(self, conversation: Conversation) -> None:
        self._conn.execute(
            "INSERT OR REPLACE INTO conversations "
            "(conversation_id, user_id, title, created_at, last_message_at, expires_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (
                conversation.conversation_id,
                conversation.user_id,
                conversation.title,
                conversation.created_at,
                conversation.last_message_at,
                conversation.expires_at,
            ),
        )
        self._conn.commit()

    def _update_conversation(self, conversation_id: str, fields: dict[str, Any]) -> None:
        unknown = set(fields) - set(_CONVERSATION_COLUMNS)
        if unknown:
            raise ValueError(f"cannot update conversation fields: {', '.join(sorted(unknown))}")
        if not fields:
            return
        assignments = ", ".join(f"{column} = ?" for column in fields)
        self._conn.execute(
            f"UPDATE conversations SET {assignments} WHERE conversation_id = ?",
            (*fields.values(), conversation_id),
        )
        self._conn.commit()

    async def latest_messages(self, conversation_id: str, limit: int) -> list[TranscriptRecord]:
        if limit <= 0:
            return []
        return await asyncio.to_thread(self._run, self._select_latest, conversation_id, limit)

    async def put_message(self, record: TranscriptRecord) -> None:
        await asyncio.to_thread(self._run, self._insert_message, record)

    async def get_conversation(self, conversation_id: str) -> Conversation | None:
        return await asyncio.to_thread(self._run, self._select_conversation, conversation_id)

    async def put_conversation(self, conversation: Conversation) -> None:
        await asyncio.to_thread(self._run, self._upsert_conversation, conversation)

    async def update_conversation(self, conversation_id: str, **fields: Any) -> None:
        await asyncio.to_thread(self._run, self._update_conversation, conversation_id, fields)


class TranscriptWriter:
    def __init__(self, store: TranscriptStore):
        self.store = store

    async def next_index(self, conversation_id: str) -> int:
        latest = await self.store.latest_messages(conversation_id, 1)
        if not latest:
            return 0
        return latest[0].message_index + 1

    async def write(
        self,
        conversation_id: str,
        *,
        query: str,
        response: str,
        model: str,
        cost: float,
        citations: list[str] | None = None,
    ) -> TranscriptRecord:
        attempt = 0
        while True:
            attempt += 1
            record = TranscriptRecord(
                conversation_id=conversation_id,
                message_index=await self.next_index(conversation_id),
                query=query,
                response=response,
                model=model,
                cost=cost,
                citations=citations or None,
            )
            try:
                await self.store.put_message(record)
            except DuplicateMessageIndex:
                if attempt >= MAX_INDEX_ATTEMPTS:
                    raise
                logger.warning(
                    "transcript.index_conflict conversation=%s index=%d attempt=%d",
                    conversation_id,
                    record.message_index,
                    attempt,
                )
                continue
            await self.store.update_conversation(
                conversation_id, last_message_at=int(time.time())
            )
            return record


async def build_history(
    store: TranscriptStore,
    conversation_id: str | None,
    prompt: str,
    *,
    limit: int = 5,
) -> list[ChatMessage]:
    messages: list[ChatMessage] = []
    if conversation_id is not None and limit > 0:
        recent = await store.latest_messages(conversation_id, limit)
        for record in reversed(recent):
            if record.query:
                messages.append(ChatMessage(role="user", content=record.query))
            if record.response:
                messages.append(ChatMessage(role="assistant", content=record.response))
    messages.append(ChatMessage(role="user", content=prompt))
    return messages
