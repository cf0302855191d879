"""Connection store: the session -> live connection mapping.

The ``canceled`` flag on a session record is the one piece of state shared
between the request router (writer) and a running exchange's supervisor
(reader). No locking is used; readers may observe it up to one poll interval
late.
"""

from __future__ import annotations

import time
from typing import Callable, Protocol

from .types import SessionRecord


class ConnectionStore(Protocol):
    async def get(self, session_id: str) -> SessionRecord | None: ...

    async def put(self, record: SessionRecord) -> None: ...

    async def delete(self, session_id: str) -> None: ...

    async def set_canceled(self, session_id: str) -> None: ...

    async def clear_canceled(self, session_id: str) -> None: ...

    async def set_conversation(self, session_id: str, conversation_id: str) -> None: ...


class InMemoryConnectionStore:
    def __init__(self, *, clock: Callable[[], float] = time.time):
        self._records: dict[str, SessionRecord] = {}
        self._clock = clock

    def _live(self, session_id: str) -> SessionRecord | None:
        record = self._records.get(session_id)
        if record is None:
            return None
        if record.delete_at is not None and record.delete_at <= self._clock():
            self._records.pop(session_id, None)
            return None
        return record

    async def get(self, session_id: str) -> SessionRecord | None:
        record = self._live(session_id)
        return record.model_copy() if record is not None else None

    async def put(self, record: SessionRecord) -> None:
        self._records[record.session_id] = record.model_copy()

    async def delete(self, session_id: str) -> None:
        self._records.pop(session_id, None)

    async def set_canceled(self, session_id: str) -> None:
        record = self._live(session_id)
        if record is not None:
            record.canceled = True

    async def clear_canceled(self, session_id: str) -> None:
        record = self._live(session_id)
        if record is not None:
            record.canceled = False

    async def set_conversation(self, session_id: str, conversation_id: str) -> None:
        record = self._live(session_id)
        if record is not None:
            record.conversation_id = conversation_id
