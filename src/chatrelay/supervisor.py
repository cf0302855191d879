"""Timeout clock and cancellation poll that run beside stream consumption.

Neither task interrupts the stream directly. They flip ``StatusFlags`` and set
its ``changed`` event; the relay reads the flags between events.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from types import TracebackType

from .sessions import ConnectionStore

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_S = 60.0
DEFAULT_POLL_INTERVAL_S = 1.0


@dataclass
class StatusFlags:
    is_canceled: bool = False
    timeout_triggered: bool = False
    changed: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def stopped(self) -> bool:
        return self.is_canceled or self.timeout_triggered

    def cancel(self) -> None:
        self.is_canceled = True
        self.changed.set()

    def trigger_timeout(self) -> None:
        self.timeout_triggered = True
        self.changed.set()


class Supervisor:
    def __init__(
        self,
        connections: ConnectionStore,
        session_id: str,
        *,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
        flags: StatusFlags | None = None,
    ) -> None:
        self.connections = connections
        self.session_id = session_id
        self.timeout_s = timeout_s
        self.poll_interval_s = poll_interval_s
        self.flags = flags or StatusFlags()
        self._tasks: list[asyncio.Task[None]] = []

    async def _timeout(self) -> None:
        await asyncio.sleep(self.timeout_s)
        if not self.flags.stopped:
            logger.info("supervisor.timeout session=%s after=%.1fs", self.session_id, self.timeout_s)
        self.flags.trigger_timeout()

    async def _poll_cancellation(self) -> None:
        while not self.flags.stopped:
            await asyncio.sleep(self.poll_interval_s)
            if self.flags.stopped:
                break
            try:
                record = await self.connections.get(self.session_id)
            except Exception as exc:
                logger.warning(
                    "supervisor.poll_failed session=%s error=%s", self.session_id, exc
                )
                continue
            if record is not None and record.canceled:
                logger.info("supervisor.canceled session=%s", self.session_id)
                self.flags.cancel()

    def start(self) -> StatusFlags:
        if not self._tasks:
            self._tasks = [
                asyncio.create_task(self._timeout()),
                asyncio.create_task(self._poll_cancellation()),
            ]
        return self.flags

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def __aenter__(self) -> StatusFlags:
        return self.start()

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.stop()
