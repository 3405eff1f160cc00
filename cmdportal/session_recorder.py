from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from .store import EventLogStore
from .store.types import LogEvent, session_log_key
from .store.utils import new_event_id, now_ms

logger = logging.getLogger(__name__)

COMMAND = "command"
OUTPUT = "output"


class SessionRecorder:
    """Appends terminal input/output chunks to a session log.

    ``record`` only captures the timestamp and buffers the chunk; the write
    happens on the next loop iteration (or inline when no loop is running),
    so the terminal transport never waits on storage.
    """

    def __init__(
        self,
        store: EventLogStore,
        session_id: str,
        *,
        max_events: int = 0,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        if not session_id.strip():
            raise ValueError("session_id is required")
        self.store = store
        self.session_id = session_id
        self.log_key = session_log_key(session_id)
        self.max_events = max_events
        self.clock = clock
        self.closed = False
        self._buffer: list[LogEvent] = []
        self._flush_scheduled = False

    def record_command(self, data: str) -> None:
        self.record(COMMAND, data)

    def record_output(self, data: str) -> None:
        self.record(OUTPUT, data)

    def record(self, kind: str, data: Any) -> None:
        if self.closed or not kind:
            return
        self._buffer.append(
            LogEvent(id=new_event_id(), kind=kind, payload=data, timestamp=self.clock())
        )
        self._schedule_flush()

    def flush(self) -> int:
        self._flush_scheduled = False
        pending, self._buffer = self._buffer, []
        written = 0
        for event in pending:
            try:
                self.store.append(self.log_key, event)
            except Exception as exc:
                logger.warning(
                    "session %s: dropped %s event", self.session_id, event.kind, exc_info=exc
                )
                continue
            written += 1
        if written and self.max_events > 0:
            self.store.compact(self.log_key, self.max_events)
        return written

    def close(self) -> None:
        if self.closed:
            return
        self.flush()
        self.closed = True

    def _schedule_flush(self) -> None:
        if self._flush_scheduled:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.flush()
            return
        self._flush_scheduled = True
        loop.call_soon(self.flush)
