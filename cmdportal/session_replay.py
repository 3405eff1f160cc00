from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Awaitable, Callable, Iterable, Sequence
from dataclasses import dataclass, field, replace
from typing import Any, Protocol

from .listeners import Listeners
from .store.types import LogEvent
from .store.utils import coerce_timestamp, new_event_id

logger = logging.getLogger(__name__)

REPLAY_READY = "ready"
REPLAY_EMPTY = "empty"
REPLAY_ERROR = "error"

INPUT_KINDS = frozenset({"command", "input"})

Sleep = Callable[[float], Awaitable[Any]]


class HistorySource(Protocol):
    async def get_history(self, session_id: str) -> Sequence[Any]: ...


@dataclass
class ReplayCursor:
    position: int = 0
    playing: bool = False
    speed: float = 1.0
    total: int = 0

    @property
    def at_end(self) -> bool:
        return self.position >= self.total


@dataclass(frozen=True)
class ReplayState:
    status: str
    events: list[LogEvent] = field(default_factory=list)
    error: str | None = None

    @property
    def renderable_message(self) -> str:
        if self.status == REPLAY_ERROR:
            return "No history available"
        if self.status == REPLAY_EMPTY:
            return "No events to replay"
        return f"{len(self.events)} events"


class PlaybackHandle:
    """Handle for one playback run. ``cancel`` is synchronous and idempotent."""

    def __init__(self) -> None:
        self._task: asyncio.Task[None] | None = None
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def done(self) -> bool:
        return self._task is None or self._task.done()

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def wait(self) -> None:
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            if not self._cancelled:
                raise


def normalize_history(entries: Iterable[Any]) -> list[LogEvent]:
    """Turn ``{type, data, timestamp}`` history entries into ordered log events.

    Entries without a usable type are skipped. A missing timestamp inherits
    the previous one so the entry keeps its position.
    """

    events: list[LogEvent] = []
    last_ts = 0
    for entry in entries:
        if isinstance(entry, LogEvent):
            events.append(entry)
            last_ts = entry.timestamp
            continue
        if not isinstance(entry, dict):
            continue
        kind = entry.get("type") or entry.get("kind")
        if not isinstance(kind, str) or not kind:
            continue
        data = entry["data"] if "data" in entry else entry.get("payload")
        ts = coerce_timestamp(entry.get("timestamp"))
        if ts is None:
            ts = last_ts
        last_ts = ts
        events.append(
            LogEvent(
                id=str(entry.get("id") or new_event_id()), kind=kind, payload=data, timestamp=ts
            )
        )
    events.sort(key=lambda event: event.timestamp)
    return events


def render_transcript(events: Iterable[LogEvent]) -> str:
    parts: list[str] = []
    for event in events:
        text = "" if event.payload is None else str(event.payload)
        if event.kind in INPUT_KINDS:
            parts.append(f"$ {text}\n")
        elif event.kind == "output":
            parts.append(text if text.endswith("\n") else text + "\n")
    return "".join(parts)


class SessionReplayer:
    def __init__(
        self,
        history_source: HistorySource | None = None,
        *,
        speed: float = 1.0,
        min_delay_ms: float = 50,
        max_delay_ms: float = 2000,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if speed <= 0:
            raise ValueError("speed must be positive")
        self.history_source = history_source
        self.min_delay_ms = min_delay_ms
        self.max_delay_ms = max_delay_ms
        self._sleep = sleep
        self.events: list[LogEvent] = []
        self.state = ReplayState(status=REPLAY_EMPTY)
        self.cursor = ReplayCursor(speed=speed)
        self.session_id: str | None = None
        self.closed = False
        self._generation = 0
        self._handle: PlaybackHandle | None = None
        self._changes: Listeners[ReplayCursor] = Listeners("replay cursor")

    def subscribe(self, listener: Callable[[ReplayCursor], None]) -> Callable[[], None]:
        return self._changes.subscribe(listener)

    async def load(
        self, session_id: str, provided_history: Sequence[Any] | None = None
    ) -> ReplayState:
        self._generation += 1
        generation = self._generation
        self.pause()
        if provided_history:
            events = normalize_history(provided_history)
            state = ReplayState(status=REPLAY_READY if events else REPLAY_EMPTY, events=events)
            self._apply(session_id, state)
            return state
        if self.history_source is None:
            state = ReplayState(status=REPLAY_ERROR, error="no history source configured")
            self._apply(session_id, state)
            return state
        try:
            raw = await self.history_source.get_history(session_id)
            events = normalize_history(raw or [])
            state = ReplayState(status=REPLAY_READY if events else REPLAY_EMPTY, events=events)
        except Exception as exc:
            logger.warning("session %s: history fetch failed", session_id, exc_info=exc)
            state = ReplayState(status=REPLAY_ERROR, error=str(exc) or type(exc).__name__)
        if self.closed or generation != self._generation:
            logger.debug("session %s: discarding stale history result", session_id)
            return state
        self._apply(session_id, state)
        return state

    def play(self, speed: float | None = None) -> PlaybackHandle:
        if speed is not None:
            self.set_speed(speed)
        self._stop_playback()
        handle = PlaybackHandle()
        if self.closed or not self.events:
            handle.cancel()
            return handle
        if self.cursor.at_end:
            self.cursor.position = 0
        self.cursor.playing = True
        self._handle = handle
        handle._task = asyncio.get_running_loop().create_task(self._run(handle))
        self._emit()
        return handle

    def pause(self) -> None:
        was_playing = self.cursor.playing
        self._stop_playback()
        if was_playing:
            self._emit()

    def seek(self, position: int) -> None:
        target = min(max(0, int(position)), len(self.events))
        was_playing = self.cursor.playing
        self._stop_playback()
        if target == self.cursor.position and not was_playing:
            return
        self.cursor.position = target
        self._emit()

    def seek_fraction(self, fraction: float) -> None:
        fraction = min(max(0.0, fraction), 1.0)
        self.seek(math.floor(fraction * len(self.events)))

    def step_forward(self) -> None:
        self.seek(self.cursor.position + 1)

    def step_backward(self) -> None:
        self.seek(self.cursor.position - 1)

    def go_to_start(self) -> None:
        self.seek(0)

    def go_to_end(self) -> None:
        self.seek(len(self.events))

    def reset(self) -> None:
        self.seek(0)

    def set_speed(self, speed: float) -> None:
        if speed <= 0:
            raise ValueError("speed must be positive")
        if speed == self.cursor.speed:
            return
        self.cursor.speed = speed
        self._emit()

    def close(self) -> None:
        self.closed = True
        self._generation += 1
        self._stop_playback()

    def progress(self) -> float:
        if not self.events:
            return 0.0
        return self.cursor.position / len(self.events)

    def format_time(self, position: int | None = None) -> str:
        position = self.cursor.position if position is None else position
        if position <= 0 or not self.events:
            return "0:00"
        position = min(position, len(self.events))
        elapsed = self.events[position - 1].timestamp - self.events[0].timestamp
        total_seconds = max(0, elapsed) // 1000
        return f"{total_seconds // 60}:{total_seconds % 60:02d}"

    def render(self, position: int | None = None) -> str:
        position = self.cursor.position if position is None else position
        return render_transcript(self.events[: max(0, position)])

    def delay_ms(self, position: int) -> float:
        """Wait before applying the event at ``position``, in playback milliseconds."""

        if position <= 0 or position >= len(self.events):
            return 0.0
        speed = self.cursor.speed
        gap = max(0, self.events[position].timestamp - self.events[position - 1].timestamp)
        delay = max(gap / speed, self.min_delay_ms)
        if self.max_delay_ms > 0:
            delay = min(delay, self.max_delay_ms / speed)
        return delay

    async def _run(self, handle: PlaybackHandle) -> None:
        while self.cursor.position < len(self.events):
            delay = self.delay_ms(self.cursor.position)
            if delay > 0:
                await self._sleep(delay / 1000.0)
            if handle.cancelled or handle is not self._handle:
                return
            self.cursor.position += 1
            self._emit()
        self._handle = None
        self.cursor.playing = False
        self._emit()

    def _apply(self, session_id: str, state: ReplayState) -> None:
        self.session_id = session_id
        self.state = state
        self.events = list(state.events)
        self.cursor.position = 0
        self.cursor.playing = False
        self.cursor.total = len(self.events)
        self._emit()

    def _stop_playback(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            handle.cancel()
        self.cursor.playing = False

    def _emit(self) -> None:
        self._changes.emit(replace(self.cursor, total=len(self.events)))
