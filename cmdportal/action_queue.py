from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .connectivity import ConnectivityMonitor
from .listeners import Listeners
from .store import EventLogStore
from .store.types import (
    ACTION_FAILED,
    ACTION_QUEUE_KEY,
    DrainResult,
    LogEvent,
    QueuedAction,
)
from .store.utils import new_event_id, now_ms

logger = logging.getLogger(__name__)

Executor = Callable[[QueuedAction], Awaitable[bool]]


class ActionQueue:
    """Offline action queue on top of an event log.

    Actions are persisted before any delivery attempt and leave the log only
    once the executor reports success. Delivery is at-least-once; a failed
    action stays queued until a later drain succeeds or the user removes it.
    """

    def __init__(
        self,
        store: EventLogStore,
        executor: Executor,
        connectivity: ConnectivityMonitor,
        *,
        log_key: str = ACTION_QUEUE_KEY,
        retry_backoff_ms: int = 0,
        retry_backoff_max_ms: int = 300_000,
        warn_size: int = 0,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.store = store
        self.executor = executor
        self.connectivity = connectivity
        self.log_key = log_key
        self.retry_backoff_ms = retry_backoff_ms
        self.retry_backoff_max_ms = retry_backoff_max_ms
        self.warn_size = warn_size
        self.clock = clock
        self._draining = False
        self._in_flight: set[str] = set()
        self._size_changes: Listeners[int] = Listeners("action queue")
        self._unbind = connectivity.on_online(self.drain)

    def close(self) -> None:
        self._unbind()

    def subscribe(self, listener: Callable[[int], None]) -> Callable[[], None]:
        return self._size_changes.subscribe(listener)

    @property
    def draining(self) -> bool:
        return self._draining

    def actions(self) -> list[QueuedAction]:
        return [QueuedAction.from_event(event) for event in self.store.read(self.log_key)]

    def size(self) -> int:
        return len(self.store.read(self.log_key))

    def pending(self) -> list[QueuedAction]:
        return [action for action in self.actions() if action.deliverable]

    def get(self, action_id: str) -> QueuedAction | None:
        for action in self.actions():
            if action.id == action_id:
                return action
        return None

    async def enqueue(self, kind: str, payload: dict[str, Any] | None = None) -> QueuedAction:
        if not kind or not kind.strip():
            raise ValueError("action kind is required")
        action = QueuedAction(
            id=new_event_id(),
            kind=kind,
            action=dict(payload or {}),
            timestamp=self.clock(),
        )
        self.store.append(self.log_key, action.to_event())
        size = self._notify_size()
        if self.warn_size > 0 and size > self.warn_size:
            logger.warning("action queue holds %d actions (warn at %d)", size, self.warn_size)
        if not self.connectivity.online:
            return action
        await self._deliver(action)
        return self.get(action.id) or action

    async def drain(self) -> DrainResult:
        if self._draining:
            return DrainResult(skipped=True)
        self._draining = True
        result = DrainResult()
        try:
            batch = self.pending()
            for index, action in enumerate(batch):
                if not self.connectivity.online:
                    result.deferred += len(batch) - index
                    break
                if action.id in self._in_flight or not self._retry_due(action):
                    result.deferred += 1
                    continue
                if self.get(action.id) is None:
                    # Removed by the user while an earlier action was in flight.
                    continue
                error = await self._deliver(action)
                if error is None:
                    result.sent += 1
                else:
                    result.failed += 1
                    result.errors[action.id] = error
        finally:
            self._draining = False
        if result.sent or result.failed:
            logger.info(
                "action queue drain: sent=%d failed=%d deferred=%d",
                result.sent,
                result.failed,
                result.deferred,
            )
        return result

    def remove(self, action_id: str) -> bool:
        events = self.store.read(self.log_key)
        kept = [event for event in events if event.id != action_id]
        if len(kept) == len(events):
            return False
        self.store.replace(self.log_key, kept)
        self._notify_size()
        return True

    def clear(self) -> None:
        self.store.clear(self.log_key)
        self._notify_size()

    async def _deliver(self, action: QueuedAction) -> str | None:
        """Send one action and record the outcome. Returns the error text on failure."""

        self._in_flight.add(action.id)
        error: str | None = None
        try:
            try:
                ok = bool(await self.executor(action))
            except Exception as exc:
                ok = False
                error = str(exc) or type(exc).__name__
            if not ok and error is None:
                error = "executor reported failure"
        finally:
            self._in_flight.discard(action.id)
        if error is not None:
            logger.warning("action %s (%s) failed: %s", action.id, action.kind, error)
        self._record_outcome(action.id, error)
        return error

    def _record_outcome(self, action_id: str, error: str | None) -> None:
        events = self.store.read(self.log_key)
        updated: list[LogEvent] = []
        found = False
        for event in events:
            if event.id != action_id:
                updated.append(event)
                continue
            found = True
            if error is None:
                continue
            current = QueuedAction.from_event(event)
            updated.append(current.with_failure(error, self.clock()).to_event())
        if not found:
            return
        self.store.replace(self.log_key, updated)
        if error is None:
            self._notify_size()

    def _retry_due(self, action: QueuedAction) -> bool:
        if self.retry_backoff_ms <= 0 or action.status != ACTION_FAILED:
            return True
        if action.last_attempt_at is None or action.attempts <= 0:
            return True
        delay = min(
            self.retry_backoff_ms * 2 ** (action.attempts - 1),
            self.retry_backoff_max_ms,
        )
        return self.clock() >= action.last_attempt_at + delay

    def _notify_size(self) -> int:
        size = self.size()
        self._size_changes.emit(size)
        return size
