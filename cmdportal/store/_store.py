from __future__ import annotations

import bisect
import logging
from collections.abc import Iterable, Mapping
from typing import Any

from .. import db
from .kv import STORAGE_ERRORS, Storage
from .types import LogEvent
from .utils import coerce_timestamp, new_event_id, now_ms

logger = logging.getLogger(__name__)


def _event_timestamp(event: LogEvent) -> int:
    return event.timestamp


class EventLogStore:
    """Ordered, persisted event logs keyed by name.

    Every log is kept in memory once touched and written through to the
    backing storage after each mutation. Storage failures never reach the
    caller: the in-memory log keeps working and ``durable`` is ``False``
    until writes succeed again.

    A log whose persisted copy could not be read is never written back.
    Events appended meanwhile stay in memory and are merged into the
    persisted log on the first read that succeeds.
    """

    def __init__(self, storage: Storage) -> None:
        self.storage = storage
        self.durable = True
        self.last_error: str | None = None
        self._logs: dict[str, list[LogEvent]] = {}
        self._unreadable: set[str] = set()

    def append(self, log_key: str, event: LogEvent | Mapping[str, Any]) -> LogEvent:
        normalized = self._normalize(event)
        events = self._load(log_key)
        # Insert after any events sharing the timestamp to keep append order for ties.
        bisect.insort_right(events, normalized, key=_event_timestamp)
        self._persist(log_key, events)
        return normalized

    def read(self, log_key: str) -> list[LogEvent]:
        return list(self._load(log_key))

    def clear(self, log_key: str) -> None:
        self._logs[log_key] = []
        self._unreadable.discard(log_key)
        try:
            self.storage.remove(log_key)
        except STORAGE_ERRORS as exc:
            self._degrade(log_key, "remove", exc)
            return
        self._mark_durable()

    def replace(self, log_key: str, events: Iterable[LogEvent]) -> None:
        ordered = sorted(events, key=_event_timestamp)
        stale = log_key in self._unreadable
        seen = {event.id for event in self._logs.get(log_key, [])}
        # Loading first flags an unreadable persisted copy so it is not overwritten.
        current = self._load(log_key)
        if stale and log_key not in self._unreadable:
            # The caller only saw the in-memory events; keep the persisted ones.
            kept = {event.id for event in ordered}
            for event in current:
                if event.id not in seen and event.id not in kept:
                    bisect.insort_right(ordered, event, key=_event_timestamp)
        self._persist(log_key, ordered)

    def compact(self, log_key: str, max_events: int) -> int:
        """Keep only the newest ``max_events`` events. Returns how many were dropped."""

        if max_events <= 0:
            return 0
        events = self._load(log_key)
        dropped = len(events) - max_events
        if dropped <= 0:
            return 0
        del events[:dropped]
        self._persist(log_key, events)
        return dropped

    def keys(self) -> list[str]:
        known = {key for key, events in self._logs.items() if events}
        try:
            known.update(self.storage.keys())
        except STORAGE_ERRORS as exc:
            self._degrade("*", "list", exc)
        return sorted(known)

    def _normalize(self, event: LogEvent | Mapping[str, Any]) -> LogEvent:
        if isinstance(event, LogEvent):
            if not event.kind.strip():
                raise ValueError("event kind is required")
            return event
        kind = str(event.get("kind") or "")
        if not kind.strip():
            raise ValueError("event kind is required")
        timestamp = coerce_timestamp(event.get("timestamp"))
        return LogEvent(
            id=str(event.get("id") or new_event_id()),
            kind=kind,
            payload=event.get("payload"),
            timestamp=now_ms() if timestamp is None else timestamp,
        )

    def _load(self, log_key: str) -> list[LogEvent]:
        cached = self._logs.get(log_key)
        if cached is not None and log_key not in self._unreadable:
            return cached
        try:
            raw = self.storage.get(log_key)
        except STORAGE_ERRORS as exc:
            self._degrade(log_key, "read", exc)
            self._unreadable.add(log_key)
            return self._logs.setdefault(log_key, [])
        events = self._decode(log_key, raw)
        self._logs[log_key] = events
        if log_key not in self._unreadable:
            return events
        self._unreadable.discard(log_key)
        known = {event.id for event in events}
        missing = [event for event in cached or [] if event.id not in known]
        for event in missing:
            bisect.insort_right(events, event, key=_event_timestamp)
        if missing:
            logger.info("event log %s readable again; merged %d events", log_key, len(missing))
            self._persist(log_key, events)
        return events

    def _decode(self, log_key: str, raw: str | None) -> list[LogEvent]:
        if not raw:
            return []
        try:
            data = db.from_json(raw)
            if not isinstance(data, list):
                raise ValueError("event log must be a list")
            events = [LogEvent.from_dict(item) for item in data]
        except (ValueError, TypeError, KeyError) as exc:
            logger.warning("event log %s is corrupt; starting empty", log_key, exc_info=exc)
            return []
        events.sort(key=_event_timestamp)
        return events

    def _persist(self, log_key: str, events: list[LogEvent]) -> None:
        self._logs[log_key] = events
        if log_key in self._unreadable:
            self.durable = False
            logger.warning("event log %s kept in memory; persisted copy is unreadable", log_key)
            return
        try:
            if events:
                self.storage.set(log_key, db.to_json([event.to_dict() for event in events]))
            else:
                self.storage.remove(log_key)
        except (*STORAGE_ERRORS, TypeError, ValueError) as exc:
            self._degrade(log_key, "write", exc)
            return
        self._mark_durable()

    def _mark_durable(self) -> None:
        if self.durable or self._unreadable:
            return
        self.durable = True
        self.last_error = None
        logger.info("event log storage writable again")

    def _degrade(self, log_key: str, op: str, exc: BaseException) -> None:
        self.durable = False
        self.last_error = f"{op} {log_key}: {exc}"
        logger.warning(
            "event log %s failed for %s; continuing in memory", op, log_key, exc_info=exc
        )
