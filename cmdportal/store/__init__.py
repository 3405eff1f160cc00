from __future__ import annotations

from ._store import EventLogStore
from .kv import MemoryStorage, SqliteStorage, Storage
from .types import (
    ACTION_FAILED,
    ACTION_PENDING,
    ACTION_QUEUE_KEY,
    ACTION_SENT,
    OFFLINE_CACHE_KEY,
    DrainResult,
    LogEvent,
    QueuedAction,
    session_log_key,
)

__all__ = [
    "ACTION_FAILED",
    "ACTION_PENDING",
    "ACTION_QUEUE_KEY",
    "ACTION_SENT",
    "OFFLINE_CACHE_KEY",
    "DrainResult",
    "EventLogStore",
    "LogEvent",
    "MemoryStorage",
    "QueuedAction",
    "SqliteStorage",
    "Storage",
    "session_log_key",
]
