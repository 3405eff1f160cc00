from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

from .utils import coerce_timestamp

ACTION_QUEUE_KEY = "offline-action-queue"
OFFLINE_CACHE_KEY = "offline-cache"
SESSION_LOG_PREFIX = "session:"

ACTION_PENDING = "pending"
ACTION_SENT = "sent"
ACTION_FAILED = "failed"

ACTION_STATUSES = (ACTION_PENDING, ACTION_SENT, ACTION_FAILED)


def session_log_key(session_id: str) -> str:
    return f"{SESSION_LOG_PREFIX}{session_id}"


@dataclass(frozen=True)
class LogEvent:
    id: str
    kind: str
    payload: Any
    timestamp: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "payload": self.payload,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LogEvent:
        return cls(
            id=str(data["id"]),
            kind=str(data["kind"]),
            payload=data.get("payload"),
            timestamp=int(data["timestamp"]),
        )


@dataclass(frozen=True)
class QueuedAction:
    """A queued user action, stored in its log as an envelope payload."""

    id: str
    kind: str
    action: dict[str, Any]
    timestamp: int
    status: str = ACTION_PENDING
    attempts: int = 0
    last_error: str | None = None
    last_attempt_at: int | None = None

    @property
    def description(self) -> str:
        return str(self.action.get("description") or self.kind)

    @property
    def deliverable(self) -> bool:
        return self.status in (ACTION_PENDING, ACTION_FAILED)

    def with_failure(self, error: str, now_ms: int) -> QueuedAction:
        return replace(
            self,
            status=ACTION_FAILED,
            attempts=self.attempts + 1,
            last_error=error,
            last_attempt_at=now_ms,
        )

    def to_event(self) -> LogEvent:
        return LogEvent(
            id=self.id,
            kind=self.kind,
            payload={
                "action": self.action,
                "status": self.status,
                "attempts": self.attempts,
                "last_error": self.last_error,
                "last_attempt_at": self.last_attempt_at,
            },
            timestamp=self.timestamp,
        )

    @classmethod
    def from_event(cls, event: LogEvent) -> QueuedAction:
        envelope = event.payload if isinstance(event.payload, dict) else {}
        action = envelope.get("action")
        status = str(envelope.get("status") or ACTION_PENDING)
        if status not in ACTION_STATUSES:
            status = ACTION_PENDING
        try:
            attempts = max(0, int(envelope.get("attempts") or 0))
        except (TypeError, ValueError, OverflowError):
            attempts = 0
        last_error = envelope.get("last_error")
        return cls(
            id=event.id,
            kind=event.kind,
            action=action if isinstance(action, dict) else {},
            timestamp=event.timestamp,
            status=status,
            attempts=attempts,
            last_error=None if last_error is None else str(last_error),
            last_attempt_at=coerce_timestamp(envelope.get("last_attempt_at")),
        )


@dataclass
class DrainResult:
    sent: int = 0
    failed: int = 0
    deferred: int = 0
    skipped: bool = False
    errors: dict[str, str] = field(default_factory=dict)
