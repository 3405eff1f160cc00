from __future__ import annotations

import asyncio
from typing import Any
from urllib.parse import quote

from ..store import EventLogStore
from ..store.types import session_log_key
from .http_client import join_url, request_json


class HttpHistorySource:
    def __init__(self, base_url: str, *, timeout_s: float = 5.0) -> None:
        self.base_url = base_url
        self.timeout_s = timeout_s

    async def get_history(self, session_id: str) -> list[dict[str, Any]]:
        url = join_url(self.base_url, f"/api/sessions/{quote(session_id, safe='')}/history")
        _status, payload = await asyncio.to_thread(
            request_json, "GET", url, timeout_s=self.timeout_s, raise_for_status=True
        )
        payload = payload or {}
        events = payload.get("events", payload.get("items"))
        if not isinstance(events, list):
            return []
        return [item for item in events if isinstance(item, dict)]


class LocalHistorySource:
    """Serves session history recorded into the local event log store."""

    def __init__(self, store: EventLogStore) -> None:
        self.store = store

    async def get_history(self, session_id: str) -> list[dict[str, Any]]:
        return [
            {
                "id": event.id,
                "type": event.kind,
                "data": event.payload,
                "timestamp": event.timestamp,
            }
            for event in self.store.read(session_log_key(session_id))
        ]
