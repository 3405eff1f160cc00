from __future__ import annotations

import asyncio
import logging

from ..store.types import QueuedAction
from .http_client import join_url, request_json

logger = logging.getLogger(__name__)

ALLOWED_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE", "GET"})


class HttpActionExecutor:
    """Replays a queued action against the console API.

    The action payload names an ``endpoint``, an optional ``method`` (POST by
    default) and an optional JSON ``body``. Actions without an endpoint are
    local-only and count as delivered.
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = 5.0,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.base_url = base_url
        self.timeout_s = timeout_s
        self.headers = dict(headers or {})

    async def __call__(self, action: QueuedAction) -> bool:
        endpoint = action.action.get("endpoint")
        if not endpoint:
            logger.debug("action %s has no endpoint; nothing to send", action.id)
            return True
        method = str(action.action.get("method") or "POST").upper()
        if method not in ALLOWED_METHODS:
            raise ValueError(f"unsupported method: {method}")
        url = join_url(self.base_url, str(endpoint))
        headers = {"X-Idempotency-Key": action.id, **self.headers}
        await asyncio.to_thread(
            request_json,
            method,
            url,
            headers=headers,
            body=action.action.get("body"),
            timeout_s=self.timeout_s,
            raise_for_status=True,
        )
        return True
