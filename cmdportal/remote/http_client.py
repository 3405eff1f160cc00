from __future__ import annotations

import json
from http.client import HTTPConnection, HTTPSConnection
from typing import Any
from urllib.parse import urlparse


class RemoteRequestError(RuntimeError):
    def __init__(self, status: int, payload: dict[str, Any] | None, url: str) -> None:
        detail = ""
        if payload and payload.get("error"):
            detail = f": {payload['error']}"
        super().__init__(f"{url} returned {status}{detail}")
        self.status = status
        self.payload = payload
        self.url = url


def build_base_url(address: str) -> str:
    trimmed = address.strip().rstrip("/")
    if not trimmed:
        return ""
    parsed = urlparse(trimmed)
    if parsed.scheme:
        return trimmed
    return f"http://{trimmed}"


def join_url(base_url: str, path: str) -> str:
    if urlparse(path).scheme:
        return path
    base = build_base_url(base_url)
    if not base:
        raise ValueError("missing base url")
    return f"{base}/{path.lstrip('/')}"


def _open(url: str, timeout_s: float) -> tuple[HTTPConnection, str]:
    parsed = urlparse(url)
    if not parsed.hostname:
        raise ValueError("missing hostname")
    if parsed.scheme == "https":
        conn: HTTPConnection = HTTPSConnection(
            parsed.hostname, parsed.port or 443, timeout=timeout_s
        )
    else:
        conn = HTTPConnection(parsed.hostname, parsed.port or 80, timeout=timeout_s)
    target = parsed.path or "/"
    if parsed.query:
        target = f"{target}?{parsed.query}"
    return conn, target


def _decode_payload(raw: bytes) -> dict[str, Any] | None:
    """Response bodies are always handed back as an object (or ``None`` when empty)."""

    if not raw:
        return None
    try:
        data = json.loads(raw.decode("utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError):
        snippet = raw[:240].decode("utf-8", errors="replace").strip()
        return {"error": f"non_json_response: {snippet}" if snippet else "non_json_response"}
    if isinstance(data, dict):
        return data
    if isinstance(data, list):
        return {"items": data}
    return {"error": f"unexpected_json_type: {type(data).__name__}"}


def request_json(
    method: str,
    url: str,
    *,
    headers: dict[str, str] | None = None,
    body: Any = None,
    timeout_s: float = 5.0,
    raise_for_status: bool = False,
) -> tuple[int, dict[str, Any] | None]:
    """Blocking JSON request. With ``raise_for_status`` a non-2xx answer raises
    ``RemoteRequestError`` instead of being returned."""

    conn, target = _open(url, timeout_s)
    request_headers = {"Accept": "application/json"}
    body_bytes = None
    if body is not None:
        body_bytes = json.dumps(body, ensure_ascii=False).encode("utf-8")
        request_headers["Content-Type"] = "application/json"
        request_headers["Content-Length"] = str(len(body_bytes))
    request_headers.update(headers or {})
    try:
        conn.request(method, target, body=body_bytes, headers=request_headers)
        resp = conn.getresponse()
        status = int(resp.status)
        payload = _decode_payload(resp.read())
    finally:
        conn.close()
    if raise_for_status and not 200 <= status < 300:
        raise RemoteRequestError(status, payload, url)
    return status, payload
