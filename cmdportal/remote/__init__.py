from __future__ import annotations

from .executor import HttpActionExecutor
from .history import HttpHistorySource, LocalHistorySource
from .http_client import RemoteRequestError, build_base_url, request_json

__all__ = [
    "HttpActionExecutor",
    "HttpHistorySource",
    "LocalHistorySource",
    "RemoteRequestError",
    "build_base_url",
    "request_json",
]
