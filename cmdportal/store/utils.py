from __future__ import annotations

import time
from typing import Any
from uuid import uuid4


def now_ms() -> int:
    return int(time.time() * 1000)


def new_event_id() -> str:
    return uuid4().hex


def coerce_timestamp(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return None
