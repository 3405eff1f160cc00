from __future__ import annotations

import datetime as dt

from rich import print
from rich.markup import escape

from cmdportal.offline_cache import OfflineCache


def _format_bytes(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / 1024 / 1024:.1f} MB"


def cache_list_cmd(cache: OfflineCache) -> None:
    """List cached resources."""

    entries = cache.get_all()
    print(f"[bold]Cached Data[/bold] ({_format_bytes(cache.size_bytes())})")
    if not entries:
        print("No cached data")
        return
    for resource, entry in sorted(entries.items()):
        cached_at = dt.datetime.fromtimestamp(int(entry.get("timestamp") or 0) / 1000, dt.UTC)
        print(escape(f"- {resource} cached={cached_at.date().isoformat()}"))


def cache_clear_cmd(cache: OfflineCache) -> None:
    """Remove every cached resource."""

    cache.clear()
    print("Cleared offline cache")
