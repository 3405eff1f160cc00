from __future__ import annotations

import asyncio

import typer
from rich import print
from rich.markup import escape

from cmdportal.config import CmdPortalConfig
from cmdportal.remote import HttpHistorySource, LocalHistorySource
from cmdportal.session_replay import (
    REPLAY_READY,
    HistorySource,
    ReplayCursor,
    SessionReplayer,
    render_transcript,
)
from cmdportal.store import EventLogStore, session_log_key
from cmdportal.store.types import SESSION_LOG_PREFIX


def session_list_cmd(store: EventLogStore) -> None:
    """List recorded terminal sessions."""

    keys = [key for key in store.keys() if key.startswith(SESSION_LOG_PREFIX)]
    if not keys:
        print("No recorded sessions")
        return
    for key in keys:
        events = store.read(key)
        print(f"- {key[len(SESSION_LOG_PREFIX):]} events={len(events)}")


def session_show_cmd(store: EventLogStore, *, session_id: str, limit: int) -> None:
    """Print the recorded events of a session."""

    events = store.read(session_log_key(session_id))
    if not events:
        print(f"No events recorded for {session_id}")
        return
    start = events[0].timestamp
    for event in events[-limit:] if limit > 0 else events:
        data = str(event.payload if event.payload is not None else "").rstrip("\n")
        print(f"+{event.timestamp - start:>8}ms {event.kind:<8} {escape(repr(data))}")


async def _replay(
    source: HistorySource,
    session_id: str,
    *,
    speed: float,
    cfg: CmdPortalConfig,
    instant: bool,
) -> bool:
    replayer = SessionReplayer(
        source,
        speed=speed,
        min_delay_ms=cfg.replay_min_delay_ms,
        max_delay_ms=cfg.replay_max_delay_ms,
    )
    try:
        state = await replayer.load(session_id)
        if state.status != REPLAY_READY:
            print(f"[yellow]{state.renderable_message}[/yellow]")
            if state.error:
                print(f"- {state.error}")
            return False
        if instant:
            typer.echo(replayer.render(len(replayer.events)), nl=False)
            return True
        shown = 0

        def on_change(cursor: ReplayCursor) -> None:
            nonlocal shown
            if cursor.position > shown:
                typer.echo(render_transcript(replayer.events[shown : cursor.position]), nl=False)
            shown = cursor.position

        replayer.subscribe(on_change)
        await replayer.play().wait()
        return True
    finally:
        replayer.close()


def session_replay_cmd(
    store: EventLogStore,
    cfg: CmdPortalConfig,
    *,
    session_id: str,
    speed: float | None,
    remote: bool,
    instant: bool,
) -> None:
    """Play a recorded session back in the terminal."""

    if speed is not None and speed <= 0:
        print("[red]--speed must be positive[/red]")
        raise typer.Exit(code=1)
    source: HistorySource
    if remote:
        source = HttpHistorySource(cfg.api_base_url, timeout_s=cfg.request_timeout_s)
    else:
        source = LocalHistorySource(store)
    ok = asyncio.run(
        _replay(
            source,
            session_id,
            speed=speed or cfg.replay_default_speed,
            cfg=cfg,
            instant=instant,
        )
    )
    if not ok:
        raise typer.Exit(code=1)


def session_clear_cmd(store: EventLogStore, *, session_id: str) -> None:
    """Delete a recorded session log."""

    store.clear(session_log_key(session_id))
    print(f"Cleared session {session_id}")


def session_compact_cmd(store: EventLogStore, *, session_id: str, max_events: int) -> None:
    """Trim a session log to its newest events."""

    dropped = store.compact(session_log_key(session_id), max_events)
    print(f"Dropped {dropped} events from {session_id}")
