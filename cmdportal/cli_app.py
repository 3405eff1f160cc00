from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager

import typer
from rich import print

from . import __version__
from .commands.cache_cmds import cache_clear_cmd, cache_list_cmd
from .commands.config_cmds import config_set_cmd, config_show_cmd
from .commands.queue_cmds import (
    queue_add_cmd,
    queue_clear_cmd,
    queue_remove_cmd,
    queue_status_cmd,
    queue_sync_cmd,
    queue_watch_cmd,
)
from .commands.session_cmds import (
    session_clear_cmd,
    session_compact_cmd,
    session_list_cmd,
    session_replay_cmd,
    session_show_cmd,
)
from .config import CmdPortalConfig, load_config
from .offline_cache import OfflineCache
from .store import EventLogStore, SqliteStorage

app = typer.Typer(help="cmdportal: offline action queue and terminal session replay")
queue_app = typer.Typer(help="Offline action queue")
session_app = typer.Typer(help="Recorded terminal sessions")
cache_app = typer.Typer(help="Offline data cache")
config_app = typer.Typer(help="Configuration")
app.add_typer(queue_app, name="queue")
app.add_typer(session_app, name="session")
app.add_typer(cache_app, name="cache")
app.add_typer(config_app, name="config")


def _config(db_path: str | None) -> CmdPortalConfig:
    cfg = load_config()
    if db_path:
        cfg.db_path = db_path
    return cfg


@contextmanager
def _store(cfg: CmdPortalConfig) -> Iterator[EventLogStore]:
    storage = SqliteStorage(cfg.db_path)
    try:
        yield EventLogStore(storage)
    finally:
        storage.close()


@queue_app.command("status")
def queue_status(
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Show queued offline actions."""

    cfg = _config(db_path)
    with _store(cfg) as store:
        queue_status_cmd(store, cfg)


@queue_app.command("add")
def queue_add(
    kind: str = typer.Argument(..., help="Action type (command, save, sync, api, ...)"),
    description: str = typer.Option(None, help="Human readable description"),
    endpoint: str = typer.Option(None, help="API path to call when delivering"),
    method: str = typer.Option("POST", help="HTTP method"),
    body: str = typer.Option(None, help="JSON request body"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Queue an action for delivery on the next sync."""

    cfg = _config(db_path)
    with _store(cfg) as store:
        queue_add_cmd(
            store,
            cfg,
            kind=kind,
            description=description,
            endpoint=endpoint,
            method=method,
            body=body,
        )


@queue_app.command("sync")
def queue_sync(
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Deliver queued actions now."""

    cfg = _config(db_path)
    with _store(cfg) as store:
        queue_sync_cmd(store, cfg)


@queue_app.command("watch")
def queue_watch(
    seconds: float = typer.Option(0, help="Stop after N seconds (0 runs until interrupted)"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Sync queued actions whenever the API host becomes reachable."""

    cfg = _config(db_path)
    with _store(cfg) as store:
        queue_watch_cmd(store, cfg, seconds=seconds)


@queue_app.command("remove")
def queue_remove(
    action_id: str = typer.Argument(..., help="Queued action id"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Remove one queued action without sending it."""

    cfg = _config(db_path)
    with _store(cfg) as store:
        queue_remove_cmd(store, cfg, action_id=action_id)


@queue_app.command("clear")
def queue_clear(
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Drop every queued action."""

    cfg = _config(db_path)
    with _store(cfg) as store:
        queue_clear_cmd(store, cfg)


@session_app.command("list")
def session_list(
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """List recorded terminal sessions."""

    cfg = _config(db_path)
    with _store(cfg) as store:
        session_list_cmd(store)


@session_app.command("show")
def session_show(
    session_id: str = typer.Argument(..., help="Terminal session id"),
    limit: int = typer.Option(50, help="Show only the newest N events (0 for all)"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Print the recorded events of a session."""

    cfg = _config(db_path)
    with _store(cfg) as store:
        session_show_cmd(store, session_id=session_id, limit=limit)


@session_app.command("replay")
def session_replay(
    session_id: str = typer.Argument(..., help="Terminal session id"),
    speed: float = typer.Option(None, help="Playback speed multiplier"),
    remote: bool = typer.Option(False, "--remote", help="Fetch history from the API"),
    instant: bool = typer.Option(False, "--instant", help="Print the transcript without delays"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Play a recorded session back in the terminal."""

    cfg = _config(db_path)
    with _store(cfg) as store:
        session_replay_cmd(
            store, cfg, session_id=session_id, speed=speed, remote=remote, instant=instant
        )


@session_app.command("clear")
def session_clear(
    session_id: str = typer.Argument(..., help="Terminal session id"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Delete a recorded session log."""

    cfg = _config(db_path)
    with _store(cfg) as store:
        session_clear_cmd(store, session_id=session_id)


@session_app.command("compact")
def session_compact(
    session_id: str = typer.Argument(..., help="Terminal session id"),
    max_events: int = typer.Option(None, help="Events to keep (defaults to config)"),
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Trim a session log to its newest events."""

    cfg = _config(db_path)
    with _store(cfg) as store:
        session_compact_cmd(
            store,
            session_id=session_id,
            max_events=max_events if max_events is not None else cfg.session_max_events,
        )


@cache_app.command("list")
def cache_list(
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """List cached resources."""

    cfg = _config(db_path)
    storage = SqliteStorage(cfg.db_path)
    try:
        cache_list_cmd(OfflineCache(storage))
    finally:
        storage.close()


@cache_app.command("clear")
def cache_clear(
    db_path: str = typer.Option(None, help="Path to SQLite database"),
) -> None:
    """Remove every cached resource."""

    cfg = _config(db_path)
    storage = SqliteStorage(cfg.db_path)
    try:
        cache_clear_cmd(OfflineCache(storage))
    finally:
        storage.close()


@config_app.command("show")
def config_show() -> None:
    """Print the effective configuration."""

    config_show_cmd()


@config_app.command("set")
def config_set(
    key: str = typer.Argument(..., help="Config key, e.g. queue_warn_size"),
    value: str = typer.Argument("", help="New value (JSON or plain text)"),
    unset: bool = typer.Option(False, "--unset", help="Remove the key from the config file"),
) -> None:
    """Write a value to the config file."""

    config_set_cmd(key=key, value=value, unset=unset)


@app.command("version")
def version() -> None:
    """Print version."""

    print(__version__)


def main() -> None:
    app()
