from __future__ import annotations

import asyncio
import datetime as dt
import json
from functools import partial

import typer
from rich import print
from rich.markup import escape

from cmdportal.action_queue import ActionQueue
from cmdportal.config import CmdPortalConfig
from cmdportal.connectivity import ConnectivityMonitor, tcp_probe
from cmdportal.remote import HttpActionExecutor
from cmdportal.store import EventLogStore

WATCH_POLL_S = 5.0


def build_monitor(cfg: CmdPortalConfig, *, online: bool) -> ConnectivityMonitor:
    probe = None
    if cfg.connectivity_probe_host:
        probe = partial(tcp_probe, cfg.connectivity_probe_host, cfg.connectivity_probe_port)
    return ConnectivityMonitor(
        online=online,
        probe=probe,
        poll_interval_s=cfg.connectivity_poll_s,
        debounce_ms=cfg.connectivity_debounce_ms,
    )


def build_queue(
    store: EventLogStore,
    cfg: CmdPortalConfig,
    *,
    online: bool,
    monitor: ConnectivityMonitor | None = None,
) -> ActionQueue:
    executor = HttpActionExecutor(cfg.api_base_url, timeout_s=cfg.request_timeout_s)
    return ActionQueue(
        store,
        executor,
        monitor or build_monitor(cfg, online=online),
        retry_backoff_ms=cfg.retry_backoff_ms,
        retry_backoff_max_ms=cfg.retry_backoff_max_ms,
        warn_size=cfg.queue_warn_size,
    )


def _format_ts(ts_ms: int) -> str:
    return dt.datetime.fromtimestamp(ts_ms / 1000, dt.UTC).strftime("%Y-%m-%d %H:%M:%S")


def queue_status_cmd(store: EventLogStore, cfg: CmdPortalConfig) -> None:
    """Show queued offline actions."""

    queue = build_queue(store, cfg, online=False)
    actions = queue.actions()
    if not actions:
        print("No pending actions")
        return
    print(f"[bold]{len(actions)} queued[/bold]")
    for action in actions:
        line = (
            f"- {action.id} [{action.kind}] {action.description} "
            f"status={action.status} attempts={action.attempts} "
            f"queued={_format_ts(action.timestamp)}"
        )
        if action.last_error:
            line += f" error={action.last_error}"
        print(escape(line))


def queue_add_cmd(
    store: EventLogStore,
    cfg: CmdPortalConfig,
    *,
    kind: str,
    description: str | None,
    endpoint: str | None,
    method: str,
    body: str | None,
) -> None:
    """Queue an action for delivery on the next sync."""

    payload: dict[str, object] = {"method": method.upper()}
    if description:
        payload["description"] = description
    if endpoint:
        payload["endpoint"] = endpoint
    if body:
        try:
            payload["body"] = json.loads(body)
        except json.JSONDecodeError as exc:
            print(f"[red]Invalid JSON body: {exc}[/red]")
            raise typer.Exit(code=1) from exc
    queue = build_queue(store, cfg, online=False)
    action = asyncio.run(queue.enqueue(kind, payload))
    print(f"Queued {action.id} ({queue.size()} pending)")


def queue_sync_cmd(store: EventLogStore, cfg: CmdPortalConfig) -> None:
    """Deliver queued actions now."""

    if cfg.connectivity_probe_host and not tcp_probe(
        cfg.connectivity_probe_host, cfg.connectivity_probe_port
    ):
        print(f"[yellow]Offline: {cfg.connectivity_probe_host} unreachable[/yellow]")
        raise typer.Exit(code=1)
    queue = build_queue(store, cfg, online=True)
    result = asyncio.run(queue.drain())
    print(
        f"Synced {result.sent} actions, {result.failed} failed, "
        f"{result.deferred} deferred ({queue.size()} still queued)"
    )
    for action_id, error in result.errors.items():
        print(escape(f"- {action_id}: {error}"))
    if result.failed:
        raise typer.Exit(code=1)


def queue_remove_cmd(store: EventLogStore, cfg: CmdPortalConfig, *, action_id: str) -> None:
    """Remove one queued action without sending it."""

    queue = build_queue(store, cfg, online=False)
    if not queue.remove(action_id):
        print(f"[red]No queued action {action_id}[/red]")
        raise typer.Exit(code=1)
    print(f"Removed {action_id}")


def queue_clear_cmd(store: EventLogStore, cfg: CmdPortalConfig) -> None:
    """Drop every queued action."""

    queue = build_queue(store, cfg, online=False)
    count = queue.size()
    queue.clear()
    print(f"Cleared {count} actions")


async def _watch(store: EventLogStore, cfg: CmdPortalConfig, seconds: float) -> int:
    monitor = build_monitor(cfg, online=False)
    if monitor.poll_interval_s <= 0:
        monitor.poll_interval_s = WATCH_POLL_S
    queue = build_queue(store, cfg, online=False, monitor=monitor)
    monitor.subscribe(
        lambda online: print("Online: syncing queued actions" if online else "Offline")
    )
    monitor.start()
    try:
        if seconds > 0:
            await asyncio.sleep(seconds)
        else:
            await asyncio.Event().wait()
    finally:
        monitor.stop()
        await monitor.wait_idle()
        queue.close()
    return queue.size()


def queue_watch_cmd(store: EventLogStore, cfg: CmdPortalConfig, *, seconds: float) -> None:
    """Probe the API host and sync queued actions each time it becomes reachable."""

    if not cfg.connectivity_probe_host:
        print("[red]Set connectivity_probe_host (CMDPORTAL_PROBE_HOST) to watch[/red]")
        raise typer.Exit(code=1)
    try:
        remaining = asyncio.run(_watch(store, cfg, seconds))
    except KeyboardInterrupt:
        remaining = build_queue(store, cfg, online=False).size()
    print(f"{remaining} actions still queued")
