from __future__ import annotations

import asyncio
import logging
import socket
from collections.abc import Awaitable, Callable
from typing import Any

from .listeners import Listeners

logger = logging.getLogger(__name__)

OnlineHandler = Callable[[], Awaitable[Any]]
Probe = Callable[[], bool]


def tcp_probe(host: str, port: int, timeout_s: float = 0.5) -> bool:
    try:
        infos = socket.getaddrinfo(host, port, socket.AF_UNSPEC, socket.SOCK_STREAM)
    except OSError:
        return False
    for family, socktype, proto, _canon, address in infos:
        try:
            with socket.socket(family, socktype, proto) as sock:
                sock.settimeout(timeout_s)
                if sock.connect_ex(address) == 0:
                    return True
        except OSError:
            continue
    return False


class ConnectivityMonitor:
    """Single owner of the process-wide online flag.

    ``set_online`` is the entry point for the environment's connectivity
    signal. An optional ``probe`` is polled by ``start()`` for environments
    that have no push signal.
    """

    def __init__(
        self,
        *,
        online: bool = True,
        probe: Probe | None = None,
        poll_interval_s: float = 0.0,
        debounce_ms: int = 0,
    ) -> None:
        self._online = online
        self.probe = probe
        self.poll_interval_s = poll_interval_s
        self.debounce_ms = debounce_ms
        self._changes: Listeners[bool] = Listeners("connectivity")
        self._online_handlers: list[OnlineHandler] = []
        self._drain_timer: asyncio.TimerHandle | None = None
        self._drain_task: asyncio.Task[None] | None = None
        self._poll_task: asyncio.Task[None] | None = None

    @property
    def online(self) -> bool:
        return self._online

    def subscribe(self, listener: Callable[[bool], None]) -> Callable[[], None]:
        return self._changes.subscribe(listener)

    def on_online(self, handler: OnlineHandler) -> Callable[[], None]:
        self._online_handlers.append(handler)

        def remove() -> None:
            if handler in self._online_handlers:
                self._online_handlers.remove(handler)

        return remove

    def set_online(self, value: bool) -> None:
        value = bool(value)
        if value == self._online:
            return
        self._online = value
        logger.info("connectivity: %s", "online" if value else "offline")
        self._changes.emit(value)
        if value:
            self._schedule_online_handlers()
        else:
            self._cancel_drain_timer()

    def start(self) -> None:
        if self.probe is None or self.poll_interval_s <= 0:
            return
        if self._poll_task is not None and not self._poll_task.done():
            return
        self._poll_task = asyncio.get_running_loop().create_task(self._poll(self.probe))

    def stop(self) -> None:
        self._cancel_drain_timer()
        if self._poll_task is not None:
            self._poll_task.cancel()
            self._poll_task = None

    @property
    def draining(self) -> bool:
        return self._drain_task is not None and not self._drain_task.done()

    async def wait_idle(self) -> None:
        """Wait for a drain started by a transition (mostly useful in tests)."""

        task = self._drain_task
        if task is not None:
            await asyncio.shield(task)

    def _schedule_online_handlers(self) -> None:
        if not self._online_handlers:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("connectivity: no running loop, online handlers not scheduled")
            return
        self._cancel_drain_timer()
        if self.debounce_ms > 0:
            self._drain_timer = loop.call_later(self.debounce_ms / 1000.0, self._start_drain)
        else:
            self._start_drain()

    def _start_drain(self) -> None:
        self._drain_timer = None
        if not self._online:
            return
        if self.draining:
            return
        self._drain_task = asyncio.get_running_loop().create_task(self._run_online_handlers())

    async def _run_online_handlers(self) -> None:
        for handler in list(self._online_handlers):
            try:
                await handler()
            except Exception as exc:
                logger.warning("connectivity: online handler failed", exc_info=exc)

    def _cancel_drain_timer(self) -> None:
        if self._drain_timer is not None:
            self._drain_timer.cancel()
            self._drain_timer = None

    async def _poll(self, probe: Probe) -> None:
        while True:
            try:
                reachable = await asyncio.to_thread(probe)
            except Exception as exc:
                logger.warning("connectivity probe failed", exc_info=exc)
                reachable = False
            self.set_online(reachable)
            await asyncio.sleep(self.poll_interval_s)
