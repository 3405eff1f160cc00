from __future__ import annotations

import asyncio
from typing import Any

import pytest

from cmdportal.remote import LocalHistorySource
from cmdportal.session_recorder import SessionRecorder
from cmdportal.session_replay import (
    REPLAY_EMPTY,
    REPLAY_ERROR,
    REPLAY_READY,
    ReplayCursor,
    SessionReplayer,
    normalize_history,
    render_transcript,
)
from cmdportal.store import EventLogStore

HISTORY = [
    {"type": "command", "data": "ls", "timestamp": 0},
    {"type": "output", "data": "a.txt\n", "timestamp": 500},
    {"type": "output", "data": "b.txt", "timestamp": 1500},
]


class VirtualClock:
    def __init__(self) -> None:
        self.now_ms = 0.0

    async def sleep(self, seconds: float) -> None:
        self.now_ms += seconds * 1000
        await asyncio.sleep(0)


class GatedSleep:
    """Blocks every nonzero wait until released."""

    def __init__(self) -> None:
        self.gate = asyncio.Event()
        self.waits = 0

    async def sleep(self, seconds: float) -> None:
        self.waits += 1
        await self.gate.wait()


class StaticSource:
    def __init__(self, history: list[dict[str, Any]] | None = None, error: Exception | None = None):
        self.history = history or []
        self.error = error
        self.calls: list[str] = []
        self.gate: asyncio.Event | None = None

    async def get_history(self, session_id: str) -> list[dict[str, Any]]:
        self.calls.append(session_id)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.history


async def _play_timeline(speed: float) -> dict[int, float]:
    clock = VirtualClock()
    replayer = SessionReplayer(sleep=clock.sleep)
    await replayer.load("s1", HISTORY)
    reached: dict[int, float] = {}
    replayer.subscribe(lambda cursor: reached.setdefault(cursor.position, clock.now_ms))

    handle = replayer.play(speed)
    await handle.wait()

    assert replayer.cursor.position == 3
    assert replayer.cursor.playing is False
    return reached


@pytest.mark.asyncio
async def test_playback_follows_timestamp_gaps() -> None:
    reached = await _play_timeline(1)
    assert reached[1] == 0
    assert reached[2] == pytest.approx(500)
    assert reached[3] == pytest.approx(1500)


@pytest.mark.asyncio
async def test_playback_speed_scales_gaps() -> None:
    reached = await _play_timeline(2)
    assert reached[2] == pytest.approx(250)
    assert reached[3] == pytest.approx(750)


@pytest.mark.asyncio
async def test_playback_is_deterministic() -> None:
    assert await _play_timeline(1.5) == await _play_timeline(1.5)


@pytest.mark.asyncio
async def test_gaps_are_clamped() -> None:
    replayer = SessionReplayer(min_delay_ms=50, max_delay_ms=2000)
    await replayer.load(
        "s1",
        [
            {"type": "command", "data": "a", "timestamp": 0},
            {"type": "output", "data": "b", "timestamp": 0},
            {"type": "output", "data": "c", "timestamp": 60_000},
        ],
    )

    assert replayer.delay_ms(0) == 0
    assert replayer.delay_ms(1) == 50
    assert replayer.delay_ms(2) == 2000
    replayer.set_speed(4)
    assert replayer.delay_ms(2) == 500


@pytest.mark.asyncio
async def test_provided_history_skips_fetch() -> None:
    source = StaticSource(error=AssertionError("should not fetch"))
    replayer = SessionReplayer(source)

    state = await replayer.load("s1", HISTORY)

    assert state.status == REPLAY_READY
    assert source.calls == []
    assert [e.kind for e in replayer.events] == ["command", "output", "output"]


@pytest.mark.asyncio
async def test_failed_fetch_resolves_to_error_state() -> None:
    replayer = SessionReplayer(StaticSource(error=ConnectionError("api down")))

    state = await replayer.load("s1", [])

    assert state.status == REPLAY_ERROR
    assert state.error == "api down"
    assert state.renderable_message == "No history available"
    assert replayer.events == []
    assert replayer.play().cancelled is True


@pytest.mark.asyncio
async def test_empty_history_is_renderable() -> None:
    state = await SessionReplayer(StaticSource([])).load("s1")
    assert state.status == REPLAY_EMPTY
    assert state.renderable_message == "No events to replay"


@pytest.mark.asyncio
async def test_missing_source_is_an_error_state() -> None:
    state = await SessionReplayer().load("s1")
    assert state.status == REPLAY_ERROR


@pytest.mark.asyncio
async def test_fetch_after_close_is_discarded() -> None:
    source = StaticSource(HISTORY)
    source.gate = asyncio.Event()
    replayer = SessionReplayer(source)
    cursors: list[ReplayCursor] = []
    replayer.subscribe(cursors.append)

    task = asyncio.create_task(replayer.load("s1"))
    await asyncio.sleep(0)
    replayer.close()
    source.gate.set()
    state = await task

    assert state.status == REPLAY_READY
    assert replayer.events == []
    assert replayer.state.status == REPLAY_EMPTY
    assert cursors == []


@pytest.mark.asyncio
async def test_newer_load_wins_over_slow_fetch() -> None:
    source = StaticSource([{"type": "output", "data": "stale", "timestamp": 1}])
    source.gate = asyncio.Event()
    replayer = SessionReplayer(source)

    slow = asyncio.create_task(replayer.load("old"))
    await asyncio.sleep(0)
    await replayer.load("new", HISTORY)
    source.gate.set()
    await slow

    assert replayer.session_id == "new"
    assert len(replayer.events) == 3


@pytest.mark.asyncio
async def test_seek_mid_playback_pauses_and_cancels_timer() -> None:
    sleeper = GatedSleep()
    replayer = SessionReplayer(sleep=sleeper.sleep)
    await replayer.load("s1", HISTORY)

    handle = replayer.play()
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert replayer.cursor.position == 1
    assert sleeper.waits == 1

    replayer.seek(0)
    assert handle.cancelled is True
    assert replayer.cursor.playing is False
    await handle.wait()

    sleeper.gate.set()
    await asyncio.sleep(0)
    assert replayer.cursor.position == 0

    replayer.seek(0)
    replayer.seek(0)
    assert replayer.cursor.position == 0


@pytest.mark.asyncio
async def test_pause_and_close_stop_playback() -> None:
    sleeper = GatedSleep()
    replayer = SessionReplayer(sleep=sleeper.sleep)
    await replayer.load("s1", HISTORY)

    handle = replayer.play()
    await asyncio.sleep(0)
    replayer.pause()
    replayer.pause()
    handle.cancel()
    assert handle.cancelled is True
    assert replayer.cursor.playing is False

    second = replayer.play()
    await asyncio.sleep(0)
    replayer.close()
    sleeper.gate.set()
    await second.wait()
    await asyncio.sleep(0)

    assert second.cancelled is True
    assert replayer.cursor.position == 1


@pytest.mark.asyncio
async def test_play_at_end_restarts() -> None:
    clock = VirtualClock()
    replayer = SessionReplayer(sleep=clock.sleep)
    await replayer.load("s1", HISTORY)
    replayer.go_to_end()

    await replayer.play().wait()

    assert clock.now_ms == pytest.approx(1500)
    assert replayer.cursor.position == 3


@pytest.mark.asyncio
async def test_cursor_controls_and_rendering() -> None:
    replayer = SessionReplayer()
    await replayer.load(
        "s1",
        [
            {"type": "command", "data": "ls", "timestamp": 0},
            {"type": "output", "data": "a.txt", "timestamp": 1000},
            {"type": "input", "data": "cat a.txt", "timestamp": 2000},
            {"type": "output", "data": "hello\n", "timestamp": 65_000},
        ],
    )

    replayer.seek(99)
    assert replayer.cursor.position == 4
    assert replayer.format_time() == "1:05"
    replayer.seek(-3)
    assert replayer.cursor.position == 0
    assert replayer.format_time() == "0:00"

    replayer.step_forward()
    replayer.step_forward()
    assert replayer.render() == "$ ls\na.txt\n"
    replayer.step_backward()
    assert replayer.cursor.position == 1

    replayer.seek_fraction(0.5)
    assert replayer.cursor.position == 2
    assert replayer.progress() == 0.5

    replayer.reset()
    assert replayer.cursor.position == 0
    assert replayer.render(4) == "$ ls\na.txt\n$ cat a.txt\nhello\n"

    with pytest.raises(ValueError):
        replayer.set_speed(0)


def test_normalize_history_skips_invalid_and_sorts() -> None:
    events = normalize_history(
        [
            {"type": "output", "data": "late", "timestamp": 20},
            "garbage",
            {"data": "no type", "timestamp": 5},
            {"type": "command", "data": "early", "timestamp": 10},
            {"type": "output", "data": "inherits", "timestamp": None},
        ]
    )

    assert [(e.payload, e.timestamp) for e in events] == [
        ("early", 10),
        ("inherits", 10),
        ("late", 20),
    ]


def test_render_transcript_ignores_unknown_kinds() -> None:
    events = normalize_history(
        [
            {"type": "resize", "data": {"cols": 80}, "timestamp": 0},
            {"type": "command", "data": "whoami", "timestamp": 1},
        ]
    )
    assert render_transcript(events) == "$ whoami\n"


@pytest.mark.asyncio
async def test_replays_what_the_recorder_captured(store: EventLogStore) -> None:
    ticks = iter([100, 350, 900])
    recorder = SessionRecorder(store, "term-7", clock=lambda: next(ticks))
    recorder.record_command("uptime")
    recorder.record_output(" 10:00 up 3 days\n")
    recorder.record_command("exit")
    await asyncio.sleep(0)

    clock = VirtualClock()
    replayer = SessionReplayer(LocalHistorySource(store), sleep=clock.sleep, min_delay_ms=0)
    state = await replayer.load("term-7")
    await replayer.play().wait()

    assert state.status == REPLAY_READY
    assert clock.now_ms == pytest.approx(800)
    assert replayer.render() == "$ uptime\n 10:00 up 3 days\n$ exit\n"
