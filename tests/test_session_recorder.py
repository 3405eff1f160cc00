from __future__ import annotations

import asyncio

import pytest

from cmdportal.session_recorder import SessionRecorder
from cmdportal.store import EventLogStore, MemoryStorage, session_log_key


def _clock(start: int = 1000, step: int = 10):
    state = {"now": start - step}

    def tick() -> int:
        state["now"] += step
        return state["now"]

    return tick


def test_records_commands_and_output_in_order(store: EventLogStore) -> None:
    recorder = SessionRecorder(store, "term-1", clock=_clock())

    recorder.record_command("ls -la")
    recorder.record_output("total 0\n")
    recorder.record_command("pwd")

    events = store.read(session_log_key("term-1"))
    assert [(e.kind, e.payload, e.timestamp) for e in events] == [
        ("command", "ls -la", 1000),
        ("output", "total 0\n", 1010),
        ("command", "pwd", 1020),
    ]


@pytest.mark.asyncio
async def test_record_returns_before_persisting(store: EventLogStore) -> None:
    recorder = SessionRecorder(store, "term-1")

    recorder.record_output("chunk 1")
    recorder.record_output("chunk 2")
    assert store.read(session_log_key("term-1")) == []

    await asyncio.sleep(0)

    assert [e.payload for e in store.read(session_log_key("term-1"))] == ["chunk 1", "chunk 2"]


def test_storage_failure_never_reaches_transport(failing_storage: MemoryStorage) -> None:
    store = EventLogStore(failing_storage)
    recorder = SessionRecorder(store, "term-1")

    recorder.record_command("make build")

    assert [e.payload for e in store.read(session_log_key("term-1"))] == ["make build"]
    assert store.durable is False


def test_max_events_rotates_old_chunks(store: EventLogStore) -> None:
    recorder = SessionRecorder(store, "term-1", max_events=3, clock=_clock())

    for n in range(5):
        recorder.record_output(f"line {n}\n")

    assert [e.payload for e in store.read(session_log_key("term-1"))] == [
        "line 2\n",
        "line 3\n",
        "line 4\n",
    ]


@pytest.mark.asyncio
async def test_close_flushes_and_stops_recording(store: EventLogStore) -> None:
    recorder = SessionRecorder(store, "term-1")

    recorder.record_command("exit")
    recorder.close()
    recorder.record_output("ignored")
    await asyncio.sleep(0)

    assert [e.payload for e in store.read(session_log_key("term-1"))] == ["exit"]


def test_sessions_use_disjoint_logs(store: EventLogStore) -> None:
    SessionRecorder(store, "a").record_command("echo a")
    SessionRecorder(store, "b").record_command("echo b")

    assert [e.payload for e in store.read(session_log_key("a"))] == ["echo a"]
    assert [e.payload for e in store.read(session_log_key("b"))] == ["echo b"]


def test_session_id_is_required(store: EventLogStore) -> None:
    with pytest.raises(ValueError):
        SessionRecorder(store, "  ")
