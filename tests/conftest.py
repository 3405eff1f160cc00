from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from cmdportal.store import EventLogStore, MemoryStorage


@pytest.fixture(autouse=True)
def _isolate_config(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("CMDPORTAL_CONFIG", str(tmp_path / "config" / "config.json"))
    for name in ("CMDPORTAL_DB", "CMDPORTAL_API_BASE_URL", "CMDPORTAL_PROBE_HOST"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def store(storage: MemoryStorage) -> EventLogStore:
    return EventLogStore(storage)


class FailingStorage(MemoryStorage):
    """Reads work, every write fails like a full disk."""

    def set(self, key: str, value: str) -> None:
        raise sqlite3.OperationalError("database or disk is full")

    def remove(self, key: str) -> None:
        raise sqlite3.OperationalError("database or disk is full")


@pytest.fixture
def failing_storage() -> FailingStorage:
    return FailingStorage()


class FlakyStorage(MemoryStorage):
    """Fails the next ``read_failures`` reads and, while ``fail_writes`` is set, every write."""

    def __init__(self) -> None:
        super().__init__()
        self.read_failures = 0
        self.fail_writes = False

    def get(self, key: str) -> str | None:
        if self.read_failures > 0:
            self.read_failures -= 1
            raise sqlite3.OperationalError("database is locked")
        return super().get(key)

    def set(self, key: str, value: str) -> None:
        if self.fail_writes:
            raise sqlite3.OperationalError("database is locked")
        super().set(key, value)


@pytest.fixture
def flaky_storage() -> FlakyStorage:
    return FlakyStorage()
