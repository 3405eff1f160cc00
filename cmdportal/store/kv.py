from __future__ import annotations

import datetime as dt
import sqlite3
from pathlib import Path
from typing import Protocol

from .. import db


class Storage(Protocol):
    """Key to string storage. Missing keys read as ``None``."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...

    def clear(self) -> None: ...

    def keys(self) -> list[str]: ...


class MemoryStorage:
    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def clear(self) -> None:
        self._data.clear()

    def keys(self) -> list[str]:
        return sorted(self._data)


class SqliteStorage:
    def __init__(self, db_path: Path | str = db.DEFAULT_DB_PATH) -> None:
        self.db_path = Path(db_path).expanduser()
        self.conn = db.connect(self.db_path)
        db.initialize_schema(self.conn)

    def get(self, key: str) -> str | None:
        row = self.conn.execute("SELECT value FROM kv_storage WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        return str(row["value"])

    def set(self, key: str, value: str) -> None:
        now = dt.datetime.now(dt.UTC).isoformat()
        with self.conn:
            self.conn.execute(
                """
                INSERT INTO kv_storage(key, value, updated_at)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    updated_at = excluded.updated_at
                """,
                (key, value, now),
            )

    def remove(self, key: str) -> None:
        with self.conn:
            self.conn.execute("DELETE FROM kv_storage WHERE key = ?", (key,))

    def clear(self) -> None:
        with self.conn:
            self.conn.execute("DELETE FROM kv_storage")

    def keys(self) -> list[str]:
        rows = self.conn.execute("SELECT key FROM kv_storage ORDER BY key").fetchall()
        return [str(row["key"]) for row in rows]

    def close(self) -> None:
        self.conn.close()


# Error types a storage backend may raise; callers treat these as
# degraded durability rather than hard failures.
STORAGE_ERRORS: tuple[type[BaseException], ...] = (sqlite3.Error, OSError)
