from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from .models import COMPARISON_PREFIX, TIMELINE_PREFIX

logger = logging.getLogger(__name__)

MAX_STORAGE_BYTES = 4 * 1024 * 1024
EVICTABLE_PREFIXES = (TIMELINE_PREFIX, COMPARISON_PREFIX)
TIMESTAMP_FIELDS = ("updated_at", "created_at", "timestamp")
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class QuotaExceededError(Exception):
    """Raised when a write does not fit even after evicting old records."""


class KeyValueBackend(Protocol):
    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def delete(self, key: str) -> None: ...

    def keys(self) -> list[str]: ...


class MemoryBackend:
    def __init__(self, initial: dict[str, str] | None = None):
        self._data: dict[str, str] = dict(initial or {})

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)


class SqliteBackend:
    def __init__(self, db_file: Path):
        self._db_file = Path(db_file)
        self._db_file.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_file, timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        return conn

    @contextmanager
    def _connection(self):
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    def _init_schema(self) -> None:
        with self._lock, self._connection() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS records (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                );
                """
            )
            conn.commit()

    def get(self, key: str) -> str | None:
        with self._lock, self._connection() as conn:
            row = conn.execute("SELECT value FROM records WHERE key = ?", (key,)).fetchone()
        if row is None:
            return None
        return str(row["value"])

    def set(self, key: str, value: str) -> None:
        with self._lock, self._connection() as conn:
            conn.execute(
                """
                INSERT INTO records(key, value)
                VALUES(?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (key, value),
            )
            conn.commit()

    def delete(self, key: str) -> None:
        with self._lock, self._connection() as conn:
            conn.execute("DELETE FROM records WHERE key = ?", (key,))
            conn.commit()

    def keys(self) -> list[str]:
        with self._lock, self._connection() as conn:
            rows = conn.execute("SELECT key FROM records ORDER BY key ASC").fetchall()
        return [str(row["key"]) for row in rows]


class QuotaStorage:
    """Key/value persistence capped at ``max_bytes`` for the whole namespace.

    Sizes are counted as ``len(key) + len(value)``. When a write would cross
    the cap, the oldest timeline and comparison records are evicted first;
    if that still does not make room the write fails with
    :class:`QuotaExceededError`.
    """

    def __init__(self, backend: KeyValueBackend, max_bytes: int = MAX_STORAGE_BYTES):
        self._backend = backend
        self.max_bytes = int(max_bytes)
        self._lock = threading.RLock()

    def read(self, key: str) -> str | None:
        return self._backend.get(key)

    def read_json(self, key: str) -> dict[str, Any] | None:
        raw = self._backend.get(key)
        if raw is None:
            return None
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("Ignoring malformed record %s", key)
            return None
        return parsed if isinstance(parsed, dict) else None

    def keys(self, prefix: str = "") -> list[str]:
        return [key for key in self._backend.keys() if key.startswith(prefix)]

    def remove(self, key: str) -> bool:
        with self._lock:
            try:
                self._backend.delete(key)
            except Exception:  # noqa: BLE001
                logger.exception("Failed to remove %s", key)
                return False
        return True

    def usage(self, exclude: str | None = None) -> int:
        total = 0
        for key in self._backend.keys():
            if key == exclude:
                continue
            value = self._backend.get(key)
            if value is not None:
                total += len(key) + len(value)
        return total

    def write(self, key: str, value: str) -> None:
        record_size = len(value) + len(key)
        with self._lock:
            current = self.usage(exclude=key)
            if current + record_size > self.max_bytes:
                bytes_needed = record_size - (self.max_bytes - current)
                logger.info(
                    "Storage quota would be exceeded. Current: %dKB, Max: %dKB, Needed: %dKB",
                    round(current / 1024),
                    round(self.max_bytes / 1024),
                    round(record_size / 1024),
                )
                if not self.evict(bytes_needed, keep=key):
                    logger.error("Storage quota exceeded even after cleanup")
                    raise QuotaExceededError(
                        f"Writing {key} needs {bytes_needed} more bytes than eviction could free."
                    )
            self._backend.set(key, value)

    def evict(self, bytes_needed: int, keep: str | None = None) -> bool:
        """Delete the oldest evictable records until ``bytes_needed`` are freed."""
        candidates: list[tuple[datetime, str, int]] = []
        with self._lock:
            for key in self._backend.keys():
                if key == keep or not key.startswith(EVICTABLE_PREFIXES):
                    continue
                value = self._backend.get(key)
                if value is None:
                    continue
                candidates.append((_record_timestamp(value), key, len(key) + len(value)))

            candidates.sort(key=lambda item: item[0])

            freed_bytes = 0
            removed_count = 0
            for _, key, size in candidates:
                if freed_bytes >= bytes_needed:
                    break
                logger.info("Removing old item: %s (%dKB)", key, round(size / 1024))
                self._backend.delete(key)
                freed_bytes += size
                removed_count += 1

        logger.info("Cleaned up %d items, freed %dKB", removed_count, round(freed_bytes / 1024))
        return freed_bytes >= bytes_needed

    def summary(self) -> dict[str, int]:
        total = self.usage()
        return {
            "total_usage_kb": round(total / 1024),
            "max_size_kb": round(self.max_bytes / 1024),
            "percent_used": round(total / self.max_bytes * 100) if self.max_bytes else 0,
            "item_count": len(self._backend.keys()),
        }


def parse_timestamp(value: Any) -> datetime:
    if not isinstance(value, str) or not value.strip():
        return EPOCH
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return EPOCH
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _record_timestamp(raw: str) -> datetime:
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return EPOCH
    if not isinstance(data, dict):
        return EPOCH
    for field_name in TIMESTAMP_FIELDS:
        if data.get(field_name):
            return parse_timestamp(data[field_name])
    return EPOCH
