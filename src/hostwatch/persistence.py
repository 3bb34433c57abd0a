"""
Best-effort history persistence.

Writes are spawned as background tasks and never awaited by the delivery
path. A failed write is logged at DEBUG and otherwise unobservable.
"""

import asyncio
import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Protocol

from hostwatch.models import MetricSnapshot

logger = logging.getLogger(__name__)


@dataclass(slots=True, frozen=True)
class HistoryRecord:
    """Condensed form of a snapshot kept in the historical store."""

    server_id: str
    timestamp: datetime
    cpu_usage_percent: float
    memory_usage_percent: float

    @classmethod
    def from_snapshot(cls, snapshot: MetricSnapshot) -> "HistoryRecord":
        memory = snapshot.memory
        percent = memory.used_bytes / memory.total_bytes * 100 if memory.total_bytes else 0.0
        return cls(
            server_id=snapshot.server_id,
            timestamp=snapshot.timestamp,
            cpu_usage_percent=snapshot.cpu.usage,
            memory_usage_percent=percent,
        )


class HistorySink(Protocol):
    async def write(self, record: HistoryRecord) -> None: ...


class NullHistorySink:
    """Discards every record."""

    async def write(self, record: HistoryRecord) -> None:
        return None


class SqliteHistorySink:
    """Appends records to a ``metrics_history`` table in a SQLite file."""

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS metrics_history (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            server_id TEXT NOT NULL,
            timestamp TEXT NOT NULL,
            cpu_usage REAL NOT NULL,
            memory_usage REAL NOT NULL
        )
    """

    def __init__(self, path: Path | str) -> None:
        self._path = str(path)
        conn = self._connect()
        try:
            with conn:
                conn.execute(self.SCHEMA)
        finally:
            conn.close()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self._path, timeout=5.0)

    async def write(self, record: HistoryRecord) -> None:
        await asyncio.to_thread(self._insert, record)

    def _insert(self, record: HistoryRecord) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    "INSERT INTO metrics_history (server_id, timestamp, cpu_usage, memory_usage)"
                    " VALUES (?, ?, ?, ?)",
                    (
                        record.server_id,
                        record.timestamp.isoformat(),
                        record.cpu_usage_percent,
                        record.memory_usage_percent,
                    ),
                )
        finally:
            conn.close()

    def recent(self, server_id: str, limit: int = 100) -> list[HistoryRecord]:
        """Most recent records for ``server_id``, newest first."""
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT server_id, timestamp, cpu_usage, memory_usage FROM metrics_history"
                " WHERE server_id = ? ORDER BY id DESC LIMIT ?",
                (server_id, limit),
            ).fetchall()
        finally:
            conn.close()
        return [
            HistoryRecord(
                server_id=row[0],
                timestamp=datetime.fromisoformat(row[1]),
                cpu_usage_percent=row[2],
                memory_usage_percent=row[3],
            )
            for row in rows
        ]


def persist_in_background(
    sink: HistorySink | None,
    snapshot: MetricSnapshot,
    pending: set[asyncio.Task],
) -> asyncio.Task | None:
    """
    Spawn an unawaited write of ``snapshot`` to ``sink``.

    The task is held in ``pending`` until it finishes so it is not garbage
    collected mid-flight. Returns None when there is no sink.
    """
    if sink is None:
        return None
    task = asyncio.get_running_loop().create_task(_write_quietly(sink, HistoryRecord.from_snapshot(snapshot)))
    pending.add(task)
    task.add_done_callback(pending.discard)
    return task


async def _write_quietly(sink: HistorySink, record: HistoryRecord) -> None:
    try:
        await sink.write(record)
    except Exception as exc:
        logger.debug("History write for %s dropped: %s", record.server_id, exc)
