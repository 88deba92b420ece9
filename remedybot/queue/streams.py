"""SQLite-backed append-only streams with consumer groups and a pending-entries list."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from remedybot.utils.helpers import ensure_dir, now_ms


@dataclass
class StreamEntry:
    id: str
    fields: dict[str, Any]
    created_at_ms: int = 0


@dataclass
class PendingEntry:
    id: str
    consumer: str
    idle_ms: int
    delivery_count: int


class StreamStore:
    """
    Durable stream log persisted in SQLite (WAL).

    Entry ids are monotonically increasing integers rendered as strings.
    Each entry is handed to exactly one consumer per group; it stays in the
    group's pending list until acknowledged, and idle pending entries can be
    claimed by another consumer for crash recovery.
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path).expanduser()
        ensure_dir(self.db_path.parent)
        self._init_db()

    @classmethod
    def default(cls) -> "StreamStore":
        return cls(Path.home() / ".remedybot" / "queue.db")

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """BEGIN IMMEDIATE so concurrent readers of one group never see the same entry."""
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")
        finally:
            conn.close()

    def _init_db(self) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS stream_entries (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    stream TEXT NOT NULL,
                    fields_json TEXT NOT NULL,
                    created_at_ms INTEGER NOT NULL,
                    visible_at_ms INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_stream_entries_stream_id ON stream_entries (stream, id)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS stream_groups (
                    stream TEXT NOT NULL,
                    name TEXT NOT NULL,
                    start_id INTEGER NOT NULL,
                    created_at_ms INTEGER NOT NULL,
                    PRIMARY KEY (stream, name)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS stream_deliveries (
                    stream TEXT NOT NULL,
                    grp TEXT NOT NULL,
                    entry_id INTEGER NOT NULL,
                    consumer TEXT NOT NULL,
                    delivered_at_ms INTEGER NOT NULL,
                    delivery_count INTEGER NOT NULL DEFAULT 1,
                    acked INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (stream, grp, entry_id)
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_stream_deliveries_pending ON stream_deliveries (stream, grp, acked)"
            )

    # ------------------------------------------------------------------
    # Writing and inspection
    # ------------------------------------------------------------------

    def add(self, stream: str, fields: dict[str, Any], *, delay_ms: int = 0) -> str:
        """Append an entry; with delay_ms it becomes readable only after that delay."""
        now = now_ms()
        with self._transaction() as conn:
            cur = conn.execute(
                """
                INSERT INTO stream_entries (stream, fields_json, created_at_ms, visible_at_ms)
                VALUES (?, ?, ?, ?)
                """,
                (stream, json.dumps(fields, ensure_ascii=False, default=str), now, now + max(0, delay_ms)),
            )
            return str(cur.lastrowid)

    def get(self, stream: str, entry_id: str) -> StreamEntry | None:
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT id, fields_json, created_at_ms FROM stream_entries WHERE stream = ? AND id = ?",
                (stream, int(entry_id)),
            ).fetchone()
        finally:
            conn.close()
        return _entry(row) if row else None

    def range(self, stream: str, *, start: str | None = None, end: str | None = None, count: int = 100) -> list[StreamEntry]:
        """Entries in id order, inclusive bounds."""
        query = "SELECT id, fields_json, created_at_ms FROM stream_entries WHERE stream = ?"
        params: list[Any] = [stream]
        if start is not None:
            query += " AND id >= ?"
            params.append(int(start))
        if end is not None:
            query += " AND id <= ?"
            params.append(int(end))
        query += " ORDER BY id ASC LIMIT ?"
        params.append(count)
        conn = self._connect()
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()
        return [_entry(row) for row in rows]

    def length(self, stream: str) -> int:
        conn = self._connect()
        try:
            row = conn.execute("SELECT COUNT(*) AS n FROM stream_entries WHERE stream = ?", (stream,)).fetchone()
        finally:
            conn.close()
        return int(row["n"])

    def delete(self, stream: str, entry_ids: list[str]) -> int:
        """Remove entries (and their delivery records); returns how many entries were removed."""
        ids = [int(i) for i in entry_ids]
        if not ids:
            return 0
        marks = ",".join("?" for _ in ids)
        with self._transaction() as conn:
            conn.execute(f"DELETE FROM stream_deliveries WHERE stream = ? AND entry_id IN ({marks})", [stream, *ids])
            cur = conn.execute(f"DELETE FROM stream_entries WHERE stream = ? AND id IN ({marks})", [stream, *ids])
            return cur.rowcount

    def trim(self, stream: str, max_len: int) -> int:
        """
        Drop the oldest entries beyond max_len, with their delivery records.

        An entry is only dropped once every group that can see it has
        acknowledged it; undelivered and pending entries are kept, so the
        stream may stay longer than max_len. Returns how many entries were removed.
        """
        if max_len < 0:
            raise ValueError("max_len must be >= 0")
        with self._transaction() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM stream_entries WHERE stream = ?", (stream,)).fetchone()
            excess = int(row["n"]) - max_len
            if excess <= 0:
                return 0
            rows = conn.execute(
                """
                SELECT e.id
                FROM stream_entries e
                WHERE e.stream = ?
                  AND NOT EXISTS (
                      SELECT 1 FROM stream_groups g
                      WHERE g.stream = e.stream
                        AND g.start_id < e.id
                        AND NOT EXISTS (
                            SELECT 1 FROM stream_deliveries d
                            WHERE d.stream = e.stream AND d.grp = g.name AND d.entry_id = e.id AND d.acked = 1
                        )
                  )
                ORDER BY e.id ASC
                LIMIT ?
                """,
                (stream, excess),
            ).fetchall()
            ids = [int(r["id"]) for r in rows]
            if not ids:
                return 0
            marks = ",".join("?" for _ in ids)
            conn.execute(f"DELETE FROM stream_deliveries WHERE stream = ? AND entry_id IN ({marks})", [stream, *ids])
            cur = conn.execute(f"DELETE FROM stream_entries WHERE stream = ? AND id IN ({marks})", [stream, *ids])
            return cur.rowcount

    # ------------------------------------------------------------------
    # Consumer groups
    # ------------------------------------------------------------------

    def ensure_group(self, stream: str, group: str, start: Literal["$", "0"] = "$") -> bool:
        """
        Create the group if missing. Returns True when created.

        start="$" delivers only entries added after creation; "0" delivers the
        whole stream.
        """
        with self._transaction() as conn:
            exists = conn.execute(
                "SELECT 1 FROM stream_groups WHERE stream = ? AND name = ?", (stream, group)
            ).fetchone()
            if exists:
                return False
            start_id = 0
            if start == "$":
                row = conn.execute(
                    "SELECT COALESCE(MAX(id), 0) AS m FROM stream_entries WHERE stream = ?", (stream,)
                ).fetchone()
                start_id = int(row["m"])
            conn.execute(
                "INSERT INTO stream_groups (stream, name, start_id, created_at_ms) VALUES (?, ?, ?, ?)",
                (stream, group, start_id, now_ms()),
            )
            return True

    def read_group(self, stream: str, group: str, consumer: str, count: int = 1) -> list[StreamEntry]:
        """Deliver up to count new, visible entries to consumer and mark them pending."""
        now = now_ms()
        with self._transaction() as conn:
            grp = conn.execute(
                "SELECT start_id FROM stream_groups WHERE stream = ? AND name = ?", (stream, group)
            ).fetchone()
            if grp is None:
                raise KeyError(f"No consumer group '{group}' on stream '{stream}'")
            rows = conn.execute(
                """
                SELECT e.id, e.fields_json, e.created_at_ms
                FROM stream_entries e
                WHERE e.stream = ?
                  AND e.id > ?
                  AND e.visible_at_ms <= ?
                  AND NOT EXISTS (
                      SELECT 1 FROM stream_deliveries d
                      WHERE d.stream = e.stream AND d.grp = ? AND d.entry_id = e.id
                  )
                ORDER BY e.id ASC
                LIMIT ?
                """,
                (stream, int(grp["start_id"]), now, group, count),
            ).fetchall()
            conn.executemany(
                """
                INSERT INTO stream_deliveries (stream, grp, entry_id, consumer, delivered_at_ms)
                VALUES (?, ?, ?, ?, ?)
                """,
                [(stream, group, int(row["id"]), consumer, now) for row in rows],
            )
        return [_entry(row) for row in rows]

    async def read_group_blocking(
        self,
        stream: str,
        group: str,
        consumer: str,
        count: int = 1,
        block_ms: int = 5000,
        poll_interval_ms: int = 100,
    ) -> list[StreamEntry]:
        """Poll read_group until entries arrive or block_ms elapses."""
        deadline = time.monotonic() + block_ms / 1000
        while True:
            entries = self.read_group(stream, group, consumer, count)
            if entries:
                return entries
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return []
            await asyncio.sleep(min(poll_interval_ms / 1000, remaining))

    def ack(self, stream: str, group: str, *entry_ids: str) -> int:
        """Remove entries from the group's pending list; returns how many were pending."""
        ids = [int(i) for i in entry_ids]
        if not ids:
            return 0
        marks = ",".join("?" for _ in ids)
        with self._transaction() as conn:
            cur = conn.execute(
                f"""
                UPDATE stream_deliveries SET acked = 1
                WHERE stream = ? AND grp = ? AND acked = 0 AND entry_id IN ({marks})
                """,
                [stream, group, *ids],
            )
            return cur.rowcount

    def pending(self, stream: str, group: str, *, consumer: str | None = None, count: int = 100) -> list[PendingEntry]:
        """Unacknowledged deliveries with idle time and delivery count."""
        query = """
            SELECT entry_id, consumer, delivered_at_ms, delivery_count
            FROM stream_deliveries
            WHERE stream = ? AND grp = ? AND acked = 0
        """
        params: list[Any] = [stream, group]
        if consumer is not None:
            query += " AND consumer = ?"
            params.append(consumer)
        query += " ORDER BY entry_id ASC LIMIT ?"
        params.append(count)
        now = now_ms()
        conn = self._connect()
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()
        return [
            PendingEntry(
                id=str(row["entry_id"]),
                consumer=str(row["consumer"]),
                idle_ms=max(0, now - int(row["delivered_at_ms"])),
                delivery_count=int(row["delivery_count"]),
            )
            for row in rows
        ]

    def claim(
        self,
        stream: str,
        group: str,
        consumer: str,
        *,
        min_idle_ms: int,
        entry_ids: list[str] | None = None,
        count: int = 10,
    ) -> list[StreamEntry]:
        """
        Reassign pending entries idle for at least min_idle_ms to consumer.

        Claimed entries get a fresh delivery time and an incremented delivery
        count. Entries deleted from the stream are dropped from the pending list.
        """
        now = now_ms()
        query = """
            SELECT d.entry_id
            FROM stream_deliveries d
            WHERE d.stream = ? AND d.grp = ? AND d.acked = 0 AND d.delivered_at_ms <= ?
        """
        params: list[Any] = [stream, group, now - min_idle_ms]
        if entry_ids:
            marks = ",".join("?" for _ in entry_ids)
            query += f" AND d.entry_id IN ({marks})"
            params.extend(int(i) for i in entry_ids)
        query += " ORDER BY d.entry_id ASC LIMIT ?"
        params.append(count)

        claimed: list[StreamEntry] = []
        with self._transaction() as conn:
            for row in conn.execute(query, params).fetchall():
                entry_id = int(row["entry_id"])
                entry = conn.execute(
                    "SELECT id, fields_json, created_at_ms FROM stream_entries WHERE stream = ? AND id = ?",
                    (stream, entry_id),
                ).fetchone()
                if entry is None:
                    conn.execute(
                        "DELETE FROM stream_deliveries WHERE stream = ? AND grp = ? AND entry_id = ?",
                        (stream, group, entry_id),
                    )
                    continue
                conn.execute(
                    """
                    UPDATE stream_deliveries
                    SET consumer = ?, delivered_at_ms = ?, delivery_count = delivery_count + 1
                    WHERE stream = ? AND grp = ? AND entry_id = ?
                    """,
                    (consumer, now, stream, group, entry_id),
                )
                claimed.append(_entry(entry))
        return claimed


def _entry(row: sqlite3.Row) -> StreamEntry:
    return StreamEntry(
        id=str(row["id"]),
        fields=json.loads(row["fields_json"]) if row["fields_json"] else {},
        created_at_ms=int(row["created_at_ms"]),
    )
