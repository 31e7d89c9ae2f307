"""
Local score store -- the authoritative copy of every recorded score.

The engine only ever moves records along
UNSYNCED -> SYNCING -> {SYNCED | FAILED}, with FAILED records becoming
eligible again on the next cycle. The SQLite store enforces that in
its WHERE clauses, so an out-of-order update is a no-op rather than a
corruption. Records are append-only: there is no delete.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional

from ..models import RecordState, ScoreRecord, utcnow
from .models import ConflictType, SyncConflict

logger = logging.getLogger("scoresync.sync.store")

SQLITE_TIMEOUT_S = 5.0
PENDING_STATES = (RecordState.UNSYNCED.value, RecordState.FAILED.value)


class ScoreStore(ABC):
    """Storage the sync engine reads batches from and reports back to.

    Every mutator must be atomic per record and safe to call while
    other threads read counts.
    """

    @abstractmethod
    def add(self, record: ScoreRecord) -> None:
        """Insert a new record (gameplay side)."""

    @abstractmethod
    def get(self, score_id: str) -> Optional[ScoreRecord]:
        """Fetch one record by id."""

    @abstractmethod
    def fetch_pending(
        self, limit: int, exclude: Iterable[str] = ()
    ) -> list[ScoreRecord]:
        """Oldest UNSYNCED/FAILED records, at most ``limit`` of them."""

    @abstractmethod
    def fetch_by_state(self, state: RecordState, limit: int = 100) -> list[ScoreRecord]:
        """Records currently in ``state``, oldest first."""

    @abstractmethod
    def count_pending(self) -> int:
        """Number of records not yet synced."""

    @abstractmethod
    def count_by_state(self) -> dict[RecordState, int]:
        """Record counts per sync state."""

    @abstractmethod
    def mark_syncing(self, score_ids: list[str]) -> int:
        """UNSYNCED/FAILED -> SYNCING. Returns rows changed."""

    @abstractmethod
    def mark_synced(self, score_ids: list[str]) -> int:
        """-> SYNCED (idempotent for already-synced records)."""

    @abstractmethod
    def recover_interrupted(self) -> int:
        """SYNCING -> FAILED for records a previous process left in flight.

        The upload outcome is unknown, so attempts are not counted.
        """

    @abstractmethod
    def mark_failed(
        self, score_ids: list[str], error: str, count_attempt: bool = True
    ) -> int:
        """SYNCING -> FAILED, recording the error.

        Args:
            count_attempt: Increment ``sync_attempts``. False when the
                outcome of the upload is unknown.
        """

    @abstractmethod
    def add_conflicts(self, conflicts: list[SyncConflict]) -> int:
        """Persist conflicts awaiting resolution. Unattributed ones are skipped."""

    @abstractmethod
    def open_conflicts(self, limit: Optional[int] = None) -> list[SyncConflict]:
        """Unresolved conflicts, oldest first."""

    @abstractmethod
    def resolve_conflict(self, score_id: str, resolved_by: str) -> bool:
        """Close every open conflict for ``score_id``.

        Returns:
            False if none was open.
        """


_SCHEMA = """
CREATE TABLE IF NOT EXISTS scores (
    score_id TEXT PRIMARY KEY,
    student_id TEXT NOT NULL,
    device_id TEXT NOT NULL,
    game_id TEXT NOT NULL,
    score INTEGER NOT NULL,
    max_score INTEGER NOT NULL,
    played_at TEXT NOT NULL,
    time_seconds INTEGER,
    correct_answers INTEGER,
    incorrect_answers INTEGER,
    completion_percentage INTEGER,
    completed INTEGER NOT NULL DEFAULT 0,
    difficulty_level TEXT,
    metadata TEXT NOT NULL DEFAULT '{}',
    sync_state TEXT NOT NULL DEFAULT 'UNSYNCED',
    sync_attempts INTEGER NOT NULL DEFAULT 0,
    last_sync_error TEXT,
    synced_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_scores_state ON scores (sync_state, played_at);
CREATE TABLE IF NOT EXISTS conflicts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    score_id TEXT NOT NULL,
    conflict_type TEXT NOT NULL,
    resolution TEXT NOT NULL DEFAULT '',
    message TEXT NOT NULL DEFAULT '',
    detected_at TEXT NOT NULL,
    resolved_at TEXT,
    resolved_by TEXT
);
CREATE INDEX IF NOT EXISTS idx_conflicts_open ON conflicts (resolved_at, score_id);
"""


class SqliteScoreStore(ScoreStore):
    """SQLite-backed store.

    One connection per thread (WAL mode lets readers run alongside a
    writer); writes are serialized by a process-local lock. Every
    connection is tracked so ``close()`` can release those opened on
    worker threads too.

    Args:
        db_path: Database file. Parent directories are created.
    """

    def __init__(self, db_path: Path):
        self._db_path = Path(db_path).expanduser()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._local = threading.local()
        self._write_lock = threading.Lock()
        self._conns_lock = threading.Lock()
        self._connections: list[sqlite3.Connection] = []
        with self._write_lock:
            self._conn().executescript(_SCHEMA)

    def _conn(self) -> sqlite3.Connection:
        conn = getattr(self._local, "conn", None)
        with self._conns_lock:
            if conn is not None and conn in self._connections:
                return conn
            # check_same_thread off so close() can run on any thread
            conn = sqlite3.connect(
                str(self._db_path), timeout=SQLITE_TIMEOUT_S, check_same_thread=False
            )
            self._connections.append(conn)
        conn.row_factory = sqlite3.Row
        conn.execute(f"PRAGMA busy_timeout={int(SQLITE_TIMEOUT_S * 1000)};")
        try:
            conn.execute("PRAGMA journal_mode=WAL;")
        except sqlite3.OperationalError:
            pass
        self._local.conn = conn
        return conn

    @property
    def open_connections(self) -> int:
        with self._conns_lock:
            return len(self._connections)

    def close(self) -> None:
        """Close the connections of every thread that used the store.

        A thread that touches the store afterwards opens a fresh one.
        """
        with self._conns_lock:
            connections, self._connections = self._connections, []
        for conn in connections:
            conn.close()
        self._local.conn = None

    def add(self, record: ScoreRecord) -> None:
        with self._write_lock:
            conn = self._conn()
            with conn:
                conn.execute(
                    """
                    INSERT INTO scores (
                        score_id, student_id, device_id, game_id, score, max_score,
                        played_at, time_seconds, correct_answers, incorrect_answers,
                        completion_percentage, completed, difficulty_level, metadata,
                        sync_state, sync_attempts, last_sync_error, synced_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.score_id,
                        record.student_id,
                        record.device_id,
                        record.game_id,
                        record.score,
                        record.max_score,
                        record.played_at.isoformat(),
                        record.time_seconds,
                        record.correct_answers,
                        record.incorrect_answers,
                        record.completion_percentage,
                        int(record.completed),
                        record.difficulty_level,
                        json.dumps(record.metadata),
                        record.sync_state.value,
                        record.sync_attempts,
                        record.last_sync_error,
                        record.synced_at.isoformat() if record.synced_at else None,
                    ),
                )
        logger.debug("Stored score %s", record.score_id)

    def get(self, score_id: str) -> Optional[ScoreRecord]:
        row = self._conn().execute(
            "SELECT * FROM scores WHERE score_id = ?", (score_id,)
        ).fetchone()
        return _row_to_record(row) if row else None

    def fetch_pending(
        self, limit: int, exclude: Iterable[str] = ()
    ) -> list[ScoreRecord]:
        if limit <= 0:
            return []
        excluded = list(exclude)
        sql = "SELECT * FROM scores WHERE sync_state IN (?, ?)"
        params: list = list(PENDING_STATES)
        if excluded:
            sql += f" AND score_id NOT IN ({_placeholders(excluded)})"
            params.extend(excluded)
        sql += " ORDER BY played_at, score_id LIMIT ?"
        params.append(limit)
        rows = self._conn().execute(sql, params).fetchall()
        return [_row_to_record(r) for r in rows]

    def fetch_by_state(self, state: RecordState, limit: int = 100) -> list[ScoreRecord]:
        rows = self._conn().execute(
            "SELECT * FROM scores WHERE sync_state = ? ORDER BY played_at, score_id LIMIT ?",
            (state.value, limit),
        ).fetchall()
        return [_row_to_record(r) for r in rows]

    def count_pending(self) -> int:
        row = self._conn().execute(
            "SELECT COUNT(*) FROM scores WHERE sync_state != ?",
            (RecordState.SYNCED.value,),
        ).fetchone()
        return int(row[0])

    def count_by_state(self) -> dict[RecordState, int]:
        counts = {state: 0 for state in RecordState}
        rows = self._conn().execute(
            "SELECT sync_state, COUNT(*) FROM scores GROUP BY sync_state"
        ).fetchall()
        for state, count in rows:
            counts[RecordState(state)] = int(count)
        return counts

    def mark_syncing(self, score_ids: list[str]) -> int:
        return self._update(
            score_ids,
            "sync_state = ?",
            [RecordState.SYNCING.value],
            PENDING_STATES,
        )

    def mark_synced(self, score_ids: list[str]) -> int:
        return self._update(
            score_ids,
            "sync_state = ?, synced_at = ?, last_sync_error = NULL",
            [RecordState.SYNCED.value, utcnow().isoformat()],
            (RecordState.SYNCING.value, RecordState.FAILED.value),
        )

    def mark_failed(
        self, score_ids: list[str], error: str, count_attempt: bool = True
    ) -> int:
        assignments = "sync_state = ?, last_sync_error = ?"
        if count_attempt:
            assignments += ", sync_attempts = sync_attempts + 1"
        return self._update(
            score_ids,
            assignments,
            [RecordState.FAILED.value, error],
            (RecordState.SYNCING.value,),
        )

    def recover_interrupted(self) -> int:
        with self._write_lock:
            conn = self._conn()
            with conn:
                cur = conn.execute(
                    "UPDATE scores SET sync_state = ?, last_sync_error = ? "
                    "WHERE sync_state = ?",
                    (
                        RecordState.FAILED.value,
                        "Interrupted during upload",
                        RecordState.SYNCING.value,
                    ),
                )
                recovered = cur.rowcount
        if recovered:
            logger.warning("Recovered %d score(s) left mid-upload", recovered)
        return recovered

    def add_conflicts(self, conflicts: list[SyncConflict]) -> int:
        rows = [
            (
                c.score_id,
                c.conflict_type.value,
                c.resolution,
                c.message,
                c.detected_at.isoformat(),
            )
            for c in conflicts
            if c.score_id and not c.resolved
        ]
        if not rows:
            return 0
        with self._write_lock:
            conn = self._conn()
            with conn:
                conn.executemany(
                    "INSERT INTO conflicts "
                    "(score_id, conflict_type, resolution, message, detected_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    rows,
                )
        return len(rows)

    def open_conflicts(self, limit: Optional[int] = None) -> list[SyncConflict]:
        sql = "SELECT * FROM conflicts WHERE resolved_at IS NULL ORDER BY detected_at, id"
        params: list = []
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        rows = self._conn().execute(sql, params).fetchall()
        return [_row_to_conflict(r) for r in rows]

    def resolve_conflict(self, score_id: str, resolved_by: str) -> bool:
        with self._write_lock:
            conn = self._conn()
            with conn:
                cur = conn.execute(
                    "UPDATE conflicts SET resolved_at = ?, resolved_by = ? "
                    "WHERE score_id = ? AND resolved_at IS NULL",
                    (utcnow().isoformat(), resolved_by, score_id),
                )
                return cur.rowcount > 0

    def _update(
        self,
        score_ids: list[str],
        assignments: str,
        values: list,
        from_states: tuple[str, ...],
    ) -> int:
        if not score_ids:
            return 0
        sql = (
            f"UPDATE scores SET {assignments} "
            f"WHERE score_id IN ({_placeholders(score_ids)}) "
            f"AND sync_state IN ({_placeholders(from_states)})"
        )
        with self._write_lock:
            conn = self._conn()
            with conn:
                cur = conn.execute(sql, [*values, *score_ids, *from_states])
                return cur.rowcount


def _placeholders(items) -> str:
    return ", ".join("?" for _ in items)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _row_to_record(row: sqlite3.Row) -> ScoreRecord:
    return ScoreRecord(
        score_id=row["score_id"],
        student_id=row["student_id"],
        device_id=row["device_id"],
        game_id=row["game_id"],
        score=row["score"],
        max_score=row["max_score"],
        played_at=_parse_ts(row["played_at"]),
        time_seconds=row["time_seconds"],
        correct_answers=row["correct_answers"],
        incorrect_answers=row["incorrect_answers"],
        completion_percentage=row["completion_percentage"],
        completed=bool(row["completed"]),
        difficulty_level=row["difficulty_level"],
        metadata=json.loads(row["metadata"] or "{}"),
        sync_state=RecordState(row["sync_state"]),
        sync_attempts=row["sync_attempts"],
        last_sync_error=row["last_sync_error"],
        synced_at=_parse_ts(row["synced_at"]),
    )


def _row_to_conflict(row: sqlite3.Row) -> SyncConflict:
    return SyncConflict(
        score_id=row["score_id"],
        conflict_type=ConflictType(row["conflict_type"]),
        resolution=row["resolution"],
        message=row["message"],
        detected_at=_parse_ts(row["detected_at"]),
        resolved=row["resolved_at"] is not None,
        resolved_at=_parse_ts(row["resolved_at"]),
        resolved_by=row["resolved_by"],
    )
