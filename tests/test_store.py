"""Tests for the SQLite score store."""

from __future__ import annotations

import threading

from scoresync.models import RecordState
from scoresync.sync.models import ConflictType, SyncConflict
from scoresync.sync.store import SqliteScoreStore


class TestAddAndGet:
    """Tests for inserting and reading records."""

    def test_roundtrip_preserves_fields(self, store, make_record):
        """Every field survives storage, including metadata."""
        record = make_record(time_seconds=42, completed=True, metadata={"level": 3})
        store.add(record)
        loaded = store.get(record.score_id)
        assert loaded == record

    def test_get_missing(self, store):
        """Unknown ids return None."""
        assert store.get("nope") is None

    def test_persists_across_instances(self, tmp_path, make_record):
        """Records live on disk, not in the store object."""
        db = tmp_path / "persist.db"
        first = SqliteScoreStore(db)
        record = make_record()
        first.add(record)
        first.close()
        second = SqliteScoreStore(db)
        assert second.get(record.score_id) is not None
        second.close()


class TestPending:
    """Tests for batch selection and counts."""

    def test_fetch_pending_oldest_first_and_bounded(self, store, make_record):
        """Batches are ordered by play time and capped at the limit."""
        records = [make_record() for _ in range(5)]
        for r in reversed(records):
            store.add(r)
        batch = store.fetch_pending(3)
        assert [r.score_id for r in batch] == [r.score_id for r in records[:3]]

    def test_fetch_pending_excludes_ids(self, store, make_record):
        """Excluded ids are skipped."""
        a, b = make_record(), make_record()
        store.add(a)
        store.add(b)
        assert [r.score_id for r in store.fetch_pending(10, exclude={a.score_id})] == [b.score_id]

    def test_failed_records_are_pending(self, store, make_record):
        """FAILED records are picked up again; SYNCED ones are not."""
        a, b = make_record(), make_record()
        store.add(a)
        store.add(b)
        store.mark_syncing([a.score_id, b.score_id])
        store.mark_failed([a.score_id], "boom")
        store.mark_synced([b.score_id])
        assert [r.score_id for r in store.fetch_pending(10)] == [a.score_id]
        assert store.count_pending() == 1

    def test_count_by_state(self, store, make_record):
        """Counts cover every state, zero included."""
        store.add(make_record())
        counts = store.count_by_state()
        assert counts[RecordState.UNSYNCED] == 1
        assert counts[RecordState.SYNCED] == 0

    def test_zero_limit(self, store, make_record):
        """A zero limit reads nothing."""
        store.add(make_record())
        assert store.fetch_pending(0) == []


class TestTransitions:
    """Tests for the enforced state machine."""

    def test_failure_increments_attempts(self, store, make_record):
        """A counted failure adds exactly one attempt and records the error."""
        record = make_record()
        store.add(record)
        store.mark_syncing([record.score_id])
        store.mark_failed([record.score_id], "rejected")
        loaded = store.get(record.score_id)
        assert loaded.sync_state == RecordState.FAILED
        assert loaded.sync_attempts == 1
        assert loaded.last_sync_error == "rejected"

    def test_uncounted_failure_keeps_attempts(self, store, make_record):
        """Unknown outcomes do not touch the attempt counter."""
        record = make_record()
        store.add(record)
        store.mark_syncing([record.score_id])
        store.mark_failed([record.score_id], "timeout", count_attempt=False)
        assert store.get(record.score_id).sync_attempts == 0

    def test_unsynced_cannot_jump_to_failed(self, store, make_record):
        """mark_failed only applies to records in flight."""
        record = make_record()
        store.add(record)
        assert store.mark_failed([record.score_id], "x") == 0
        assert store.get(record.score_id).sync_state == RecordState.UNSYNCED

    def test_synced_records_cannot_restart(self, store, make_record):
        """SYNCED is terminal for mark_syncing."""
        record = make_record()
        store.add(record)
        store.mark_syncing([record.score_id])
        store.mark_synced([record.score_id])
        assert store.mark_syncing([record.score_id]) == 0

    def test_mark_synced_is_idempotent(self, store, make_record):
        """Marking twice leaves one synced record."""
        record = make_record()
        store.add(record)
        store.mark_syncing([record.score_id])
        assert store.mark_synced([record.score_id]) == 1
        assert store.mark_synced([record.score_id]) == 0
        loaded = store.get(record.score_id)
        assert loaded.sync_state == RecordState.SYNCED
        assert loaded.synced_at is not None

    def test_recover_interrupted(self, store, make_record):
        """Records stuck mid-upload become retryable without an attempt."""
        record = make_record()
        store.add(record)
        store.mark_syncing([record.score_id])
        assert store.recover_interrupted() == 1
        loaded = store.get(record.score_id)
        assert loaded.sync_state == RecordState.FAILED
        assert loaded.sync_attempts == 0

    def test_empty_id_list(self, store):
        """No ids, no work."""
        assert store.mark_syncing([]) == 0


class TestConcurrency:
    """Tests for use from several threads."""

    def test_counts_while_writing(self, store, make_record):
        """Reads on other threads see consistent counts during writes."""
        records = [make_record() for _ in range(50)]
        errors = []

        def writer():
            for r in records:
                store.add(r)

        def reader():
            try:
                for _ in range(50):
                    assert 0 <= store.count_pending() <= len(records)
            except Exception as exc:  # collected for the main thread
                errors.append(exc)

        threads = [threading.Thread(target=writer)] + [
            threading.Thread(target=reader) for _ in range(3)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert errors == []
        assert store.count_pending() == 50

    def test_close_releases_worker_connections(self, tmp_path, make_record):
        """close() on one thread closes connections opened on others."""
        s = SqliteScoreStore(tmp_path / "threads.db")
        workers = [threading.Thread(target=s.count_pending) for _ in range(2)]
        for t in workers:
            t.start()
        for t in workers:
            t.join(timeout=5)
        assert s.open_connections == 3

        s.close()

        assert s.open_connections == 0
        record = make_record()
        s.add(record)
        assert s.get(record.score_id) is not None
        s.close()


class TestConflicts:
    """Tests for persisted conflicts."""

    def _conflict(self, score_id, **overrides) -> SyncConflict:
        fields = {
            "score_id": score_id,
            "conflict_type": ConflictType.STUDENT_MISMATCH,
            "message": "wrong student",
        }
        fields.update(overrides)
        return SyncConflict(**fields)

    def test_open_conflicts_survive_reopen(self, tmp_path):
        """Open conflicts are read back by a new store on the same file."""
        db = tmp_path / "conflicts.db"
        first = SqliteScoreStore(db)
        assert first.add_conflicts([self._conflict("s1"), self._conflict("s2")]) == 2
        first.close()

        second = SqliteScoreStore(db)
        loaded = second.open_conflicts()
        second.close()

        assert [c.score_id for c in loaded] == ["s1", "s2"]
        assert loaded[0].conflict_type == ConflictType.STUDENT_MISMATCH
        assert loaded[0].message == "wrong student"
        assert not loaded[0].resolved

    def test_unattributed_and_resolved_skipped(self, store):
        """Only conflicts that need a decision are stored."""
        added = store.add_conflicts(
            [self._conflict(None), self._conflict("s1", resolved=True, resolved_by="server")]
        )
        assert added == 0
        assert store.open_conflicts() == []

    def test_resolve(self, store):
        """Resolving closes the conflict and records who did it."""
        store.add_conflicts([self._conflict("s1"), self._conflict("s2")])

        assert store.resolve_conflict("s1", "ms.rivera")
        assert not store.resolve_conflict("s1", "ms.rivera")
        assert [c.score_id for c in store.open_conflicts()] == ["s2"]

    def test_limit(self, store):
        store.add_conflicts([self._conflict(f"s{i}") for i in range(5)])
        assert len(store.open_conflicts(limit=2)) == 2
