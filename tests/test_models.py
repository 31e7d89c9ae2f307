"""Tests for record and wire models."""

from __future__ import annotations

from datetime import datetime, timezone

from scoresync.models import Credential, DeviceIdentity, as_utc
from scoresync.sync.models import (
    ConflictInfo,
    ConflictType,
    SyncConflict,
    SyncLogEntry,
    SyncStatus,
    UploadResponse,
)


class TestScoreRecord:
    """Tests for ScoreRecord serialization."""

    def test_wire_format_is_camel_case(self, make_record):
        """Upload payloads use camelCase and omit local bookkeeping."""
        wire = make_record(correct_answers=8).to_wire()
        assert wire["scoreId"].startswith("score-")
        assert wire["maxScore"] == 100
        assert wire["correctAnswers"] == 8
        assert "syncAttempts" not in wire
        assert "lastSyncError" not in wire


class TestUploadResponse:
    """Tests for parsing server responses."""

    def test_parse_camel_case(self):
        """Server JSON is accepted as-is."""
        response = UploadResponse.model_validate(
            {
                "success": True,
                "successCount": 2,
                "failureCount": 1,
                "errors": [],
                "message": "ok",
                "conflicts": [
                    {"scoreId": "s1", "type": "DUPLICATE_SCORE", "resolution": "SERVER_KEPT"},
                    {"scoreId": "s2", "type": "VALIDATION_ERROR", "resolution": "REJECTED"},
                ],
            }
        )
        assert response.success_count == 2
        assert [c.score_id for c in response.unresolved_conflicts] == ["s2"]

    def test_bytes_sent_not_serialized(self):
        """The local byte count is not part of the wire format."""
        dumped = UploadResponse(success=True, bytes_sent=10).model_dump(by_alias=True)
        assert "bytesSent" not in dumped


class TestSyncConflict:
    """Tests for conflict materialization."""

    def test_server_resolved(self):
        info = ConflictInfo(score_id="s1", type=ConflictType.DUPLICATE_SCORE, resolution="server_kept")
        conflict = SyncConflict.from_info(info)
        assert conflict.resolved
        assert conflict.resolved_by == "server"

    def test_needs_resolution(self):
        info = ConflictInfo(score_id="s1", type=ConflictType.STUDENT_MISMATCH, resolution="REJECTED")
        conflict = SyncConflict.from_info(info)
        assert not conflict.resolved
        assert conflict.resolved_at is None


class TestValues:
    """Tests for small value types."""

    def test_device_identity_short_id(self):
        assert DeviceIdentity(device_id="0123456789abcdef" * 4).short_id == "0123456789ab"

    def test_credential_defaults_to_bearer(self):
        cred = Credential.model_validate({"token": "a.b.c", "expiresAt": "2030-01-01T00:00:00Z"})
        assert cred.token_type == "Bearer"

    def test_as_utc(self):
        naive = datetime(2025, 1, 1, 12, 0)
        assert as_utc(naive).tzinfo == timezone.utc

    def test_log_entry_duration(self):
        entry = SyncLogEntry(
            started_at=datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc),
            finished_at=datetime(2025, 1, 1, 12, 0, 3, tzinfo=timezone.utc),
            status=SyncStatus.SUCCESS,
        )
        assert entry.duration_seconds == 3.0
