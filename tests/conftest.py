"""Shared test fixtures for scoresync."""

from __future__ import annotations

import itertools
from datetime import datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from scoresync import hardware
from scoresync.models import DeviceIdentity, ScoreRecord
from scoresync.sync.store import SqliteScoreStore

DEVICE_ID = "a" * 64


@pytest.fixture(autouse=True)
def _fresh_identity_cache():
    """Every test starts without a cached hardware identity."""
    hardware.clear_cache()
    yield
    hardware.clear_cache()


@pytest.fixture
def home(tmp_path: Path) -> Path:
    """Provide a temporary client home directory."""
    client_home = tmp_path / ".scoresync"
    client_home.mkdir()
    return client_home


@pytest.fixture
def store(tmp_path: Path):
    """A SQLite score store in a temp directory."""
    s = SqliteScoreStore(tmp_path / "scores.db")
    yield s
    s.close()


_score_seq = itertools.count(1)


@pytest.fixture
def make_record():
    """Factory for score records with increasing play times."""
    base = datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)

    def _make(**overrides) -> ScoreRecord:
        n = next(_score_seq)
        fields = {
            "score_id": f"score-{n:04d}",
            "student_id": "student-42",
            "device_id": DEVICE_ID,
            "game_id": "fractions-1",
            "score": 80,
            "max_score": 100,
            "played_at": base + timedelta(minutes=n),
        }
        fields.update(overrides)
        return ScoreRecord(**fields)

    return _make


@pytest.fixture
def fake_identifier():
    """Hardware identifier stand-in with a fixed identity."""
    identifier = MagicMock()
    identifier.identity.return_value = DeviceIdentity(
        device_id=DEVICE_ID, signals=("CPU:CPU-1",)
    )
    return identifier
