"""
Pydantic models for the records the client owns.

Score records are written by gameplay and only mutated by the sync
engine. Identity and credentials are immutable values: they are
replaced, never edited in place.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class WireModel(BaseModel):
    """Base for models exchanged with the server in camelCase JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RecordState(str, Enum):
    """Where a score record is in its upload lifecycle."""

    UNSYNCED = "UNSYNCED"
    SYNCING = "SYNCING"
    SYNCED = "SYNCED"
    FAILED = "FAILED"


# Fields sent to the server; sync bookkeeping stays local.
SCORE_WIRE_FIELDS = {
    "score_id",
    "student_id",
    "device_id",
    "game_id",
    "score",
    "max_score",
    "time_seconds",
    "correct_answers",
    "incorrect_answers",
    "completion_percentage",
    "completed",
    "difficulty_level",
    "played_at",
    "metadata",
}


class ScoreRecord(WireModel):
    """A single locally-recorded game result."""

    score_id: str
    student_id: str
    device_id: str
    game_id: str
    score: int
    max_score: int
    played_at: datetime = Field(default_factory=utcnow)

    time_seconds: Optional[int] = None
    correct_answers: Optional[int] = None
    incorrect_answers: Optional[int] = None
    completion_percentage: Optional[int] = None
    completed: bool = False
    difficulty_level: Optional[str] = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    sync_state: RecordState = RecordState.UNSYNCED
    sync_attempts: int = 0
    last_sync_error: Optional[str] = None
    synced_at: Optional[datetime] = None

    def to_wire(self) -> dict[str, Any]:
        """Serialize the upload payload for this record."""
        return self.model_dump(mode="json", by_alias=True, include=SCORE_WIRE_FIELDS)


class DeviceIdentity(BaseModel):
    """Stable hardware fingerprint of this machine.

    ``stable`` is False only for the random fallback identity, which
    changes on every process start.
    """

    model_config = ConfigDict(frozen=True)

    device_id: str
    signals: tuple[str, ...] = ()
    stable: bool = True

    @property
    def short_id(self) -> str:
        return self.device_id[:12]


class Credential(WireModel):
    """A device-bound bearer token."""

    model_config = ConfigDict(frozen=True)

    token: str
    expires_at: datetime
    token_type: str = "Bearer"

    @field_validator("expires_at")
    @classmethod
    def expiry_is_utc(cls, v: datetime) -> datetime:
        """Servers may send a local timestamp without an offset; read it as UTC."""
        return as_utc(v)


class DeviceStatus(str, Enum):
    """Approval state of this device on the server."""

    UNREGISTERED = "UNREGISTERED"
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    REVOKED = "REVOKED"


class DeviceRecord(BaseModel):
    """Local record of this device, persisted under its identity hash."""

    device_id: str
    student_id: Optional[str] = None
    device_name: Optional[str] = None
    status: DeviceStatus = DeviceStatus.UNREGISTERED
    registration_code: Optional[str] = None
    registered_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    last_auth_at: Optional[datetime] = None
    token_expires_at: Optional[datetime] = None

    @property
    def is_approved(self) -> bool:
        return self.status == DeviceStatus.APPROVED
