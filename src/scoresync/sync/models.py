"""
Sync data models -- cycle status, statistics, conflicts and wire DTOs.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..models import WireModel, utcnow


class SyncStatus(str, Enum):
    """State of the sync engine as seen by pollers."""

    IDLE = "IDLE"
    SYNCING = "SYNCING"
    SUCCESS = "SUCCESS"
    ERROR = "ERROR"
    CONFLICT = "CONFLICT"


class ConflictType(str, Enum):
    """Business-rule rejections the server can report per item."""

    DUPLICATE_SCORE = "DUPLICATE_SCORE"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    STUDENT_MISMATCH = "STUDENT_MISMATCH"
    DEVICE_NOT_AUTHORIZED = "DEVICE_NOT_AUTHORIZED"


# Server resolutions meaning the item needs no further action.
SERVER_RESOLVED = frozenset({"SERVER_KEPT"})


class SyncStatistics(BaseModel):
    """Counters accumulated over the lifetime of the engine."""

    model_config = ConfigDict(frozen=True)

    total_syncs: int = 0
    successful_syncs: int = 0
    items_uploaded: int = 0
    bytes_uploaded: int = 0
    conflicts_detected: int = 0
    conflicts_resolved: int = 0

    def success_rate(self) -> float:
        """Percentage of cycles that succeeded; 0.0 before the first cycle."""
        if self.total_syncs == 0:
            return 0.0
        return self.successful_syncs / self.total_syncs * 100


class ConflictInfo(WireModel):
    """A per-item conflict as reported by the server."""

    score_id: Optional[str] = None
    type: ConflictType
    resolution: str = ""
    message: str = ""

    @property
    def server_resolved(self) -> bool:
        return self.resolution.upper() in SERVER_RESOLVED


class SyncConflict(BaseModel):
    """A conflict queued for external resolution."""

    score_id: Optional[str]
    conflict_type: ConflictType
    resolution: str = ""
    message: str = ""
    detected_at: datetime = Field(default_factory=utcnow)
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None

    @classmethod
    def from_info(cls, info: ConflictInfo) -> "SyncConflict":
        return cls(
            score_id=info.score_id,
            conflict_type=info.type,
            resolution=info.resolution,
            message=info.message,
            resolved=info.server_resolved,
            resolved_at=utcnow() if info.server_resolved else None,
            resolved_by="server" if info.server_resolved else None,
        )


class UploadRequest(WireModel):
    """Body of ``POST /api/sync/upload``."""

    device_id: str
    scores: list[dict[str, Any]] = Field(default_factory=list)


class UploadResponse(WireModel):
    """Structured answer to an upload."""

    success: bool
    success_count: int = 0
    failure_count: int = 0
    errors: list[str] = Field(default_factory=list)
    message: str = ""
    conflicts: list[ConflictInfo] = Field(default_factory=list)
    bytes_sent: int = Field(default=0, exclude=True)

    @property
    def unresolved_conflicts(self) -> list[ConflictInfo]:
        return [c for c in self.conflicts if not c.server_resolved]


class SyncSnapshot(BaseModel):
    """Immutable view of the engine handed to pollers."""

    model_config = ConfigDict(frozen=True)

    status: SyncStatus = SyncStatus.IDLE
    message: str = ""
    is_syncing: bool = False
    pending_count: int = 0
    conflict_count: int = 0
    statistics: SyncStatistics = Field(default_factory=SyncStatistics)
    last_sync_at: Optional[datetime] = None


class SyncLogEntry(BaseModel):
    """Audit record of one finished sync cycle."""

    model_config = ConfigDict(frozen=True)

    started_at: datetime
    finished_at: datetime = Field(default_factory=utcnow)
    status: SyncStatus
    message: str = ""
    uploaded: int = 0
    failed: int = 0
    conflicts: int = 0
    bytes_sent: int = 0

    @property
    def duration_seconds(self) -> float:
        return (self.finished_at - self.started_at).total_seconds()
