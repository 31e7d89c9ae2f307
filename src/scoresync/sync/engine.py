"""
Sync Engine -- uploads locally recorded scores when the server is reachable.

One cycle at a time, no matter how many triggers race for it:

    perform_sync()  ->  refresh credential -> read batch -> upload -> bookkeeping

A trigger that finds a cycle in flight is dropped, not queued. Every
outcome is reduced to a status/message pair; nothing here raises to
the caller.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Callable, Optional, Union

from ..errors import (
    ApplicationError,
    AuthenticationError,
    ConflictError,
    TokenExpired,
    TransportError,
)
from ..models import ScoreRecord, utcnow
from .models import (
    SyncConflict,
    SyncLogEntry,
    SyncSnapshot,
    SyncStatistics,
    SyncStatus,
    UploadResponse,
)
from .store import ScoreStore

if TYPE_CHECKING:
    from ..api import ApiClient
    from ..device import DeviceService
    from ..network import NetworkMonitor

logger = logging.getLogger("scoresync.sync.engine")

DEFAULT_BATCH_SIZE = 100
DEFAULT_SYNC_INTERVAL = 300
DEFAULT_INITIAL_DELAY = 30
HISTORY_SIZE = 50

ConflictCallback = Callable[[list[SyncConflict]], None]


# ---------------------------------------------------------------------------
# Cycle outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TransportFailure:
    """No structured response; nothing can be attributed to a record."""

    batch: list[ScoreRecord]
    reason: str
    status_code: Optional[int] = None


@dataclass(frozen=True)
class ApplicationFailure:
    """The server rejected the whole batch."""

    batch: list[ScoreRecord]
    reason: str


@dataclass(frozen=True)
class AuthenticationFailure:
    """No usable credential. ``batch`` is empty when refresh failed."""

    reason: str
    batch: list[ScoreRecord] = field(default_factory=list)


@dataclass(frozen=True)
class UploadSuccess:
    """The server accepted the batch. An empty batch means nothing to do."""

    batch: list[ScoreRecord]
    response: Optional[UploadResponse] = None


SyncOutcome = Union[TransportFailure, ApplicationFailure, AuthenticationFailure, UploadSuccess]


@dataclass
class _CycleResult:
    status: SyncStatus
    message: str
    uploaded: int = 0
    failed: int = 0
    conflicts: int = 0
    bytes_sent: int = 0


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


class SyncEngine:
    """Single-flight score uploader with a background timer.

    Args:
        store: Local score store.
        device_service: Supplies the device id and keeps the credential fresh.
        api: HTTP client used for uploads.
        monitor: Connectivity monitor gating background cycles. Without
            one, background cycles always run.
        batch_size: Max records per upload.
        sync_interval: Seconds between background cycles.
        initial_delay: Seconds before the first background cycle.
    """

    def __init__(
        self,
        store: ScoreStore,
        device_service: "DeviceService",
        api: "ApiClient",
        monitor: Optional["NetworkMonitor"] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        sync_interval: float = DEFAULT_SYNC_INTERVAL,
        initial_delay: float = DEFAULT_INITIAL_DELAY,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.store = store
        self.device_service = device_service
        self.api = api
        self.monitor = monitor
        self.batch_size = batch_size
        self.sync_interval = sync_interval
        self.initial_delay = initial_delay

        self._sync_lock = threading.Lock()
        self._state_lock = threading.RLock()
        self._syncing = False
        self._status = SyncStatus.IDLE
        self._message = ""
        self._last_sync_at: Optional[datetime] = None
        self._stats = SyncStatistics()
        self._conflict_callback: Optional[ConflictCallback] = None
        self._history: deque[SyncLogEntry] = deque(maxlen=HISTORY_SIZE)

        self._timer_lock = threading.Lock()
        self._timer: Optional[threading.Thread] = None
        self._timer_stop = threading.Event()

        self.store.recover_interrupted()

    # -- reads --------------------------------------------------------------

    @property
    def status(self) -> SyncStatus:
        return self._status

    @property
    def message(self) -> str:
        return self._message

    def is_syncing(self) -> bool:
        """True while a cycle holds the sync lock."""
        return self._syncing

    def pending_count(self) -> int:
        """Records not yet synced (one store count, no lock)."""
        return self.store.count_pending()

    def pending_conflict_count(self) -> int:
        return len(self.store.open_conflicts())

    def pending_conflicts(self) -> list[SyncConflict]:
        """Conflicts still awaiting resolution, read from the store."""
        return self.store.open_conflicts()

    def statistics(self) -> SyncStatistics:
        return self._stats

    def recent_history(self) -> list[SyncLogEntry]:
        """Finished cycles, oldest first."""
        with self._state_lock:
            return list(self._history)

    def snapshot(self) -> SyncSnapshot:
        """Immutable view for pollers."""
        pending = self.pending_count()
        conflicts = self.pending_conflict_count()
        with self._state_lock:
            return SyncSnapshot(
                status=self._status,
                message=self._message,
                is_syncing=self._syncing,
                pending_count=pending,
                conflict_count=conflicts,
                statistics=self._stats,
                last_sync_at=self._last_sync_at,
            )

    # -- conflicts ----------------------------------------------------------

    def set_conflict_callback(self, callback: Optional[ConflictCallback]) -> None:
        """Register the single receiver of each cycle's conflict list."""
        self._conflict_callback = callback

    def resolve_conflict(
        self,
        score_id: str,
        resolved_by: str,
        accept_server: bool = False,
    ) -> bool:
        """Mark the open conflict for ``score_id`` as handled.

        Args:
            score_id: Record the conflict refers to.
            resolved_by: Who made the call, e.g. a staff username.
            accept_server: Keep the server's copy and mark the local
                record synced. Otherwise the record is retried.

        Returns:
            False if no open conflict exists for ``score_id``.
        """
        if not self.store.resolve_conflict(score_id, resolved_by):
            return False
        with self._state_lock:
            self._stats = self._stats.model_copy(
                update={"conflicts_resolved": self._stats.conflicts_resolved + 1}
            )
        if accept_server:
            self.store.mark_synced([score_id])
        logger.info(
            "Conflict for %s resolved by %s (%s)",
            score_id,
            resolved_by,
            "server copy kept" if accept_server else "will retry",
        )
        return True

    def resolve_all_conflicts(self, resolved_by: str, accept_server: bool = False) -> int:
        """Resolve every open conflict the same way. Returns how many records."""
        score_ids = dict.fromkeys(
            c.score_id for c in self.store.open_conflicts() if c.score_id
        )
        return sum(
            1 for score_id in score_ids
            if self.resolve_conflict(score_id, resolved_by, accept_server)
        )

    # -- the cycle ----------------------------------------------------------

    def perform_sync(self) -> Optional[SyncSnapshot]:
        """Run one sync cycle unless another is already running.

        Returns:
            Snapshot after the cycle, or None when the trigger was dropped.
        """
        if not self._sync_lock.acquire(blocking=False):
            logger.debug("Sync already in progress, trigger dropped")
            return None

        started = utcnow()
        in_flight: list[str] = []
        try:
            with self._state_lock:
                self._syncing = True
                self._status = SyncStatus.SYNCING
                self._message = "Syncing..."
            try:
                outcome = self._run_cycle(in_flight)
                result = self._apply(outcome)
            except Exception as exc:
                logger.exception("Unexpected error during sync")
                if in_flight:
                    self.store.mark_failed(in_flight, str(exc), count_attempt=False)
                result = _CycleResult(
                    SyncStatus.ERROR, f"Sync error: {exc}", failed=len(in_flight)
                )
            self._record(result, started)
        finally:
            with self._state_lock:
                self._syncing = False
            self._sync_lock.release()

        return self.snapshot()

    def _run_cycle(self, in_flight: list[str]) -> SyncOutcome:
        try:
            self.device_service.refresh_if_needed()
        except AuthenticationError as exc:
            return AuthenticationFailure(str(exc))

        batch = self.store.fetch_pending(self.batch_size, exclude=self._open_conflict_ids())
        if not batch:
            return UploadSuccess(batch=[])

        ids = [r.score_id for r in batch]
        self.store.mark_syncing(ids)
        in_flight.extend(ids)
        return self._upload(batch)

    def _upload(self, batch: list[ScoreRecord]) -> SyncOutcome:
        """The one place upload errors become outcomes."""
        try:
            response = self.api.upload_scores(self.device_service.device_id, batch)
        except TokenExpired as exc:
            return AuthenticationFailure(str(exc), batch)
        except TransportError as exc:
            return TransportFailure(batch, str(exc), exc.status_code)
        except ApplicationError as exc:
            return ApplicationFailure(batch, str(exc))
        except ConflictError as exc:
            return UploadSuccess(batch, exc.response)
        return UploadSuccess(batch, response)

    def _apply(self, outcome: SyncOutcome) -> _CycleResult:
        if isinstance(outcome, AuthenticationFailure):
            return self._on_auth_failure(outcome)
        if isinstance(outcome, TransportFailure):
            return self._on_transport_failure(outcome)
        if isinstance(outcome, ApplicationFailure):
            return self._on_application_failure(outcome)
        if isinstance(outcome, UploadSuccess):
            return self._on_success(outcome)
        raise TypeError(f"Unhandled sync outcome: {outcome!r}")

    def _on_auth_failure(self, outcome: AuthenticationFailure) -> _CycleResult:
        logger.warning("Sync aborted, authentication failed: %s", outcome.reason)
        if outcome.batch:
            self.store.mark_failed(_ids(outcome.batch), outcome.reason, count_attempt=False)
        return _CycleResult(
            SyncStatus.ERROR,
            f"Authentication required: {outcome.reason}",
            failed=len(outcome.batch),
        )

    def _on_transport_failure(self, outcome: TransportFailure) -> _CycleResult:
        logger.warning("Sync transport error: %s", outcome.reason)
        self.store.mark_failed(_ids(outcome.batch), outcome.reason, count_attempt=False)
        if outcome.status_code == 401:
            self.device_service.invalidate_credential()
        return _CycleResult(
            SyncStatus.ERROR,
            f"Sync error: {outcome.reason}",
            failed=len(outcome.batch),
        )

    def _on_application_failure(self, outcome: ApplicationFailure) -> _CycleResult:
        logger.error("Server rejected batch of %d: %s", len(outcome.batch), outcome.reason)
        self.store.mark_failed(_ids(outcome.batch), outcome.reason, count_attempt=True)
        return _CycleResult(
            SyncStatus.ERROR,
            f"Sync failed: {outcome.reason}",
            failed=len(outcome.batch),
        )

    def _on_success(self, outcome: UploadSuccess) -> _CycleResult:
        if not outcome.batch or outcome.response is None:
            return _CycleResult(SyncStatus.SUCCESS, "All scores synced")

        response = outcome.response
        conflicts = [SyncConflict.from_info(info) for info in response.conflicts]
        open_conflicts = [c for c in conflicts if not c.resolved]
        conflicted = {c.score_id for c in open_conflicts if c.score_id}

        accepted = [r.score_id for r in outcome.batch if r.score_id not in conflicted]
        rejected = [r.score_id for r in outcome.batch if r.score_id in conflicted]
        # conflicts naming records outside this batch have nothing to hold back
        held = [c for c in open_conflicts if c.score_id in rejected]
        self.store.mark_synced(accepted)
        for conflict in held:
            self.store.mark_failed(
                [conflict.score_id],
                f"{conflict.conflict_type.value}: {conflict.message}",
                count_attempt=True,
            )
        self.store.add_conflicts(held)

        with self._state_lock:
            self._stats = self._stats.model_copy(
                update={
                    "items_uploaded": self._stats.items_uploaded + len(accepted),
                    "bytes_uploaded": self._stats.bytes_uploaded + response.bytes_sent,
                    "conflicts_detected": self._stats.conflicts_detected + len(conflicts),
                    "conflicts_resolved": self._stats.conflicts_resolved
                    + len(conflicts) - len(open_conflicts),
                }
            )

        if conflicts:
            logger.warning("%d conflict(s) reported by server", len(conflicts))
            self._notify_conflicts(conflicts)

        if open_conflicts:
            status = SyncStatus.CONFLICT
            message = f"Synced {len(accepted)}, {len(open_conflicts)} conflict(s) need resolution"
        else:
            status = SyncStatus.SUCCESS
            message = f"Synced {len(accepted)} score(s)"
        logger.info(message)
        return _CycleResult(
            status,
            message,
            uploaded=len(accepted),
            failed=len(rejected),
            conflicts=len(conflicts),
            bytes_sent=response.bytes_sent,
        )

    def _notify_conflicts(self, conflicts: list[SyncConflict]) -> None:
        callback = self._conflict_callback
        if callback is None:
            return
        try:
            callback([c.model_copy() for c in conflicts])
        except Exception as exc:
            logger.error("Conflict callback failed: %s", exc)

    def _record(self, result: _CycleResult, started: datetime) -> None:
        succeeded = result.status in (SyncStatus.SUCCESS, SyncStatus.CONFLICT)
        entry = SyncLogEntry(
            started_at=started,
            status=result.status,
            message=result.message,
            uploaded=result.uploaded,
            failed=result.failed,
            conflicts=result.conflicts,
            bytes_sent=result.bytes_sent,
        )
        with self._state_lock:
            self._status = result.status
            self._message = result.message
            self._stats = self._stats.model_copy(
                update={
                    "total_syncs": self._stats.total_syncs + 1,
                    "successful_syncs": self._stats.successful_syncs + int(succeeded),
                }
            )
            if succeeded:
                self._last_sync_at = entry.finished_at
            self._history.append(entry)

    def _open_conflict_ids(self) -> set[str]:
        return {c.score_id for c in self.store.open_conflicts() if c.score_id}

    # -- background ---------------------------------------------------------

    @property
    def background_running(self) -> bool:
        return self._timer is not None and self._timer.is_alive()

    def start_background_sync(self) -> None:
        """Arm the periodic timer. A second call while armed is a no-op."""
        with self._timer_lock:
            if self.background_running:
                logger.debug("Background sync already running")
                return
            self._timer_stop = threading.Event()
            self._timer = threading.Thread(
                target=self._timer_loop,
                args=(self._timer_stop,),
                name="sync-timer",
                daemon=True,
            )
            self._timer.start()
        logger.info(
            "Background sync started (first in %ss, then every %ss)",
            self.initial_delay,
            self.sync_interval,
        )

    def stop_background_sync(self) -> None:
        """Cancel the timer. Safe when not running.

        An upload already in flight is not interrupted; this waits for it
        to finish, so a following start never overlaps the old timer.
        """
        with self._timer_lock:
            self._timer_stop.set()
            timer, self._timer = self._timer, None
            if timer is not None and timer is not threading.current_thread():
                timer.join()
        if timer is not None:
            logger.info("Background sync stopped")

    def sync_when_online(self, online: bool) -> None:
        """Connectivity listener: sync right away on reconnect."""
        if online:
            logger.info("Connection restored, triggering sync")
            self.perform_sync()

    def _timer_loop(self, stop: threading.Event) -> None:
        if stop.wait(timeout=self.initial_delay):
            return
        while True:
            self._tick()
            if stop.wait(timeout=self.sync_interval):
                return

    def _tick(self) -> None:
        if self.monitor is not None and not self.monitor.is_online():
            logger.debug("Offline, skipping scheduled sync")
            return
        try:
            self.perform_sync()
        except Exception as exc:
            logger.error("Scheduled sync failed: %s", exc)


def _ids(records: list[ScoreRecord]) -> list[str]:
    return [r.score_id for r in records]
