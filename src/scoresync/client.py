"""
Sync client -- wires the components together for one process.

Everything is built once from a home directory and owned here; there
are no module-level singletons besides the hardware id cache. The CLI
and embedding applications both go through this class.

    client = SyncClient.from_home()
    client.start()          # monitor + background sync
    client.record_score(...)
    client.stop()
"""

from __future__ import annotations

import logging
import signal
import threading
import uuid
from pathlib import Path
from typing import Any, Optional

from .api import ApiClient
from .config import ClientConfig, db_path_for, load_config, resolve_home
from .device import DeviceService, DeviceStore
from .hardware import HardwareIdentifier
from .models import ScoreRecord
from .network import NetworkMonitor
from .sync import SqliteScoreStore, SyncEngine
from .tokens import TokenManager

logger = logging.getLogger("scoresync.client")


class SyncClient:
    """Composition root for the score sync client.

    Args:
        config: Client configuration.
        home: Client home directory.
        identifier: Override the hardware identifier (tests).
        api: Override the API client (tests).
    """

    def __init__(
        self,
        config: ClientConfig,
        home: Optional[Path] = None,
        identifier: Optional[HardwareIdentifier] = None,
        api: Optional[ApiClient] = None,
    ):
        self.config = config
        self.home = resolve_home(home)
        self.tokens = TokenManager()
        self.api = api or ApiClient(
            config.server_url,
            self.tokens,
            timeout=config.http_timeout_seconds,
        )
        self.monitor = NetworkMonitor(
            config.server_url,
            check_interval=config.network_check_interval_seconds,
            timeout=config.network_timeout_seconds,
        )
        self.device = DeviceService(
            identifier or HardwareIdentifier(),
            self.tokens,
            self.api,
            DeviceStore(self.home),
            refresh_margin_seconds=config.token_refresh_margin_seconds,
        )
        self.store = SqliteScoreStore(db_path_for(config, self.home))
        self.engine = SyncEngine(
            self.store,
            self.device,
            self.api,
            monitor=self.monitor,
            batch_size=config.sync_batch_size,
            sync_interval=config.sync_interval_seconds,
            initial_delay=config.initial_sync_delay_seconds,
        )
        self.monitor.add_listener(self.engine.sync_when_online)
        self._stop_event = threading.Event()
        self._started = False

    @classmethod
    def from_home(cls, home: Optional[Path] = None) -> "SyncClient":
        """Build a client from ``<home>/config.yaml``."""
        return cls(load_config(home), home=home)

    def record_score(
        self,
        game_id: str,
        score: int,
        max_score: int,
        **details: Any,
    ) -> ScoreRecord:
        """Store a finished game locally. Never touches the network.

        Args:
            game_id: Activity that produced the score.
            score: Points earned.
            max_score: Points possible.
            **details: Optional ``ScoreRecord`` fields (time_seconds, ...).

        Raises:
            ValueError: The device has no student assigned yet.
        """
        student_id = self.device.student_id
        if not student_id:
            raise ValueError("Device has no student assigned; register it first")
        record = ScoreRecord(
            score_id=str(uuid.uuid4()),
            student_id=student_id,
            device_id=self.device.device_id,
            game_id=game_id,
            score=score,
            max_score=max_score,
            **details,
        )
        self.store.add(record)
        logger.info("Recorded score %s for game %s", record.score_id, game_id)
        return record

    def start(self) -> None:
        """Start connectivity monitoring and background sync."""
        if self._started:
            return
        self.monitor.start()
        self.engine.start_background_sync()
        self._started = True
        logger.info("Sync client started for device %s", self.device.device_id[:12])

    def stop(self) -> None:
        """Stop background work. An upload in flight finishes on its own."""
        self._stop_event.set()
        self.engine.stop_background_sync()
        self.monitor.stop()
        self.store.close()
        self.api.close()
        self._started = False
        logger.info("Sync client stopped")

    def run_forever(self) -> None:
        """Start, then block until SIGINT/SIGTERM."""
        self._setup_signals()
        self.start()
        try:
            while not self._stop_event.is_set():
                self._stop_event.wait(timeout=1)
        except KeyboardInterrupt:
            pass
        finally:
            self.stop()

    def _setup_signals(self) -> None:
        for sig in (signal.SIGTERM, signal.SIGINT):
            signal.signal(sig, self._handle_signal)

    def _handle_signal(self, signum, frame):
        logger.info("Received signal %s, stopping", signal.Signals(signum).name)
        self._stop_event.set()
