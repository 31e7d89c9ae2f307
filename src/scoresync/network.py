"""
Server reachability monitor.

A socket-level probe (TCP connect to the server host/port) run on a
background thread. Callers read the last result without blocking;
the probe itself never raises, it only flips the flag.
"""

from __future__ import annotations

import logging
import socket
import threading
from typing import Callable, Optional
from urllib.parse import urlparse

logger = logging.getLogger("scoresync.network")

DEFAULT_CHECK_INTERVAL = 30
DEFAULT_TIMEOUT = 5.0
FALLBACK_PORT = 8080


def parse_server_address(server_url: str) -> tuple[str, int]:
    """Split a server URL into ``(host, port)``.

    Explicit ports win; otherwise 443 for https, 80 for http and
    8080 when the scheme is missing.
    """
    if "://" not in server_url:
        server_url = f"//{server_url}"
    parsed = urlparse(server_url)
    host = parsed.hostname
    if not host:
        raise ValueError(f"No host in server URL: {server_url!r}")
    if parsed.port:
        return host, parsed.port
    if parsed.scheme == "https":
        return host, 443
    if parsed.scheme == "http":
        return host, 80
    return host, FALLBACK_PORT


class NetworkMonitor:
    """Periodically checks whether the sync server is reachable.

    Args:
        server_url: Base URL of the server; resolved once here.
        check_interval: Seconds between background probes.
        timeout: Connect timeout for each probe.
    """

    def __init__(
        self,
        server_url: str,
        check_interval: float = DEFAULT_CHECK_INTERVAL,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self.host, self.port = parse_server_address(server_url)
        self.check_interval = check_interval
        self.timeout = timeout
        self._online: Optional[bool] = None
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lifecycle_lock = threading.Lock()
        self._listeners: list[Callable[[bool], None]] = []
        logger.info("NetworkMonitor initialized for %s:%d", self.host, self.port)

    def add_listener(self, callback: Callable[[bool], None]) -> None:
        """Call ``callback(online)`` whenever connectivity changes."""
        self._listeners.append(callback)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Probe once now, then keep probing until stop()."""
        with self._lifecycle_lock:
            if self.is_running:
                logger.warning("NetworkMonitor already running")
                return
            self._stop_event.clear()
            self.check_now()
            self._thread = threading.Thread(
                target=self._monitor_loop,
                name="network-monitor",
                daemon=True,
            )
            self._thread.start()
        logger.info("Network monitoring started (every %ss)", self.check_interval)

    def stop(self) -> None:
        """Stop background probing. Safe to call when not running."""
        with self._lifecycle_lock:
            self._stop_event.set()
            thread, self._thread = self._thread, None
        if thread is not None:
            thread.join(timeout=self.timeout + 1)
            logger.info("Network monitoring stopped")

    def is_online(self) -> bool:
        """Result of the most recent probe."""
        return bool(self._online)

    def check_now(self) -> bool:
        """Probe synchronously and update the flag immediately."""
        was_online = self._online
        now_online = self._probe()
        self._online = now_online

        if was_online is None:
            logger.info("Server %s", "reachable" if now_online else "unreachable")
        elif now_online != was_online:
            if now_online:
                logger.info("Network connectivity restored")
            else:
                logger.warning("Network connectivity lost")
            self._notify(now_online)
        return now_online

    def _monitor_loop(self) -> None:
        while not self._stop_event.wait(timeout=self.check_interval):
            self.check_now()

    def _probe(self) -> bool:
        try:
            sock = socket.create_connection((self.host, self.port), timeout=self.timeout)
            sock.close()
            return True
        except OSError as exc:
            logger.debug("Server not reachable: %s", exc)
            return False

    def _notify(self, online: bool) -> None:
        for callback in list(self._listeners):
            try:
                callback(online)
            except Exception as exc:
                logger.error("Connectivity listener failed: %s", exc)
