"""
Device service -- identity, registration and credential refresh.

The device record is stored locally under the identity hash
(``<home>/device/<hash>.yaml``) and read once when the service is
built. The bearer token itself stays in memory only.
"""

from __future__ import annotations

import getpass
import logging
import platform
from datetime import timedelta
from pathlib import Path
from typing import Optional

import yaml

from . import __version__
from .api import ApiClient
from .errors import AuthenticationError, ScoreSyncError
from .hardware import HardwareIdentifier
from .models import DeviceRecord, DeviceStatus, utcnow
from .tokens import TokenManager

logger = logging.getLogger("scoresync.device")

DEVICE_DIR = "device"
DEFAULT_REFRESH_MARGIN = 60


class DeviceStore:
    """YAML persistence for the local device record.

    Args:
        home: Client home directory.
    """

    def __init__(self, home: Path):
        self.device_dir = Path(home).expanduser() / DEVICE_DIR

    def path_for(self, device_id: str) -> Path:
        return self.device_dir / f"{device_id}.yaml"

    def load(self, device_id: str) -> Optional[DeviceRecord]:
        """Read the record for ``device_id``; None if absent or unreadable."""
        path = self.path_for(device_id)
        if not path.exists():
            return None
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
            return DeviceRecord(**data)
        except (yaml.YAMLError, ValueError, TypeError) as exc:
            logger.warning("Failed to load device record %s: %s", path, exc)
            return None

    def save(self, record: DeviceRecord) -> Path:
        self.device_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(record.device_id)
        data = record.model_dump(mode="json", exclude_none=True)
        path.write_text(yaml.dump(data, default_flow_style=False), encoding="utf-8")
        return path


class DeviceService:
    """Keeps this device registered, approved and holding a fresh token.

    Args:
        identifier: Hardware identity source.
        tokens: Credential cache shared with the API client.
        api: Server client.
        store: Local device record persistence.
        refresh_margin_seconds: Re-authenticate this long before expiry.
    """

    def __init__(
        self,
        identifier: HardwareIdentifier,
        tokens: TokenManager,
        api: ApiClient,
        store: DeviceStore,
        refresh_margin_seconds: float = DEFAULT_REFRESH_MARGIN,
    ):
        self.identifier = identifier
        self.tokens = tokens
        self.api = api
        self.store = store
        self.refresh_margin = refresh_margin_seconds

        identity = identifier.identity()
        if not identity.stable:
            logger.warning("Hardware signals unavailable, using a per-process device id")
        self._device = store.load(identity.device_id) or DeviceRecord(
            device_id=identity.device_id
        )

    @property
    def device_id(self) -> str:
        return self._device.device_id

    @property
    def student_id(self) -> Optional[str]:
        return self._device.student_id

    @property
    def device(self) -> DeviceRecord:
        return self._device.model_copy()

    def is_registered(self) -> bool:
        return self._device.status != DeviceStatus.UNREGISTERED

    def is_approved(self) -> bool:
        return self._device.is_approved

    def register(self, registration_code: str, device_name: str) -> DeviceRecord:
        """Register with the server using a code handed out by staff.

        The server assigns the student; the device then waits for approval.

        Raises:
            TransportError: The server could not be reached or refused.
        """
        logger.info("Registering device %s", self.device_id[:12])
        response = self.api.register_device(
            self.device_id,
            registration_code,
            device_name,
            os_name=f"{platform.system()} {platform.release()}".strip(),
            app_version=__version__,
        )
        self._device = self._device.model_copy(
            update={
                "student_id": response.student_id,
                "device_name": device_name,
                "status": response.status,
                "registration_code": registration_code,
                "registered_at": utcnow(),
                "approved_at": utcnow() if response.status == DeviceStatus.APPROVED else None,
            }
        )
        self.store.save(self._device)
        logger.info("Device registered, status %s", response.status.value)
        return self.device

    def check_approval_status(self) -> DeviceStatus:
        """Ask the server for this device's status.

        When the server cannot be reached the cached status is
        returned, and a device approved before stays approved.
        """
        if not self.is_registered():
            return DeviceStatus.UNREGISTERED
        try:
            response = self.api.device_status(self.device_id)
        except ScoreSyncError as exc:
            logger.warning(
                "Unable to reach server, using cached status %s: %s",
                self._device.status.value,
                exc,
            )
            return self._device.status

        update: dict = {"status": response.status}
        if response.status == DeviceStatus.APPROVED:
            if not self._device.is_approved:
                update["approved_at"] = utcnow()
            if response.student_id:
                update["student_id"] = response.student_id
        self._device = self._device.model_copy(update=update)
        self.store.save(self._device)
        logger.info("Device status from server: %s", response.status.value)
        return response.status

    def authenticate(self) -> None:
        """Obtain a new bearer token for this device.

        Raises:
            AuthenticationError: Not approved, or the server refused.
        """
        if not self._device.is_approved:
            raise AuthenticationError(
                f"Device not approved (status {self._device.status.value})"
            )
        try:
            credential = self.api.authenticate_device(self.device_id, self.student_id)
        except ScoreSyncError as exc:
            raise AuthenticationError(str(exc)) from exc

        if not self.tokens.save_credential(credential):
            raise AuthenticationError("Server issued an unusable token")

        self._device = self._device.model_copy(
            update={"last_auth_at": utcnow(), "token_expires_at": credential.expires_at}
        )
        self.store.save(self._device)
        logger.info("Device authenticated, token valid for %s", credential.expires_at - utcnow())

    def refresh_if_needed(self) -> None:
        """Re-authenticate if the token is missing or about to expire.

        On failure the previous credential is left as it was.

        Raises:
            AuthenticationError: Refresh was needed and failed.
        """
        if self.tokens.is_valid(margin_seconds=self.refresh_margin):
            return
        logger.info(
            "Token missing or expiring within %s, re-authenticating",
            timedelta(seconds=self.refresh_margin),
        )
        self.authenticate()

    def invalidate_credential(self) -> None:
        """Drop the token so the next cycle re-authenticates."""
        self.tokens.clear()

    def test_connection(self) -> bool:
        """True if the server answers a ping."""
        try:
            self.api.ping()
            return True
        except ScoreSyncError as exc:
            logger.error("Server connection test failed: %s", exc)
            return False


def default_device_name() -> str:
    """Hostname plus user, used when registering without a name."""
    try:
        user = getpass.getuser()
    except (KeyError, OSError):
        user = "unknown"
    return f"{platform.node() or 'device'}-{user}"
