"""
HTTP client for the sync server.

One ``requests.Session`` with connection pooling and automatic retry
on gateway errors. Anything that does not yield a structured JSON
answer becomes a TransportError; structured rejections are raised by
``check_upload()`` as ApplicationError or ConflictError, so callers can
tell the kinds apart.

Endpoints:
    POST /api/auth/device       -> {token, tokenType, expiresAt}
    POST /api/sync/upload       -> {success, successCount, ..., conflicts}
    POST /api/device/register   -> {deviceId, studentId, status}
    GET  /api/device/status     -> {deviceId, studentId, status}
    GET  /api/ping
"""

from __future__ import annotations

import json
import logging
from typing import Any, Optional, TypeVar

import requests
from pydantic import ValidationError
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from .errors import ApplicationError, ConflictError, TransportError
from .models import Credential, DeviceStatus, ScoreRecord, WireModel
from .sync.models import UploadRequest, UploadResponse
from .tokens import TokenManager

logger = logging.getLogger("scoresync.api")

ModelT = TypeVar("ModelT", bound=WireModel)

DEFAULT_TIMEOUT = 15.0

_retry_strategy = Retry(
    total=3,
    backoff_factor=1,                           # 1s, 2s, 4s between retries
    status_forcelist=[502, 503, 504],
    allowed_methods=["HEAD", "GET", "POST"],
    raise_on_status=False,
)


def create_session() -> requests.Session:
    """New session with pooling and retry."""
    session = requests.Session()
    adapter = HTTPAdapter(pool_connections=1, pool_maxsize=4, max_retries=_retry_strategy)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.headers.update({"Accept": "application/json"})
    return session


class DeviceStatusResponse(WireModel):
    device_id: str
    student_id: Optional[str] = None
    status: DeviceStatus = DeviceStatus.PENDING


def check_upload(response: UploadResponse) -> UploadResponse:
    """Raise for structured rejections.

    Raises:
        ApplicationError: The server refused the batch (``success=false``).
        ConflictError: The batch was accepted but some items conflicted.
    """
    if not response.success:
        raise ApplicationError(
            response.message or "; ".join(response.errors) or "Unknown error",
            response.errors,
            response,
        )
    unresolved = response.unresolved_conflicts
    if unresolved:
        raise ConflictError(unresolved, response)
    return response


class ApiClient:
    """Talks to the sync server on behalf of this device.

    Args:
        base_url: Server root, e.g. ``https://sync.example.org``.
        token_manager: Source of the bearer token for authenticated calls.
        timeout: Per-request timeout in seconds.
        session: Optional pre-built session (tests mount fake adapters).
    """

    def __init__(
        self,
        base_url: str,
        token_manager: TokenManager,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.tokens = token_manager
        self.timeout = timeout
        self.session = session or create_session()

    def close(self) -> None:
        self.session.close()

    def authenticate_device(self, device_id: str, student_id: Optional[str]) -> Credential:
        """Exchange the device identity for a bearer token."""
        logger.info("Authenticating device %s", device_id[:12])
        data = self._request(
            "POST",
            "/api/auth/device",
            json={"deviceId": device_id, "studentId": student_id},
        )
        return _parse(Credential, data, "auth")

    def upload_scores(self, device_id: str, records: list[ScoreRecord]) -> UploadResponse:
        """Upload a batch of score records.

        Returns:
            The accepted response, with ``bytes_sent`` filled in.

        Raises:
            TokenExpired: No valid token to attach.
            TransportError: No structured response was received.
            ApplicationError: The server rejected the batch.
            ConflictError: Accepted, but some items conflicted.
        """
        request = UploadRequest(
            device_id=device_id,
            scores=[r.to_wire() for r in records],
        )
        body = json.dumps(request.model_dump(mode="json", by_alias=True)).encode("utf-8")
        headers = {
            "Authorization": f"Bearer {self.tokens.get()}",
            "Content-Type": "application/json",
        }
        logger.info("Uploading %d score(s) to server", len(records))
        data = self._request(
            "POST",
            "/api/sync/upload",
            data=body,
            headers=headers,
            structured_errors=True,
        )
        response = _parse(UploadResponse, data, "sync")
        response.bytes_sent = len(body)
        return check_upload(response)

    def register_device(
        self,
        device_id: str,
        registration_code: str,
        device_name: str,
        os_name: str,
        app_version: str,
    ) -> DeviceStatusResponse:
        """Register this device; the server assigns the student."""
        data = self._request(
            "POST",
            "/api/device/register",
            json={
                "deviceId": device_id,
                "registrationCode": registration_code,
                "deviceName": device_name,
                "deviceType": "DESKTOP",
                "osName": os_name,
                "appVersion": app_version,
            },
        )
        return _parse(DeviceStatusResponse, data, "device")

    def device_status(self, device_id: str) -> DeviceStatusResponse:
        """Fetch the approval status of a device."""
        data = self._request("GET", "/api/device/status", params={"deviceId": device_id})
        return _parse(DeviceStatusResponse, data, "device")

    def ping(self) -> None:
        """Raise TransportError if the server is unreachable or answers an error."""
        self._request("GET", "/api/ping", expect_json=False)

    def _request(
        self,
        method: str,
        path: str,
        structured_errors: bool = False,
        expect_json: bool = True,
        **kwargs: Any,
    ) -> Any:
        """Send a request and decode the JSON body.

        Args:
            structured_errors: Accept a JSON body from 4xx/5xx responses
                (the upload endpoint reports rejections that way).
            expect_json: Decode and return the body.
        """
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            logger.warning("%s %s network error: %s", method, path, exc)
            raise TransportError(f"Failed to connect to server: {exc}") from exc

        logger.debug("HTTP %s %s -> %d", method, path, resp.status_code)

        if resp.status_code == 401:
            raise TransportError("Token expired or invalid", status_code=401)

        if resp.status_code >= 400:
            if structured_errors:
                data = _json_or_none(resp)
                if isinstance(data, dict) and "success" in data:
                    return data
            raise TransportError(
                f"HTTP {resp.status_code}: {resp.text[:200]}",
                status_code=resp.status_code,
            )

        if not expect_json:
            return None

        data = _json_or_none(resp)
        if data is None:
            raise TransportError(f"Non-JSON response from {path}", status_code=resp.status_code)
        return data


def _parse(model: type[ModelT], data: Any, what: str) -> ModelT:
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise TransportError(f"Malformed {what} response: {exc.error_count()} error(s)") from exc


def _json_or_none(resp: requests.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return None
