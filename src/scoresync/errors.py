"""
Error taxonomy for the sync path.

TransportError: nothing structured came back, so no item can be blamed.
ApplicationError: the server answered and rejected the whole batch.
AuthenticationError: the device credential could not be refreshed.
ConflictError: the batch was accepted but some items broke a business rule.
"""

from __future__ import annotations

from typing import Any, Optional


class ScoreSyncError(Exception):
    """Base class for all scoresync errors."""


class TokenExpired(ScoreSyncError):
    """Raised when the bearer token is missing or past its expiry."""


class TransportError(ScoreSyncError):
    """No structured response reached the client.

    Args:
        message: What went wrong.
        status_code: HTTP status, when a bare error status was received.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ApplicationError(ScoreSyncError):
    """The server returned a structured ``success=false`` response."""

    def __init__(
        self,
        message: str,
        errors: Optional[list[str]] = None,
        response: Any = None,
    ):
        super().__init__(message)
        self.errors = errors or []
        self.response = response


class AuthenticationError(ScoreSyncError):
    """Device authentication or credential refresh failed."""


class ConflictError(ScoreSyncError):
    """Semantic per-item rejections inside a successful response.

    Args:
        conflicts: The unresolved conflict entries.
        response: The full upload response they came from.
    """

    def __init__(self, conflicts: list[Any], response: Any):
        super().__init__(f"{len(conflicts)} conflict(s) reported by server")
        self.conflicts = conflicts
        self.response = response
