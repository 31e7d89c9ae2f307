"""
Bearer credential cache.

Holds the device-bound token issued by the server. The credential is
one immutable value swapped in a single assignment, so readers on
other threads never see a token paired with the wrong expiry. Writers
are serialized by their callers (the sync engine holds its own lock).

Tokens are never written to logs.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from .errors import TokenExpired
from .models import Credential, as_utc, utcnow

logger = logging.getLogger("scoresync.tokens")

JWT_SEPARATOR_COUNT = 2


def is_jwt_shaped(token: Optional[str]) -> bool:
    """True if the token is non-blank with exactly two ``.`` separators."""
    if not token or not token.strip():
        return False
    return token.count(".") == JWT_SEPARATOR_COUNT


class TokenManager:
    """Stores one credential and answers validity questions about it."""

    def __init__(self) -> None:
        self._credential: Optional[Credential] = None

    @property
    def credential(self) -> Optional[Credential]:
        return self._credential

    @property
    def expires_at(self) -> Optional[datetime]:
        credential = self._credential
        return credential.expires_at if credential else None

    def save(self, token: str, expires_at: datetime) -> bool:
        """Replace the stored credential.

        Blank or malformed tokens are refused and the previous
        credential is kept, since the server would reject them anyway.

        Args:
            token: The bearer token.
            expires_at: Absolute expiry. Naive values are taken as UTC.

        Returns:
            True if the credential was stored.
        """
        if not token or not token.strip():
            logger.warning("Refusing to save an empty token")
            return False
        if not is_jwt_shaped(token):
            logger.warning("Refusing to save a token that is not JWT-shaped")
            return False

        self._credential = Credential(token=token, expires_at=as_utc(expires_at))
        logger.info("Token saved, expires at %s", self._credential.expires_at.isoformat())
        return True

    def save_credential(self, credential: Credential) -> bool:
        """Store a credential received from the auth endpoint."""
        return self.save(credential.token, credential.expires_at)

    def is_valid(self, margin_seconds: float = 0) -> bool:
        """True if a token is held and expires after now (+ margin)."""
        credential = self._credential
        if credential is None:
            return False
        return credential.expires_at > utcnow() + timedelta(seconds=margin_seconds)

    def get(self) -> str:
        """Return the token.

        Raises:
            TokenExpired: No token was saved, it was cleared, or it expired.
        """
        credential = self._credential
        if credential is None:
            raise TokenExpired("No token available")
        if credential.expires_at <= utcnow():
            raise TokenExpired(f"Token expired at {credential.expires_at.isoformat()}")
        return credential.token

    def clear(self) -> None:
        """Forget the credential. Safe to call repeatedly."""
        if self._credential is not None:
            logger.info("Token cleared")
        self._credential = None
