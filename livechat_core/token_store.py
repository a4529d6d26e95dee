"""Holder for the short-lived session credential."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum

from .errors import NoActiveSession


class CredentialState(Enum):
    """Lifecycle of the active credential."""

    ABSENT = "absent"
    VALID = "valid"
    EXPIRING = "expiring"
    EXPIRED = "expired"


@dataclass(frozen=True)
class Credential:
    """Session token plus the streaming endpoint it authorizes.

    Attributes:
        token: Opaque session token sent with every request
        endpoint: WebSocket URL of the realtime channel
        expires_at: Expiry hint from the issuing side, if any
    """

    token: str
    endpoint: str
    expires_at: datetime | None = None

    def __repr__(self) -> str:
        return (
            f"Credential(token='***', endpoint={self.endpoint!r}, "
            f"expires_at={self.expires_at!r})"
        )


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


class TokenStore:
    """Pure state holder for at most one live credential."""

    def __init__(self, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self._credential: Credential | None = None
        self._clock = clock

    def set_credential(self, credential: Credential) -> None:
        """Replace the active credential wholesale."""
        self._credential = credential

    def current_credential(self) -> Credential:
        """Return the live credential.

        Raises:
            NoActiveSession: If no credential has been set
        """
        if self._credential is None:
            raise NoActiveSession("No credential available")
        return self._credential

    def has_credential(self) -> bool:
        """Check whether a credential is set."""
        return self._credential is not None

    def clear(self) -> None:
        """Drop the active credential."""
        self._credential = None

    def is_expiring(self, lookahead: float) -> bool:
        """Report whether expiry falls within `lookahead` seconds.

        Credentials without an expiry hint never report expiring.
        """
        credential = self._credential
        if credential is None or credential.expires_at is None:
            return False
        deadline = self._clock() + timedelta(seconds=lookahead)
        return credential.expires_at <= deadline

    def state(self, lookahead: float) -> CredentialState:
        """Classify the active credential."""
        credential = self._credential
        if credential is None:
            return CredentialState.ABSENT
        if credential.expires_at is None:
            return CredentialState.VALID
        if credential.expires_at <= self._clock():
            return CredentialState.EXPIRED
        if self.is_expiring(lookahead):
            return CredentialState.EXPIRING
        return CredentialState.VALID
