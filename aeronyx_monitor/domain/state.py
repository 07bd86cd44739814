"""Connection and credential state objects."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ConnectionState(str, Enum):
    """States of the realtime connection state machine."""

    IDLE = "idle"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    REQUESTING_CHALLENGE = "requesting_challenge"
    SIGNING = "signing"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    MONITORING = "monitoring"
    RECONNECTING = "reconnecting"
    ERROR = "error"
    CLOSED = "closed"


OPEN_STATES = frozenset(
    {
        ConnectionState.CONNECTED,
        ConnectionState.AUTHENTICATED,
        ConnectionState.MONITORING,
    }
)
AUTHENTICATED_STATES = frozenset(
    {ConnectionState.AUTHENTICATED, ConnectionState.MONITORING}
)
HANDSHAKE_STATES = frozenset(
    {
        ConnectionState.CONNECTED,
        ConnectionState.REQUESTING_CHALLENGE,
        ConnectionState.SIGNING,
        ConnectionState.AUTHENTICATING,
    }
)
LOST_STATES = frozenset(
    {
        ConnectionState.RECONNECTING,
        ConnectionState.ERROR,
        ConnectionState.CLOSED,
    }
)


def normalize_wallet(address: str | None) -> str:
    """Return a lower-cased wallet address or raise ``ValueError``."""

    if not isinstance(address, str) or not address.strip():
        raise ValueError("wallet address must be a non-empty string")
    return address.strip().lower()


@dataclass(frozen=True, slots=True)
class Credential:
    """A signed challenge for a wallet."""

    wallet_address: str
    signature: str
    challenge_message: str
    issued_at: float
    expires_at: float
    wallet_type: str = "ethereum"

    def is_valid(self, now: float) -> bool:
        """Return True while the credential is inside its validity window."""

        return now < self.expires_at

    def remaining(self, now: float) -> float:
        """Return seconds left before expiry."""

        return max(0.0, self.expires_at - now)


@dataclass(frozen=True, slots=True)
class SessionToken:
    """Opaque session credential issued after authentication."""

    wallet_address: str
    token: str
    expires_at: float

    def is_expired(self, now: float) -> bool:
        """Return True once ``expires_at`` has been reached."""

        return now >= self.expires_at

    def as_dict(self) -> dict[str, Any]:
        """Return a serialisable representation for session storage."""

        return {
            "wallet_address": self.wallet_address,
            "token": self.token,
            "expires_at": self.expires_at,
        }


@dataclass(frozen=True, slots=True)
class NodeAuthToken:
    """Remote-management token scoped to a single node."""

    node_reference: str
    token: str
    created_at: float
    expires_at: float

    def is_expired(self, now: float) -> bool:
        """Return True once the token validity window has elapsed."""

        return now >= self.expires_at


@dataclass(slots=True)
class PendingRequest:
    """Book-keeping for a correlated request awaiting its reply."""

    request_id: str
    future: asyncio.Future[Any]
    timer: asyncio.TimerHandle | None = None
    created_at: float = 0.0
    request_type: str | None = field(default=None)


__all__ = [
    "AUTHENTICATED_STATES",
    "ConnectionState",
    "Credential",
    "HANDSHAKE_STATES",
    "LOST_STATES",
    "NodeAuthToken",
    "OPEN_STATES",
    "PendingRequest",
    "SessionToken",
    "normalize_wallet",
]
