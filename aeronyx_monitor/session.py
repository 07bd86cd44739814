"""Session credential cache backed by a short-lived key/value store."""

from __future__ import annotations

from collections.abc import Callable, Mapping
import logging
import time
from typing import Any, Protocol

from .backend.sanitize import mask_identifier
from .const import SESSION_TTL, session_storage_key
from .domain.state import SessionToken, normalize_wallet

_LOGGER = logging.getLogger(__name__)


class SessionStore(Protocol):
    """Key/value storage scoped to the current session."""

    def load(self, key: str) -> Mapping[str, Any] | None:
        """Return the stored mapping for ``key`` or None."""

    def save(self, key: str, value: Mapping[str, Any]) -> None:
        """Store ``value`` under ``key``."""

    def delete(self, key: str) -> None:
        """Remove ``key`` if present."""


class MemorySessionStore:
    """Process-local session store; cleared when the process exits."""

    def __init__(self) -> None:
        """Initialise an empty store."""
        self._data: dict[str, dict[str, Any]] = {}

    def load(self, key: str) -> Mapping[str, Any] | None:
        value = self._data.get(key)
        return dict(value) if value is not None else None

    def save(self, key: str, value: Mapping[str, Any]) -> None:
        self._data[key] = dict(value)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        """Return the stored keys."""

        return list(self._data)

    def __len__(self) -> int:
        return len(self._data)


class SessionCache:
    """Hold one session token per wallet with lazy expiry on every read."""

    def __init__(
        self,
        store: SessionStore | None = None,
        *,
        default_ttl: float = SESSION_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialise the cache around ``store`` (in-memory by default)."""
        self._store: SessionStore = store if store is not None else MemorySessionStore()
        self._default_ttl = default_ttl
        self._clock = clock
        self._known: set[str] = set()

    @property
    def backend(self) -> SessionStore:
        """Return the backing store."""

        return self._store

    def get(self, wallet: str) -> SessionToken | None:
        """Return the unexpired session for ``wallet`` or None.

        Expired, malformed or mismatched entries are deleted on read.
        """

        wallet_key = normalize_wallet(wallet)
        key = session_storage_key(wallet_key)
        raw = self._store.load(key)
        if raw is None:
            return None

        try:
            session = SessionToken(
                wallet_address=str(raw["wallet_address"]).lower(),
                token=str(raw["token"]),
                expires_at=float(raw["expires_at"]),
            )
        except (KeyError, TypeError, ValueError):
            _LOGGER.debug(
                "Discarding malformed session for %s", mask_identifier(wallet_key)
            )
            self._store.delete(key)
            return None

        if session.wallet_address != wallet_key or not session.token:
            _LOGGER.debug(
                "Discarding session for other wallet (%s)", mask_identifier(wallet_key)
            )
            self._store.delete(key)
            return None
        if session.is_expired(self._clock()):
            _LOGGER.debug("Session expired for %s", mask_identifier(wallet_key))
            self._store.delete(key)
            self._known.discard(wallet_key)
            return None
        return session

    def store(self, wallet: str, token: str, ttl: float | None = None) -> SessionToken:
        """Store ``token`` for ``wallet`` for ``ttl`` seconds."""

        if not token:
            raise ValueError("session token must be a non-empty string")
        lifetime = self._default_ttl if ttl is None else float(ttl)
        if lifetime <= 0:
            raise ValueError("session ttl must be positive")
        wallet_key = normalize_wallet(wallet)
        session = SessionToken(
            wallet_address=wallet_key,
            token=token,
            expires_at=self._clock() + lifetime,
        )
        self._store.save(session_storage_key(wallet_key), session.as_dict())
        self._known.add(wallet_key)
        _LOGGER.debug(
            "Stored session for %s (ttl=%.0fs)", mask_identifier(wallet_key), lifetime
        )
        return session

    def clear(self, wallet: str | None = None) -> None:
        """Remove the session for ``wallet`` or every session stored here."""

        if wallet is None:
            targets = set(self._known)
        else:
            targets = {normalize_wallet(wallet)}
        for wallet_key in targets:
            self._store.delete(session_storage_key(wallet_key))
            self._known.discard(wallet_key)


__all__ = ["MemorySessionStore", "SessionCache", "SessionStore"]
