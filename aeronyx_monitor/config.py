"""Configuration schema for the AeroNyx monitor client."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, fields
import re
from typing import Any

import voluptuous as vol

from .const import (
    API_BASE,
    CONNECT_TIMEOUT,
    DEFAULT_WALLET_TYPE,
    MAX_RECONNECT_ATTEMPTS,
    PING_INTERVAL,
    RECONNECT_BASE_DELAY,
    RECONNECT_MAX_DELAY,
    REMOTE_AUTH_TIMEOUT,
    REMOTE_TOKEN_TTL,
    REQUEST_TIMEOUT,
    SESSION_TTL,
    SIGNATURE_TTL,
    SIGNING_TIMEOUT,
    STALE_FACTOR,
    WS_URL,
)

_WALLET_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def wallet_address(value: Any) -> str:
    """Validate an EVM wallet address and return it lower-cased."""

    text = vol.Coerce(str)(value).strip()
    if not _WALLET_RE.match(text):
        raise vol.Invalid(f"Invalid wallet address: {value!r}")
    return text.lower()


def _url(*schemes: str):
    """Return a validator accepting URLs with one of ``schemes``."""

    def validate(value: Any) -> str:
        text = vol.Coerce(str)(value).strip()
        if not text.startswith(tuple(f"{scheme}://" for scheme in schemes)):
            raise vol.Invalid(f"URL must use {'/'.join(schemes)}: {value!r}")
        return text

    return validate


_POSITIVE = vol.All(vol.Coerce(float), vol.Range(min=0, min_included=False))

CONFIG_SCHEMA = vol.Schema(
    {
        vol.Required("wallet_address"): wallet_address,
        vol.Optional("wallet_type", default=DEFAULT_WALLET_TYPE): vol.All(
            str, vol.Length(min=1)
        ),
        vol.Optional("ws_url", default=WS_URL): _url("ws", "wss"),
        vol.Optional("api_base", default=API_BASE): _url("http", "https"),
        vol.Optional("ping_interval", default=PING_INTERVAL): _POSITIVE,
        vol.Optional("stale_factor", default=STALE_FACTOR): vol.All(
            vol.Coerce(float), vol.Range(min=1)
        ),
        vol.Optional("connect_timeout", default=CONNECT_TIMEOUT): _POSITIVE,
        vol.Optional("reconnect_base_delay", default=RECONNECT_BASE_DELAY): _POSITIVE,
        vol.Optional("reconnect_max_delay", default=RECONNECT_MAX_DELAY): _POSITIVE,
        vol.Optional("max_reconnect_attempts", default=MAX_RECONNECT_ATTEMPTS): vol.All(
            vol.Coerce(int), vol.Range(min=0)
        ),
        vol.Optional("request_timeout", default=REQUEST_TIMEOUT): _POSITIVE,
        vol.Optional("signature_ttl", default=SIGNATURE_TTL): _POSITIVE,
        vol.Optional("signing_timeout", default=SIGNING_TIMEOUT): _POSITIVE,
        vol.Optional("session_ttl", default=SESSION_TTL): _POSITIVE,
        vol.Optional("remote_token_ttl", default=REMOTE_TOKEN_TTL): _POSITIVE,
        vol.Optional("remote_auth_timeout", default=REMOTE_AUTH_TIMEOUT): _POSITIVE,
        vol.Optional("auto_monitor", default=True): bool,
    }
)


@dataclass(frozen=True, slots=True)
class MonitorConfig:
    """Validated client settings."""

    wallet_address: str
    wallet_type: str = DEFAULT_WALLET_TYPE
    ws_url: str = WS_URL
    api_base: str = API_BASE
    ping_interval: float = PING_INTERVAL
    stale_factor: float = STALE_FACTOR
    connect_timeout: float = CONNECT_TIMEOUT
    reconnect_base_delay: float = RECONNECT_BASE_DELAY
    reconnect_max_delay: float = RECONNECT_MAX_DELAY
    max_reconnect_attempts: int = MAX_RECONNECT_ATTEMPTS
    request_timeout: float = REQUEST_TIMEOUT
    signature_ttl: float = SIGNATURE_TTL
    signing_timeout: float = SIGNING_TIMEOUT
    session_ttl: float = SESSION_TTL
    remote_token_ttl: float = REMOTE_TOKEN_TTL
    remote_auth_timeout: float = REMOTE_AUTH_TIMEOUT
    auto_monitor: bool = True

    @property
    def stale_after(self) -> float:
        """Return seconds without a pong after which the peer is dead."""

        return self.ping_interval * self.stale_factor

    def as_dict(self) -> dict[str, Any]:
        """Return the settings as a plain mapping."""

        return {item.name: getattr(self, item.name) for item in fields(self)}


def load_config(data: Mapping[str, Any]) -> MonitorConfig:
    """Validate ``data`` and return a :class:`MonitorConfig`.

    Raises ``voluptuous.Invalid`` (usually ``MultipleInvalid``) for bad input.
    """

    validated = CONFIG_SCHEMA(dict(data))
    if validated["reconnect_max_delay"] < validated["reconnect_base_delay"]:
        raise vol.Invalid(
            "reconnect_max_delay must not be below reconnect_base_delay",
            path=["reconnect_max_delay"],
        )
    return MonitorConfig(**validated)


__all__ = ["CONFIG_SCHEMA", "MonitorConfig", "load_config", "wallet_address"]
