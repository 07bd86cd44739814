"""Exceptions raised by the AeroNyx monitor client."""

from __future__ import annotations


class MonitorError(Exception):
    """Base class for monitor client failures."""


class TransportError(MonitorError):
    """Socket-level failure or timeout."""


class NotConnected(TransportError):
    """The websocket is not open (or not authenticated) for the operation."""


class AuthRejected(MonitorError):
    """The server rejected a signature, session or token."""

    def __init__(self, message: str, *, code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class SigningDeclined(MonitorError):
    """The signing capability refused or failed to sign the challenge."""


class RequestTimeout(MonitorError):
    """A correlated request was not answered in time."""


class ServerError(MonitorError):
    """Explicit error frame or envelope returned by the server."""

    def __init__(self, code: str | None, message: str) -> None:
        super().__init__(message or code or "server error")
        self.code = code
        self.message = message


class PermanentFailure(MonitorError):
    """The reconnect budget is exhausted."""


class RateLimited(MonitorError):
    """Server rate-limited the client (HTTP 429)."""


class FrameDecodeError(MonitorError):
    """Inbound websocket frame could not be decoded."""


class TerminalError(MonitorError):
    """A remote terminal session could not be opened or used."""


__all__ = [
    "AuthRejected",
    "FrameDecodeError",
    "MonitorError",
    "NotConnected",
    "PermanentFailure",
    "RateLimited",
    "RequestTimeout",
    "ServerError",
    "SigningDeclined",
    "TerminalError",
    "TransportError",
]
