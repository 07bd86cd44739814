"""Realtime node monitoring client for AeroNyx wallets."""
from __future__ import annotations

from .config import MonitorConfig, load_config
from .dispatcher import MessageDispatcher, MonitorEvent
from .domain.state import ConnectionState
from .errors import (
    AuthRejected,
    MonitorError,
    NotConnected,
    PermanentFailure,
    RequestTimeout,
    ServerError,
    SigningDeclined,
    TerminalError,
    TransportError,
)
from .runtime import ConnectionRegistry, MonitorRuntime
from .signature import PrivateKeySigner

__version__ = "1.0.0"

__all__ = [
    "AuthRejected",
    "ConnectionRegistry",
    "ConnectionState",
    "MessageDispatcher",
    "MonitorConfig",
    "MonitorError",
    "MonitorEvent",
    "MonitorRuntime",
    "NotConnected",
    "PermanentFailure",
    "PrivateKeySigner",
    "RequestTimeout",
    "ServerError",
    "SigningDeclined",
    "TerminalError",
    "TransportError",
    "load_config",
]
