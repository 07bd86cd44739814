"""Backend package exports."""
from __future__ import annotations

from typing import Any

from .sanitize import mask_identifier, redact_payload, redact_text
from .ws_health import WsHealthTracker

__all__ = [
    "ConnectionManager",
    "WsHealthTracker",
    "mask_identifier",
    "redact_payload",
    "redact_text",
]


def __getattr__(name: str) -> Any:
    """Lazily import the connection manager to avoid circular imports."""

    if name == "ConnectionManager":
        from .ws_client import ConnectionManager

        globals()[name] = ConnectionManager
        return ConnectionManager
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
