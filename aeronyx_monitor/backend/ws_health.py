"""Websocket liveness tracking primitives."""

from __future__ import annotations

from dataclasses import dataclass, field
import time
from typing import Any


@dataclass
class WsHealthTracker:
    """Track socket status, keepalive timestamps and frame counters.

    Timestamps are monotonic seconds supplied by the caller so the tracker
    stays deterministic under test clocks.
    """

    wallet: str
    status: str = "idle"
    connected_since: float | None = None
    last_status_at: float | None = None
    last_ping_at: float | None = None
    last_pong_at: float | None = None
    last_frame_at: float | None = None
    frames_total: int = 0
    pings_sent: int = 0
    reconnects: int = 0
    last_frame_types: list[str] = field(default_factory=list, repr=False)

    def update_status(self, status: str, *, timestamp: float | None = None) -> bool:
        """Update the tracked status and return True when it changed."""

        if status == self.status:
            return False
        self.status = status
        self.last_status_at = timestamp if timestamp is not None else time.monotonic()
        return True

    def mark_open(self, *, timestamp: float | None = None) -> None:
        """Record a successful transport open; liveness restarts from here."""

        now = timestamp if timestamp is not None else time.monotonic()
        self.connected_since = now
        self.last_pong_at = now
        self.last_ping_at = None

    def mark_closed(self) -> None:
        """Forget the current connection window."""

        self.connected_since = None

    def mark_ping(self, *, timestamp: float | None = None) -> None:
        """Record a keepalive ping."""

        self.last_ping_at = timestamp if timestamp is not None else time.monotonic()
        self.pings_sent += 1

    def mark_pong(self, *, timestamp: float | None = None) -> None:
        """Record a keepalive acknowledgement."""

        now = timestamp if timestamp is not None else time.monotonic()
        if self.last_pong_at is None or now >= self.last_pong_at:
            self.last_pong_at = now

    def mark_frame(self, frame_type: str, *, timestamp: float | None = None) -> None:
        """Record an inbound frame."""

        self.last_frame_at = timestamp if timestamp is not None else time.monotonic()
        self.frames_total += 1
        self.last_frame_types.append(frame_type)
        if len(self.last_frame_types) > 5:
            del self.last_frame_types[:-5]

    def pong_age(self, *, now: float | None = None) -> float | None:
        """Return seconds since the last acknowledgement (or open)."""

        if self.last_pong_at is None:
            return None
        current = now if now is not None else time.monotonic()
        return max(0.0, current - self.last_pong_at)

    def is_stale(self, threshold: float, *, now: float | None = None) -> bool:
        """Return True when no acknowledgement arrived within ``threshold``."""

        if threshold <= 0:
            return False
        age = self.pong_age(now=now)
        if age is None:
            return False
        return age > threshold

    def snapshot(self, *, now: float | None = None) -> dict[str, Any]:
        """Return a serializable snapshot of the tracker state."""

        current = now if now is not None else time.monotonic()
        return {
            "status": self.status,
            "connected_since": self.connected_since,
            "last_status_at": self.last_status_at,
            "last_ping_at": self.last_ping_at,
            "last_pong_at": self.last_pong_at,
            "pong_age": self.pong_age(now=current),
            "last_frame_at": self.last_frame_at,
            "frames_total": self.frames_total,
            "pings_sent": self.pings_sent,
            "reconnects": self.reconnects,
            "last_frame_types": list(self.last_frame_types),
        }


__all__ = ["WsHealthTracker"]
