"""Tests for websocket liveness tracking."""

from __future__ import annotations

from aeronyx_monitor.backend.ws_health import WsHealthTracker


def test_open_resets_liveness_baseline() -> None:
    """Opening a socket counts as a fresh acknowledgement."""

    tracker = WsHealthTracker(wallet="0xabab...abab")
    tracker.mark_ping(timestamp=5.0)
    tracker.mark_open(timestamp=100.0)

    assert tracker.connected_since == 100.0
    assert tracker.last_pong_at == 100.0
    assert tracker.last_ping_at is None
    assert tracker.pong_age(now=130.0) == 30.0


def test_is_stale_uses_strict_threshold() -> None:
    """The peer is stale only once the pong age exceeds the threshold."""

    tracker = WsHealthTracker(wallet="w")
    assert tracker.is_stale(90.0, now=1_000.0) is False

    tracker.mark_pong(timestamp=10.0)

    assert tracker.is_stale(90.0, now=100.0) is False
    assert tracker.is_stale(90.0, now=100.5) is True
    assert tracker.is_stale(0, now=10_000.0) is False


def test_pong_never_moves_backwards() -> None:
    """Out-of-order acknowledgements keep the newest timestamp."""

    tracker = WsHealthTracker(wallet="w")
    tracker.mark_pong(timestamp=50.0)
    tracker.mark_pong(timestamp=40.0)

    assert tracker.last_pong_at == 50.0


def test_frame_counters_and_snapshot() -> None:
    """Frames are counted and only the last five types are kept."""

    tracker = WsHealthTracker(wallet="w")
    for index, frame_type in enumerate(["a", "b", "c", "d", "e", "f"]):
        tracker.mark_frame(frame_type, timestamp=float(index))
    tracker.mark_ping(timestamp=6.0)

    assert tracker.update_status("authenticated", timestamp=7.0) is True
    assert tracker.update_status("authenticated", timestamp=8.0) is False

    snapshot = tracker.snapshot(now=10.0)
    assert snapshot["frames_total"] == 6
    assert snapshot["last_frame_types"] == ["b", "c", "d", "e", "f"]
    assert snapshot["pings_sent"] == 1
    assert snapshot["status"] == "authenticated"
    assert snapshot["last_status_at"] == 7.0
    assert snapshot["pong_age"] is None

    tracker.mark_closed()
    assert tracker.connected_since is None
