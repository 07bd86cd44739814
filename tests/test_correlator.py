"""Tests for request/response correlation."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
import itertools
from typing import Any

import pytest

from conftest import settle

from aeronyx_monitor.codecs.frames import CommandResponseFrame, decode_frame
from aeronyx_monitor.correlator import RequestCorrelator
from aeronyx_monitor.dispatcher import MessageDispatcher
from aeronyx_monitor.domain.state import ConnectionState
from aeronyx_monitor.errors import NotConnected, RequestTimeout, ServerError, TransportError


class Sender:
    def __init__(self, error: BaseException | None = None) -> None:
        self.sent: list[dict[str, Any]] = []
        self.error = error

    async def __call__(self, payload: Mapping[str, Any]) -> None:
        if self.error is not None:
            raise self.error
        self.sent.append(dict(payload))


def _ids() -> Any:
    counter = itertools.count(1)
    return lambda: f"req-{next(counter)}"


@pytest.mark.asyncio
async def test_reply_settles_request() -> None:
    """The matching reply resolves the request and clears its entry."""

    sender = Sender()
    correlator = RequestCorrelator(sender, id_factory=_ids())

    task = asyncio.create_task(correlator.send_request({"type": "remote_command"}))
    await settle()
    assert sender.sent == [{"type": "remote_command", "request_id": "req-1"}]
    assert correlator.is_pending("req-1")

    matched = correlator.handle_frame(
        decode_frame(
            '{"type":"remote_command_response","request_id":"req-1",'
            '"success":true,"result":{"ok":1}}'
        )
    )
    reply = await task

    assert matched is True
    assert isinstance(reply, CommandResponseFrame)
    assert reply.result == {"ok": 1}
    assert correlator.pending_count == 0


@pytest.mark.asyncio
async def test_request_times_out() -> None:
    """Requests without a reply fail with RequestTimeout."""

    correlator = RequestCorrelator(Sender(), id_factory=_ids())

    with pytest.raises(RequestTimeout):
        await correlator.send_request({"type": "remote_command"}, timeout=0.01)

    assert correlator.pending_count == 0


@pytest.mark.asyncio
async def test_late_reply_is_ignored() -> None:
    """A reply arriving after the timeout matches nothing."""

    correlator = RequestCorrelator(Sender(), id_factory=_ids())

    with pytest.raises(RequestTimeout):
        await correlator.send_request({"type": "remote_command"}, timeout=0.01)

    late = decode_frame('{"request_id":"req-1","success":true}')
    assert correlator.handle_frame(late) is False


@pytest.mark.asyncio
async def test_failure_reply_and_error_frame_raise_server_error() -> None:
    """Failed replies and error frames with the id raise ServerError."""

    correlator = RequestCorrelator(Sender(), id_factory=_ids())

    first = asyncio.create_task(correlator.send_request({"type": "remote_command"}))
    second = asyncio.create_task(correlator.send_request({"type": "remote_command"}))
    await settle()
    correlator.handle_frame(
        decode_frame(
            '{"type":"remote_command_response","request_id":"req-1","success":false,'
            '"error":{"code":"FILE_NOT_FOUND","message":"missing"}}'
        )
    )
    correlator.handle_frame(
        decode_frame('{"type":"error","request_id":"req-2","code":"UNAUTHORIZED"}')
    )

    with pytest.raises(ServerError) as first_err:
        await first
    with pytest.raises(ServerError) as second_err:
        await second
    assert first_err.value.code == "FILE_NOT_FOUND"
    assert second_err.value.code == "UNAUTHORIZED"


@pytest.mark.asyncio
async def test_connection_loss_rejects_pending() -> None:
    """Losing the connection fails every outstanding request."""

    dispatcher = MessageDispatcher()
    correlator = RequestCorrelator(Sender(), id_factory=_ids())
    dispatcher.subscribe(correlator.handle_event)

    task = asyncio.create_task(correlator.send_request({"type": "remote_command"}))
    await settle()
    dispatcher.dispatch_state(
        ConnectionState.RECONNECTING, ConnectionState.MONITORING, reason="socket closed"
    )

    with pytest.raises(TransportError, match="socket closed"):
        await task
    assert correlator.pending_count == 0


@pytest.mark.asyncio
async def test_frames_reach_correlator_through_dispatcher() -> None:
    """Replies dispatched as frame events settle the request."""

    dispatcher = MessageDispatcher()
    correlator = RequestCorrelator(Sender(), id_factory=_ids())
    dispatcher.subscribe(correlator.handle_event)

    task = asyncio.create_task(correlator.send_request({"type": "remote_command"}))
    await settle()
    dispatcher.dispatch_frame(
        decode_frame('{"type":"custom_reply","request_id":"req-1","value":3}'),
        ConnectionState.MONITORING,
    )

    reply = await task
    assert reply.raw["value"] == 3


@pytest.mark.asyncio
async def test_send_failure_rejects_immediately() -> None:
    """A failed send fails the request without waiting for the timeout."""

    correlator = RequestCorrelator(Sender(NotConnected("closed")), id_factory=_ids())

    with pytest.raises(NotConnected):
        await correlator.send_request({"type": "remote_command"}, timeout=60)

    correlator = RequestCorrelator(Sender(OSError("pipe")), id_factory=_ids())
    with pytest.raises(TransportError, match="pipe"):
        await correlator.send_request({"type": "remote_command"}, timeout=60)
    assert correlator.pending_count == 0


@pytest.mark.asyncio
async def test_invalid_timeout_rejected() -> None:
    """Timeouts must be positive."""

    correlator = RequestCorrelator(Sender())

    with pytest.raises(ValueError):
        await correlator.send_request({"type": "x"}, timeout=0)
