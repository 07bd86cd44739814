"""Tests for the websocket frame codec."""

from __future__ import annotations

import json

import pytest

from aeronyx_monitor.codecs.frames import (
    AuthSuccessFrame,
    CommandResponseFrame,
    ErrorFrame,
    GetMessageRequest,
    InboundFrame,
    PingRequest,
    SessionAuthRequest,
    SignatureAuthRequest,
    SignatureMessageFrame,
    StatusUpdateFrame,
    TerminalErrorFrame,
    TerminalInitRequest,
    TerminalOutputFrame,
    decode_frame,
)
from aeronyx_monitor.errors import FrameDecodeError


def test_outbound_frames_encode_compact_json() -> None:
    """Outbound frames carry their type and omit unset fields."""

    text = GetMessageRequest(wallet_address="0xabc").encode()

    assert text == '{"type":"get_message","wallet_address":"0xabc"}'


def test_auth_requests_share_type_but_not_fields() -> None:
    """Signature and session auth both use the ``auth`` frame type."""

    signed = json.loads(
        SignatureAuthRequest(
            wallet_address="0xabc", signature="0xsig", message="hi", wallet_type="ethereum"
        ).encode()
    )
    session = json.loads(
        SessionAuthRequest(session_token="tok", wallet_address="0xabc").encode()
    )

    assert signed["type"] == session["type"] == "auth"
    assert "session_token" not in signed
    assert set(session) == {"type", "session_token", "wallet_address"}


def test_ping_carries_epoch_milliseconds() -> None:
    """Ping frames default to the current time in milliseconds."""

    payload = json.loads(PingRequest().encode())

    assert payload["type"] == "ping"
    assert payload["timestamp"] > 1_600_000_000_000


def test_signature_message_nested_under_data() -> None:
    """Challenges nested under ``data`` are lifted."""

    frame = decode_frame('{"type":"signature_message","data":{"message":"sign me"}}')

    assert isinstance(frame, SignatureMessageFrame)
    assert frame.message == "sign me"


def test_auth_success_blank_token_is_absent() -> None:
    """An empty session token is treated as no token."""

    frame = decode_frame('{"type":"auth_success","session_token":"  ","expires_in":"60"}')

    assert isinstance(frame, AuthSuccessFrame)
    assert frame.session_token is None
    assert frame.expires_in == 60.0


def test_status_update_reads_nested_nodes() -> None:
    """Nodes and summary may arrive under ``data``."""

    frame = decode_frame(
        json.dumps(
            {
                "type": "status_update",
                "data": {"nodes": [{"reference_code": "AERO-1"}], "summary": {"total": 1}},
            }
        )
    )

    assert isinstance(frame, StatusUpdateFrame)
    assert frame.nodes == [{"reference_code": "AERO-1"}]
    assert frame.summary == {"total": 1}


def test_error_frame_coerces_code_and_message() -> None:
    """Numeric codes become strings and ``error`` fills a missing message."""

    frame = decode_frame('{"type":"error","code":401,"error":"denied"}')

    assert isinstance(frame, ErrorFrame)
    assert frame.code == "401"
    assert frame.message == "denied"
    assert frame.request_id is None


def test_terminal_frames_decode_by_session() -> None:
    """Terminal frames carry their session id; errors fall back to ``message``."""

    output = decode_frame('{"type":"term_output","session_id":"term_1","data":"$ "}')
    error = decode_frame('{"type":"term_error","session_id":"term_1","message":"no shell"}')
    init = json.loads(
        TerminalInitRequest(
            session_id="term_1", node_reference="N1", rows=24, cols=80, cwd="/"
        ).encode()
    )

    assert isinstance(output, TerminalOutputFrame)
    assert (output.session_id, output.data) == ("term_1", "$ ")
    assert isinstance(error, TerminalErrorFrame)
    assert error.error == "no shell"
    assert init["env"] == {}


def test_untyped_reply_becomes_command_response() -> None:
    """A frame with ``request_id`` and ``success`` is a correlated reply."""

    frame = decode_frame(
        '{"request_id":"r1","success":false,"error":{"code":"TIMEOUT","message":"slow"}}'
    )

    assert isinstance(frame, CommandResponseFrame)
    assert frame.error_code == "TIMEOUT"
    assert frame.error_message == "slow"


def test_unknown_type_keeps_raw_payload() -> None:
    """Unknown frames decode to the base model and keep their payload."""

    frame = decode_frame(b'{"type":"node_alert","severity":"high"}')

    assert type(frame) is InboundFrame
    assert frame.type == "node_alert"
    assert frame.raw == {"type": "node_alert", "severity": "high"}


@pytest.mark.parametrize(
    "text",
    [
        "not json",
        "[1, 2]",
        '{"type":"signature_message"}',
        '{"type":"remote_command_response","success":true}',
    ],
)
def test_invalid_frames_raise(text: str) -> None:
    """Malformed payloads raise FrameDecodeError."""

    with pytest.raises(FrameDecodeError):
        decode_frame(text)
