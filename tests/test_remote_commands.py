"""Tests for remote management commands."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from types import SimpleNamespace
from typing import Any
from unittest.mock import AsyncMock

import pytest

from aeronyx_monitor.codecs.frames import decode_frame
from aeronyx_monitor.correlator import RequestCorrelator
from aeronyx_monitor.errors import RequestTimeout, ServerError, TransportError
from aeronyx_monitor.remote_commands import (
    CommandErrorCode,
    RemoteCommandClient,
    RemoteCommandError,
    call_with_retry,
    validate_path,
)


class FakeAuth:
    def __init__(self, *nodes: str) -> None:
        self.nodes = set(nodes)
        self.invalidated: list[str] = []

    def is_authorized(self, node_reference: str) -> bool:
        return node_reference in self.nodes

    def invalidate(self, node_reference: str) -> bool:
        self.invalidated.append(node_reference)
        self.nodes.discard(node_reference)
        return True


class FakeCorrelator:
    def __init__(self, outcome: Any = None) -> None:
        self.outcome = outcome
        self.calls: list[tuple[dict[str, Any], float | None]] = []

    async def send_request(self, payload: Mapping[str, Any], timeout: float | None = None) -> Any:
        self.calls.append((dict(payload), timeout))
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        return decode_frame(
            '{"type":"remote_command_response","request_id":"r","success":true,'
            '"result":{"entries":["a","b"]}}'
        )


def _client(outcome: Any = None, *nodes: str) -> tuple[RemoteCommandClient, FakeCorrelator, FakeAuth]:
    correlator = FakeCorrelator(outcome)
    auth = FakeAuth(*(nodes or ("N1",)))
    return RemoteCommandClient(correlator, auth), correlator, auth  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_send_command_builds_payload_and_returns_result() -> None:
    """Commands are wrapped with the node reference and typed timeout."""

    client, correlator, _ = _client()

    result = await client.list_directory("N1", "/var/log", include_hidden=True)

    assert result == {"entries": ["a", "b"]}
    payload, timeout = correlator.calls[0]
    assert payload == {
        "type": "remote_command",
        "node_reference": "N1",
        "command": {
            "path": "/var/log",
            "recursive": False,
            "include_hidden": True,
            "type": "list",
        },
    }
    assert timeout == 30.0


@pytest.mark.asyncio
async def test_helpers_drop_unset_parameters() -> None:
    """``None`` parameters are omitted from the command."""

    client, correlator, _ = _client()

    await client.execute("N1", "uptime")
    await client.system_info("N1")
    await client.delete("N1", "/tmp/file")
    await client.send_command("N1", "compress", {"paths": ["/a"]}, timeout=5)

    commands = [call[0]["command"] for call in correlator.calls]
    assert commands == [
        {"cmd": "uptime", "args": [], "type": "execute"},
        {"type": "system_info"},
        {"path": "/tmp/file", "type": "delete"},
        {"paths": ["/a"], "type": "compress"},
    ]
    assert [call[1] for call in correlator.calls] == [60.0, 30.0, 30.0, 5]


@pytest.mark.asyncio
async def test_unauthorised_node_rejected_before_sending() -> None:
    """Nodes without remote authorisation never receive commands."""

    client, correlator, _ = _client(None, "N2")

    with pytest.raises(RemoteCommandError) as err:
        await client.send_command("N1", "list", {"path": "/"})

    assert err.value.code == CommandErrorCode.UNAUTHORIZED.value
    assert correlator.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("node", "command", "code"),
    [
        ("", "list", "INVALID_PARAMETERS"),
        ("N1", "", "INVALID_COMMAND"),
    ],
)
async def test_invalid_arguments(node: str, command: str, code: str) -> None:
    """Missing node or command type fails locally."""

    client, correlator, _ = _client()

    with pytest.raises(RemoteCommandError) as err:
        await client.send_command(node, command)

    assert err.value.code == code
    assert correlator.calls == []


@pytest.mark.asyncio
async def test_unsafe_path_rejected_before_sending() -> None:
    """Path traversal never leaves the client."""

    client, correlator, _ = _client()

    with pytest.raises(RemoteCommandError, match="illegal"):
        await client.delete("N1", "/etc/../passwd")
    with pytest.raises(RemoteCommandError):
        await client.execute("N1", "")

    assert correlator.calls == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("outcome", "code", "retryable", "reauth"),
    [
        (ServerError("FILE_NOT_FOUND", "missing"), "FILE_NOT_FOUND", False, False),
        (ServerError("invalid_jwt", ""), "INVALID_JWT", False, True),
        (RequestTimeout("slow"), "TIMEOUT", True, False),
        (TransportError("gone"), "CONNECTION_LOST", True, False),
    ],
)
async def test_failures_are_mapped(
    outcome: BaseException, code: str, retryable: bool, reauth: bool
) -> None:
    """Correlator failures become RemoteCommandError with a code."""

    client, _, auth = _client(outcome)

    with pytest.raises(RemoteCommandError) as err:
        await client.send_command("N1", "list", {"path": "/"})

    assert err.value.code == code
    assert err.value.retryable is retryable
    assert err.value.requires_reauth is reauth
    assert auth.invalidated == (["N1"] if reauth else [])


def test_error_defaults_and_serialisation() -> None:
    """Codes are upper-cased and default messages come from the catalogue."""

    error = RemoteCommandError("token_expired")

    assert error.code == "TOKEN_EXPIRED"
    assert str(error) == "Authentication token expired"
    assert error.as_dict() == {
        "code": "TOKEN_EXPIRED",
        "message": "Authentication token expired",
        "suggestion": "Authorise remote management again",
        "retryable": True,
        "requires_reauth": True,
    }
    assert RemoteCommandError(None).code == "UNKNOWN"
    assert RemoteCommandError("MADE_UP").message == "An unknown error occurred"


def test_error_from_response() -> None:
    """Response ``error`` fields of any shape produce an error."""

    mapped = RemoteCommandError.from_response(
        {"code": "DISK_FULL", "details": {"free": 0}}
    )
    assert mapped.code == "DISK_FULL"
    assert mapped.message == "Disk is full"
    assert mapped.details == {"free": 0}

    assert RemoteCommandError.from_response("boom").message == "boom"
    assert RemoteCommandError.from_response(None).code == "UNKNOWN"


@pytest.mark.parametrize(
    ("path", "message"),
    [
        ("", "empty"),
        (None, "empty"),
        ("/" + "a" * 4096, "too long"),
        ("../etc", "illegal"),
        ("/tmp/\0x", "illegal"),
    ],
)
def test_validate_path_rejects(path: Any, message: str) -> None:
    """Empty, oversized and traversal paths are rejected."""

    with pytest.raises(RemoteCommandError, match=message) as err:
        validate_path(path)
    assert err.value.code == "INVALID_PATH"


def test_validate_path_accepts_normal_path() -> None:
    """Ordinary paths pass through unchanged."""

    assert validate_path("/home/node/data.txt") == "/home/node/data.txt"


@pytest.mark.asyncio
async def test_call_with_retry_linear_backoff() -> None:
    """Retryable failures are repeated with linearly growing waits."""

    delays: list[float] = []
    attempts: list[int] = []

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)

    async def flaky() -> str:
        attempts.append(1)
        if len(attempts) < 3:
            raise RemoteCommandError("NETWORK_ERROR")
        return "ok"

    assert await call_with_retry(flaky, retry_delay=2.0, sleep=fake_sleep) == "ok"
    assert delays == [2.0, 4.0]


@pytest.mark.asyncio
async def test_call_with_retry_stops_on_fatal_or_exhaustion() -> None:
    """Non-retryable errors raise at once; retryable ones after the budget."""

    calls: list[str] = []

    async def fake_sleep(delay: float) -> None:
        return None

    async def fatal() -> None:
        calls.append("fatal")
        raise RemoteCommandError("PERMISSION_DENIED")

    async def always_timeout() -> None:
        calls.append("timeout")
        raise RemoteCommandError("TIMEOUT")

    with pytest.raises(RemoteCommandError):
        await call_with_retry(fatal, sleep=fake_sleep)
    with pytest.raises(RemoteCommandError):
        await call_with_retry(always_timeout, max_retries=2, sleep=fake_sleep)

    assert calls == ["fatal", "timeout", "timeout", "timeout"]


@pytest.mark.asyncio
async def test_round_trip_through_real_correlator() -> None:
    """Replies carrying the request id resolve the command result."""

    correlator: RequestCorrelator

    async def send(payload: Mapping[str, Any]) -> None:
        reply = (
            '{"type":"remote_command_response","request_id":"%s","success":true,'
            '"result":{"hostname":"node-1"}}' % payload["request_id"]
        )
        asyncio.get_running_loop().call_soon(correlator.handle_frame, decode_frame(reply))

    correlator = RequestCorrelator(send)
    client = RemoteCommandClient(correlator, FakeAuth("N1"))  # type: ignore[arg-type]

    assert await client.system_info("N1", ["cpu"]) == {"hostname": "node-1"}
    assert correlator.pending_count == 0


@pytest.mark.asyncio
async def test_generic_reply_returns_raw_result() -> None:
    """Replies that are not command responses yield their ``result`` field."""

    correlator = SimpleNamespace(
        send_request=AsyncMock(
            return_value=decode_frame('{"type":"search_result","request_id":"r","result":[1]}')
        )
    )
    client = RemoteCommandClient(correlator, FakeAuth("N1"))  # type: ignore[arg-type]

    assert await client.send_command("N1", "search", {"pattern": "*.log"}) == [1]
    correlator.send_request.assert_awaited_once()
    payload, timeout = correlator.send_request.await_args.args
    assert payload["command"] == {"pattern": "*.log", "type": "search"}
    assert timeout == 60.0
