# ruff: noqa: D100,D101,D102,D103,D104,D105,D106,D107,INP001,E402
from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
import inspect
import json
import types
from typing import Any

import aiohttp
from aiohttp import WSMsgType
import pytest

from aeronyx_monitor.config import MonitorConfig, load_config
from aeronyx_monitor.dispatcher import MessageDispatcher, MonitorEvent
from aeronyx_monitor.errors import SigningDeclined

WALLET = "0x" + "ab" * 20
OTHER_WALLET = "0x" + "cd" * 20


def pytest_configure(config: pytest.Config) -> None:
    """Register custom pytest markers used across the suite."""

    if not config.pluginmanager.hasplugin("pytest_asyncio"):
        config.addinivalue_line(
            "markers", "asyncio: mark test as requiring asyncio event loop support."
        )


def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> bool | None:
    """Execute async tests when pytest-asyncio is unavailable."""

    if pyfuncitem.config.pluginmanager.hasplugin("pytest_asyncio"):
        return None

    testfunction = pyfuncitem.obj
    if not inspect.iscoroutinefunction(testfunction):
        return None

    marker = pyfuncitem.get_closest_marker("asyncio")
    if marker is None:
        return None

    with asyncio.Runner(debug=False) as runner:
        runner.run(testfunction(**pyfuncitem.funcargs))
    return True


# ----------------- Websocket fakes -----------------


def text_msg(payload: Any) -> types.SimpleNamespace:
    data = payload if isinstance(payload, str) else json.dumps(payload)
    return types.SimpleNamespace(type=WSMsgType.TEXT, data=data, extra=None)


def close_msg(code: int = 1000, extra: str | None = "bye") -> types.SimpleNamespace:
    return types.SimpleNamespace(type=WSMsgType.CLOSE, data=code, extra=extra)


def error_msg(exc: BaseException | None = None) -> types.SimpleNamespace:
    return types.SimpleNamespace(type=WSMsgType.ERROR, data=exc, extra=None)


Responder = Callable[["FakeWebSocket", dict[str, Any]], None]


class FakeWebSocket:
    """Scriptable stand-in for ``aiohttp.ClientWebSocketResponse``.

    Messages are served from a queue; ``receive`` blocks until one arrives.
    ``responder`` plays the server and may queue replies for every frame the
    client sends.
    """

    def __init__(
        self,
        messages: Iterable[Any] | None = None,
        *,
        responder: Responder | None = None,
    ) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        for message in messages or ():
            self._queue.put_nowait(message)
        self.responder = responder
        self.sent: list[str] = []
        self.close_code: int | None = None
        self.close_calls: list[int | None] = []
        self.closed = False
        self._exception: BaseException | None = None

    @property
    def sent_json(self) -> list[dict[str, Any]]:
        return [json.loads(item) for item in self.sent]

    def sent_types(self) -> list[str]:
        return [item.get("type") for item in self.sent_json]

    def queue_message(self, message: Any) -> None:
        self._queue.put_nowait(message)

    def push(self, payload: Any) -> None:
        self.queue_message(text_msg(payload))

    def push_close(self, code: int = 1000) -> None:
        self.queue_message(close_msg(code))

    async def receive(self, timeout: float | None = None) -> Any:
        if self.closed and self._queue.empty():
            return types.SimpleNamespace(type=WSMsgType.CLOSED, data=None, extra=None)
        if timeout:
            msg = await asyncio.wait_for(self._queue.get(), timeout)
        else:
            msg = await self._queue.get()
        if callable(msg):
            msg = msg()
        if isinstance(msg, BaseException):
            raise msg
        return msg

    async def send_str(self, data: str) -> None:
        if self.closed:
            raise ConnectionResetError("Cannot write to closing transport")
        self.sent.append(data)
        if self.responder is not None:
            self.responder(self, json.loads(data))

    async def close(self, *, code: int = 1000, message: bytes = b"") -> bool:
        self.close_calls.append(code)
        if self.closed:
            return False
        self.closed = True
        self.close_code = code
        self._queue.put_nowait(
            types.SimpleNamespace(type=WSMsgType.CLOSED, data=None, extra=None)
        )
        return True

    def exception(self) -> BaseException | None:
        return self._exception

    def set_exception(self, exc: BaseException | None) -> None:
        self._exception = exc


def server_responder(
    *,
    challenge: str = "Sign in to AeroNyx: nonce 42",
    session_token: str | None = "sess-token-123456",
    accept_session: bool = True,
    auth_error: dict[str, Any] | None = None,
    expires_in: float | None = None,
) -> Responder:
    """Return a responder that behaves like the user-monitor service."""

    def _respond(ws: FakeWebSocket, payload: dict[str, Any]) -> None:
        kind = payload.get("type")
        if kind == "get_message":
            ws.push({"type": "signature_message", "message": challenge})
        elif kind == "auth" and "session_token" in payload:
            if accept_session:
                ws.push({"type": "auth_success", "session_token": payload["session_token"]})
            else:
                ws.push(
                    {"type": "error", "code": "SESSION_EXPIRED", "message": "Session expired"}
                )
        elif kind == "auth":
            if auth_error is not None:
                ws.push({"type": "error", **auth_error})
                return
            reply: dict[str, Any] = {"type": "auth_success", "nodes": []}
            if session_token is not None:
                reply["session_token"] = session_token
            if expires_in is not None:
                reply["expires_in"] = expires_in
            ws.push(reply)
        elif kind == "start_monitor":
            ws.push({"type": "monitor_started"})
        elif kind == "stop_monitor":
            ws.push({"type": "monitor_stopped"})
        elif kind == "ping":
            ws.push({"type": "pong", "timestamp": payload.get("timestamp")})

    return _respond


# ----------------- HTTP fakes -----------------


class FakeHTTPResponse:
    def __init__(
        self,
        status: int,
        body: Any,
        *,
        headers: dict[str, Any] | None = None,
    ) -> None:
        self.status = status
        self._body = body
        self.headers = headers or {"Content-Type": "application/json"}
        self.request_info = types.SimpleNamespace(
            real_url="https://api.aeronyx.network/test", method="POST", headers={}
        )
        self.history: tuple[Any, ...] = ()

    async def text(self) -> str:
        body = self._body
        if isinstance(body, BaseException):
            raise body
        if isinstance(body, bytes):
            return body.decode("utf-8", "ignore")
        if isinstance(body, (dict, list)):
            return json.dumps(body)
        return str(body or "")

    async def json(self, content_type: str | None = None) -> Any:
        return json.loads(await self.text())


class FakeRequestContext:
    def __init__(self, response: FakeHTTPResponse) -> None:
        self._response = response

    async def __aenter__(self) -> FakeHTTPResponse:
        return self._response

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False


class FakeClientSession:
    """Scriptable stand-in for ``aiohttp.ClientSession``."""

    def __init__(
        self,
        *,
        ws_connect_results: Iterable[Any] | None = None,
        responses: Iterable[Any] | None = None,
    ) -> None:
        self._ws_script = list(ws_connect_results or [])
        self._responses = list(responses or [])
        self.ws_connect_calls: list[dict[str, Any]] = []
        self.request_calls: list[dict[str, Any]] = []

    def queue_ws(self, result: Any) -> None:
        self._ws_script.append(result)

    def queue_response(self, response: Any) -> None:
        self._responses.append(response)

    async def ws_connect(self, url: str, **kwargs: Any) -> Any:
        self.ws_connect_calls.append({"url": url, "kwargs": kwargs})
        if not self._ws_script:
            raise aiohttp.ClientConnectionError("no scripted websocket")
        entry = self._ws_script.pop(0)
        if isinstance(entry, BaseException):
            raise entry
        if callable(entry) and not isinstance(entry, FakeWebSocket):
            entry = entry()
        if inspect.isawaitable(entry):
            entry = await entry
        return entry

    def request(self, method: str, url: str, **kwargs: Any) -> FakeRequestContext:
        self.request_calls.append({"method": method, "url": url, **kwargs})
        if not self._responses:
            raise AssertionError("No scripted HTTP response available")
        entry = self._responses.pop(0)
        if isinstance(entry, BaseException):
            raise entry
        if isinstance(entry, tuple):
            entry = FakeHTTPResponse(*entry)
        return FakeRequestContext(entry)


# ----------------- Signing fakes -----------------


class FakeSigner:
    """Signer that records calls and can block or refuse."""

    def __init__(self, *, decline: bool = False, gate: asyncio.Event | None = None) -> None:
        self.decline = decline
        self.gate = gate
        self.calls: list[tuple[str, str]] = []

    async def sign(self, message: str, address: str) -> str:
        self.calls.append((message, address))
        if self.gate is not None:
            await self.gate.wait()
        if self.decline:
            raise SigningDeclined("user rejected the request")
        return f"0xsig{len(self.calls):02d}"


# ----------------- Helpers -----------------


class EventRecorder:
    """Dispatcher listener collecting every event."""

    def __init__(self, dispatcher: MessageDispatcher | None = None) -> None:
        self.events: list[MonitorEvent] = []
        if dispatcher is not None:
            dispatcher.subscribe(self)

    def __call__(self, event: MonitorEvent) -> None:
        self.events.append(event)

    @property
    def states(self) -> list[Any]:
        return [event.state for event in self.events if event.is_state]

    @property
    def frame_types(self) -> list[str | None]:
        return [event.frame_type for event in self.events if not event.is_state]


def make_config(**overrides: Any) -> MonitorConfig:
    data: dict[str, Any] = {
        "wallet_address": WALLET,
        "ping_interval": 3600,
        "connect_timeout": 5,
        "reconnect_base_delay": 3,
        "reconnect_max_delay": 30,
        "auto_monitor": False,
    }
    data.update(overrides)
    return load_config(data)


async def settle(rounds: int = 20) -> None:
    """Let queued callbacks and tasks run."""

    for _ in range(rounds):
        await asyncio.sleep(0)


async def no_sleep(delay: float) -> None:
    await asyncio.sleep(0)


@pytest.fixture
def config() -> MonitorConfig:
    return make_config()
