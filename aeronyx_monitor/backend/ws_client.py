"""Connection lifecycle manager for the user-monitor websocket."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from contextlib import suppress
import json
import logging
import time
from typing import Any

import aiohttp

from aeronyx_monitor.backend.sanitize import mask_identifier, redact_text
from aeronyx_monitor.backend.ws_health import WsHealthTracker
from aeronyx_monitor.codecs.frames import (
    AuthSuccessFrame,
    ErrorFrame,
    GetMessageRequest,
    InboundFrame,
    MonitorStartedFrame,
    MonitorStoppedFrame,
    OutboundFrame,
    PingRequest,
    PongFrame,
    SessionAuthRequest,
    SignatureAuthRequest,
    SignatureMessageFrame,
    StartMonitorRequest,
    StopMonitorRequest,
    decode_frame,
)
from aeronyx_monitor.config import MonitorConfig
from aeronyx_monitor.const import DOMAIN, SESSION_ERROR_CODES, USER_AGENT, WS_CLOSE_NORMAL
from aeronyx_monitor.dispatcher import MessageDispatcher, MonitorEvent
from aeronyx_monitor.domain.state import (
    AUTHENTICATED_STATES,
    HANDSHAKE_STATES,
    OPEN_STATES,
    ConnectionState,
    normalize_wallet,
)
from aeronyx_monitor.errors import (
    AuthRejected,
    FrameDecodeError,
    NotConnected,
    PermanentFailure,
    ServerError,
    SigningDeclined,
    TransportError,
)
from aeronyx_monitor.session import SessionCache
from aeronyx_monitor.signature import SignatureCache

_LOGGER = logging.getLogger(__name__)

SleepCallable = Callable[[float], Awaitable[Any]]

_CLOSE_TYPES = (
    aiohttp.WSMsgType.CLOSE,
    aiohttp.WSMsgType.CLOSING,
    aiohttp.WSMsgType.CLOSED,
)
_CLOSE_EXCEPTIONS = (aiohttp.ClientError, OSError, RuntimeError, TimeoutError)
_TERMINAL_ERRORS = (SigningDeclined, AuthRejected, ServerError)
_SESSION_ONLY_CODES = frozenset({"SESSION_INVALID", "SESSION_EXPIRED"})


class ConnectionManager:
    """Own the websocket for one wallet and drive it through authentication.

    ``connect()`` starts a runner task and returns immediately; progress is
    observable only through state and frame events on the dispatcher. The
    runner opens the socket, authenticates with a cached session or a freshly
    signed challenge, optionally starts the monitor stream, keeps the socket
    alive with ``ping`` frames and reconnects with capped exponential backoff
    after abnormal closes.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        config: MonitorConfig,
        *,
        signatures: SignatureCache,
        sessions: SessionCache,
        dispatcher: MessageDispatcher,
        sleep: SleepCallable = asyncio.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialise the manager; no connection is made until ``connect``."""
        self._session = session
        self._config = config
        self._wallet = normalize_wallet(config.wallet_address)
        self._label = mask_identifier(self._wallet)
        self._signatures = signatures
        self._sessions = sessions
        self._dispatcher = dispatcher
        self._sleep = sleep
        self._monotonic = monotonic

        self._state = ConnectionState.IDLE
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._task: asyncio.Task | None = None
        self._keepalive_task: asyncio.Task | None = None
        self._closing = False
        self._attempts = 0
        self._rechallenged = False
        self._monitor_requested = config.auto_monitor
        self._last_error: BaseException | None = None
        self._health = WsHealthTracker(wallet=self._label)

    # ----------------- Read-only view -----------------

    @property
    def state(self) -> ConnectionState:
        """Return the current connection state."""

        return self._state

    @property
    def wallet_address(self) -> str:
        """Return the wallet this manager authenticates."""

        return self._wallet

    @property
    def last_error(self) -> BaseException | None:
        """Return the most recent failure, if any."""

        return self._last_error

    @property
    def reconnect_attempts(self) -> int:
        """Return reconnect attempts made since the last successful open."""

        return self._attempts

    @property
    def health(self) -> WsHealthTracker:
        """Return the liveness tracker."""

        return self._health

    @property
    def is_connected(self) -> bool:
        """Return True while a socket is open."""

        return self._ws is not None and not self._ws.closed

    @property
    def is_authenticated(self) -> bool:
        """Return True in ``Authenticated`` or ``Monitoring``."""

        return self._state in AUTHENTICATED_STATES

    def is_running(self) -> bool:
        """Return True if the runner task is active."""

        return bool(self._task and not self._task.done())

    @property
    def runner_task(self) -> asyncio.Task | None:
        """Return the current runner task, if any."""

        return self._task

    def backoff_delay(self, attempt: int) -> float:
        """Return the reconnect delay before attempt number ``attempt`` (0-based)."""

        return min(
            self._config.reconnect_base_delay * (2**attempt),
            self._config.reconnect_max_delay,
        )

    def snapshot(self) -> dict[str, Any]:
        """Return a serialisable view of the connection."""

        return {
            "wallet": self._label,
            "state": self._state.value,
            "reconnect_attempts": self._attempts,
            "monitor_requested": self._monitor_requested,
            "last_error": None if self._last_error is None else str(self._last_error),
            "health": self._health.snapshot(now=self._monotonic()),
        }

    # ----------------- Commands -----------------

    def connect(self) -> asyncio.Task | None:
        """Start connecting unless already connected or connecting."""

        if self._state in OPEN_STATES:
            _LOGGER.debug(
                "WS %s: connect ignored; already %s", self._label, self._state.value
            )
            return None
        if self.is_running():
            _LOGGER.debug("WS %s: connect already in flight", self._label)
            return None

        self._closing = False
        self._attempts = 0
        self._last_error = None
        self._set_state(ConnectionState.CONNECTING)
        self._task = asyncio.get_running_loop().create_task(
            self._runner(), name=f"{DOMAIN}-ws-{self._label}"
        )
        return self._task

    async def disconnect(self) -> None:
        """Close the socket with a normal close code; never reconnects."""

        self._closing = True
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        self._task = None
        await self._teardown(WS_CLOSE_NORMAL)
        self._set_state(ConnectionState.CLOSED, reason="client disconnect")

    async def send(self, payload: OutboundFrame | Mapping[str, Any]) -> None:
        """Send one frame; raise :class:`NotConnected` without an open socket."""

        ws = self._ws
        if ws is None or ws.closed:
            raise NotConnected("websocket is not open")
        if isinstance(payload, OutboundFrame):
            text = payload.encode()
        else:
            text = json.dumps(dict(payload), separators=(",", ":"))
        if _LOGGER.isEnabledFor(logging.DEBUG):
            _LOGGER.debug("WS %s: -> %s", self._label, redact_text(text))
        try:
            await ws.send_str(text)
        except (aiohttp.ClientError, ConnectionError, RuntimeError) as err:
            raise TransportError(f"send failed: {err}") from err

    async def start_monitor(self) -> None:
        """Request the update stream now or as soon as authenticated."""

        self._monitor_requested = True
        if self._state is ConnectionState.AUTHENTICATED:
            await self.send(StartMonitorRequest())
        elif self._state is not ConnectionState.MONITORING:
            _LOGGER.debug(
                "WS %s: monitor will start after authentication", self._label
            )

    async def stop_monitor(self) -> None:
        """Stop the update stream."""

        self._monitor_requested = False
        if self._state is ConnectionState.MONITORING:
            await self.send(StopMonitorRequest())
            self._set_state(ConnectionState.AUTHENTICATED, reason="monitor stopped")

    async def wait_for_state(
        self, *states: ConnectionState, timeout: float
    ) -> ConnectionState:
        """Return once the manager is in one of ``states``.

        Raises :class:`RequestTimeout` if that does not happen in time.
        """

        if self._state in states:
            return self._state

        def _matches(event: MonitorEvent) -> bool:
            return event.is_state and event.state in states

        event = await self._dispatcher.wait_for(_matches, timeout)
        return event.state

    # ----------------- Core loop -----------------

    async def _runner(self) -> None:
        try:
            while not self._closing:
                if not await self._run_once():
                    break
                if self._closing or not await self._backoff():
                    break
        except asyncio.CancelledError:
            _LOGGER.debug("WS %s: runner cancelled", self._label)
        finally:
            if self._closing:
                self._set_state(ConnectionState.CLOSED, reason="client disconnect")
            elif self._state not in (ConnectionState.ERROR, ConnectionState.CLOSED):
                self._set_state(ConnectionState.CLOSED, reason="runner stopped")

    async def _run_once(self) -> bool:
        """Run one connection attempt; return True when it should be retried."""

        self._rechallenged = False
        close_code = aiohttp.WSCloseCode.GOING_AWAY
        try:
            await self._open()
            await self._begin_auth()
            code = await self._read_loop()
            close_code = WS_CLOSE_NORMAL
            if not self._closing:
                _LOGGER.info("WS %s: server closed connection (code=%s)", self._label, code)
                self._set_state(
                    ConnectionState.CLOSED, reason=f"server closed connection ({code})"
                )
            return False
        except _TERMINAL_ERRORS as err:
            close_code = WS_CLOSE_NORMAL
            self._last_error = err
            _LOGGER.info(
                "WS %s: authentication stopped (%s: %s)",
                self._label,
                type(err).__name__,
                err,
            )
            self._set_state(ConnectionState.ERROR, reason=str(err))
            return False
        except asyncio.CancelledError:
            if self._closing:
                close_code = WS_CLOSE_NORMAL
            raise
        except Exception as err:
            error = err if isinstance(err, TransportError) else TransportError(
                f"{type(err).__name__}: {err}"
            )
            self._last_error = error
            _LOGGER.info(
                "WS %s: connection error (%s: %s)",
                self._label,
                type(err).__name__,
                err,
            )
            _LOGGER.debug("WS %s: connection error details", self._label, exc_info=True)
            if self._state is ConnectionState.CONNECTING:
                self._set_state(ConnectionState.ERROR, reason=str(error))
            return True
        finally:
            await self._teardown(close_code)

    async def _backoff(self) -> bool:
        """Wait before the next attempt; return False once the budget is spent."""

        limit = self._config.max_reconnect_attempts
        if self._attempts >= limit:
            error = PermanentFailure(
                f"gave up after {self._attempts} reconnect attempts: {self._last_error}"
            )
            self._last_error = error
            _LOGGER.warning("WS %s: %s", self._label, error)
            self._set_state(ConnectionState.CLOSED, reason=str(error))
            return False

        delay = self.backoff_delay(self._attempts)
        self._attempts += 1
        self._health.reconnects += 1
        self._set_state(
            ConnectionState.RECONNECTING,
            reason=f"attempt {self._attempts}/{limit} in {delay:.1f}s",
        )
        await self._sleep(delay)
        return not self._closing

    # ----------------- Protocol steps -----------------

    async def _open(self) -> None:
        self._set_state(ConnectionState.CONNECTING)
        timeout = self._config.connect_timeout
        _LOGGER.debug("WS %s: connecting to %s", self._label, self._config.ws_url)
        try:
            async with asyncio.timeout(timeout):
                ws = await self._session.ws_connect(
                    self._config.ws_url,
                    heartbeat=None,
                    autoping=True,
                    headers={"User-Agent": USER_AGENT},
                )
        except TimeoutError as err:
            raise TransportError(f"connect timed out after {timeout:.0f}s") from err
        except aiohttp.ClientError as err:
            raise TransportError(f"connect failed: {err}") from err

        self._ws = ws
        self._attempts = 0
        self._health.mark_open(timestamp=self._monotonic())
        self._set_state(ConnectionState.CONNECTED)
        self._start_keepalive()

    async def _begin_auth(self) -> None:
        session = self._sessions.get(self._wallet)
        if session is None:
            await self._request_challenge()
            return
        self._set_state(ConnectionState.AUTHENTICATING, reason="cached session")
        await self.send(
            SessionAuthRequest(session_token=session.token, wallet_address=self._wallet)
        )

    async def _request_challenge(self) -> None:
        self._set_state(ConnectionState.REQUESTING_CHALLENGE)
        await self.send(GetMessageRequest(wallet_address=self._wallet))

    async def _on_challenge(self, message: str) -> None:
        if self._state not in (
            ConnectionState.CONNECTED,
            ConnectionState.REQUESTING_CHALLENGE,
        ):
            _LOGGER.debug(
                "WS %s: ignoring challenge in state %s", self._label, self._state.value
            )
            return
        self._set_state(ConnectionState.SIGNING)
        timeout = self._config.signing_timeout
        try:
            async with asyncio.timeout(timeout):
                credential = await self._signatures.get_signature(
                    self._wallet, challenge=message
                )
        except TimeoutError as err:
            self._signatures.clear()
            raise SigningDeclined(f"signing timed out after {timeout:.0f}s") from err
        self._set_state(ConnectionState.AUTHENTICATING)
        await self.send(
            SignatureAuthRequest(
                wallet_address=self._wallet,
                signature=credential.signature,
                message=credential.challenge_message,
                wallet_type=credential.wallet_type,
            )
        )

    async def _on_authenticated(self, frame: AuthSuccessFrame) -> None:
        if self._state is not ConnectionState.AUTHENTICATING:
            _LOGGER.debug(
                "WS %s: ignoring auth_success in state %s",
                self._label,
                self._state.value,
            )
            return
        if frame.session_token:
            ttl = self._config.session_ttl
            if frame.expires_in is not None and frame.expires_in > 0:
                ttl = frame.expires_in
            self._sessions.store(self._wallet, frame.session_token, ttl)
        else:
            _LOGGER.debug(
                "WS %s: auth_success without session token; not cached", self._label
            )
        self._health.mark_pong(timestamp=self._monotonic())
        self._set_state(ConnectionState.AUTHENTICATED)
        if self._monitor_requested:
            await self.send(StartMonitorRequest())

    async def _on_error_frame(self, frame: ErrorFrame) -> None:
        if frame.request_id:
            return
        code = (frame.code or "").upper()
        error = ServerError(frame.code, frame.message)

        if self._state in HANDSHAKE_STATES:
            if not self._is_auth_error(frame):
                raise error
            self._sessions.clear(self._wallet)
            self._signatures.clear()
            if self._rechallenged:
                raise AuthRejected(
                    frame.message or "authentication rejected", code=frame.code
                )
            self._rechallenged = True
            _LOGGER.info(
                "WS %s: credentials rejected (%s); requesting a new challenge",
                self._label,
                frame.code or frame.message,
            )
            await self._request_challenge()
            return

        if code in _SESSION_ONLY_CODES:
            self._sessions.clear(self._wallet)
        self._last_error = error
        _LOGGER.info(
            "WS %s: server error %s: %s", self._label, frame.code, frame.message
        )

    @staticmethod
    def _is_auth_error(frame: ErrorFrame) -> bool:
        code = (frame.code or "").upper()
        if code in SESSION_ERROR_CODES:
            return True
        text = frame.message.lower()
        return "session" in text or "signature" in text

    # ----------------- Loops -----------------

    def _start_keepalive(self) -> None:
        if self._keepalive_task is None or self._keepalive_task.done():
            self._keepalive_task = asyncio.get_running_loop().create_task(
                self._keepalive_loop(), name=f"{DOMAIN}-ws-ping-{self._label}"
            )

    async def _stop_keepalive(self) -> None:
        task, self._keepalive_task = self._keepalive_task, None
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task

    async def _keepalive_loop(self) -> None:
        interval = self._config.ping_interval
        while True:
            await asyncio.sleep(interval)
            if self._state not in AUTHENTICATED_STATES:
                continue
            try:
                await self.send(PingRequest())
            except TransportError:
                _LOGGER.debug("WS %s: ping failed", self._label, exc_info=True)
                return
            self._health.mark_ping(timestamp=self._monotonic())

    async def _read_loop(self) -> int | None:
        """Process frames until the socket closes normally.

        Returns the close code of a normal close; raises
        :class:`TransportError` for abnormal closes, socket errors and a
        stale peer.
        """

        ws = self._ws
        if ws is None:
            raise NotConnected("websocket is not open")

        while True:
            try:
                msg = await ws.receive(timeout=self._config.ping_interval)
            except TimeoutError:
                self._check_liveness()
                continue

            if msg.type in _CLOSE_TYPES:
                code = msg.data if msg.type is aiohttp.WSMsgType.CLOSE else ws.close_code
                if self._closing or code == WS_CLOSE_NORMAL:
                    return code
                exc = ws.exception()
                raise TransportError(
                    f"websocket closed: code={code} reason={msg.extra}"
                ) from exc
            if msg.type is aiohttp.WSMsgType.ERROR:
                exc = ws.exception()
                raise TransportError(f"websocket error: {exc or msg.data}") from exc
            if msg.type not in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                continue

            data = (
                msg.data
                if isinstance(msg.data, str)
                else msg.data.decode("utf-8", "ignore")
            )
            await self._handle_text(data)
            self._check_liveness()

    def _check_liveness(self) -> None:
        if self._state not in AUTHENTICATED_STATES:
            return
        now = self._monotonic()
        if not self._health.is_stale(self._config.stale_after, now=now):
            return
        age = self._health.pong_age(now=now) or 0.0
        _LOGGER.warning(
            "WS %s: no pong for %.0fs; dropping connection", self._label, age
        )
        raise TransportError(f"keepalive timeout after {age:.0f}s")

    # ----------------- Frame handling -----------------

    async def _handle_text(self, data: str) -> None:
        try:
            frame = decode_frame(data)
        except FrameDecodeError as err:
            _LOGGER.debug("WS %s: dropping frame (%s)", self._label, err)
            return
        if _LOGGER.isEnabledFor(logging.DEBUG):
            _LOGGER.debug("WS %s: <- %s", self._label, frame.type or "<untyped>")
        self._health.mark_frame(frame.type, timestamp=self._monotonic())
        self._dispatcher.dispatch_frame(frame, self._state)
        await self._apply_frame(frame)

    async def _apply_frame(self, frame: InboundFrame) -> None:
        if isinstance(frame, PongFrame):
            self._health.mark_pong(timestamp=self._monotonic())
        elif isinstance(frame, SignatureMessageFrame):
            await self._on_challenge(frame.message)
        elif isinstance(frame, AuthSuccessFrame):
            await self._on_authenticated(frame)
        elif isinstance(frame, MonitorStartedFrame):
            if self._state in AUTHENTICATED_STATES:
                self._set_state(ConnectionState.MONITORING)
        elif isinstance(frame, MonitorStoppedFrame):
            if self._state is ConnectionState.MONITORING:
                self._set_state(ConnectionState.AUTHENTICATED, reason="monitor stopped")
        elif isinstance(frame, ErrorFrame):
            await self._on_error_frame(frame)

    # ----------------- Helpers -----------------

    def _set_state(self, state: ConnectionState, *, reason: str | None = None) -> None:
        previous = self._state
        if state is previous:
            return
        self._state = state
        self._health.update_status(state.value, timestamp=self._monotonic())
        _LOGGER.debug(
            "WS %s: %s -> %s%s",
            self._label,
            previous.value,
            state.value,
            f" ({reason})" if reason else "",
        )
        self._dispatcher.dispatch_state(state, previous, reason=reason)

    async def _teardown(self, close_code: int) -> None:
        await self._stop_keepalive()
        ws, self._ws = self._ws, None
        if ws is not None and not ws.closed:
            with suppress(*_CLOSE_EXCEPTIONS):
                await ws.close(code=close_code, message=b"client close")
        self._health.mark_closed()


__all__ = ["ConnectionManager"]
