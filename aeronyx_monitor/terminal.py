"""Remote terminal sessions on nodes authorised for remote management.

Shells run over the monitor socket: ``term_init`` opens one, ``term_input``
and ``term_resize`` drive it and ``term_close`` ends it. The node answers
with ``term_ready``, ``term_output``, ``term_error`` and ``term_closed``
frames keyed by ``session_id``. Not every node sends ``term_ready``, so the
first output also counts as ready and a session with no reply at all is
assumed ready after a short delay.

Sessions end when the node closes them, when the node's remote
authorisation expires or is rejected, when the monitor connection is lost,
or after sitting idle.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Callable, Mapping
from contextlib import suppress
from enum import Enum
import logging
import time
from typing import Any, Protocol
import uuid

from .codecs.frames import (
    OutboundFrame,
    TerminalCloseRequest,
    TerminalClosedFrame,
    TerminalErrorFrame,
    TerminalFrame,
    TerminalInitRequest,
    TerminalInputRequest,
    TerminalOutputFrame,
    TerminalReadyFrame,
    TerminalResizeRequest,
)
from .const import (
    DOMAIN,
    TERMINAL_CLEANUP_INTERVAL,
    TERMINAL_COLS,
    TERMINAL_HISTORY_SIZE,
    TERMINAL_IDLE_TIMEOUT,
    TERMINAL_READY_DELAY,
    TERMINAL_ROWS,
)
from .dispatcher import MessageDispatcher, MonitorEvent
from .domain.state import LOST_STATES
from .errors import NotConnected, TerminalError, TransportError
from .remote_auth import EVENT_ERROR as AUTH_ERROR
from .remote_auth import EVENT_EXPIRED as AUTH_EXPIRED
from .remote_auth import RemoteConnection

_LOGGER = logging.getLogger(__name__)

EVENT_READY = "ready"
EVENT_OUTPUT = "output"
EVENT_ERROR = "error"
EVENT_CLOSED = "closed"

SessionListener = Callable[[str, Any], None]

_TERMINAL_FRAME_TYPES = (
    TerminalReadyFrame.frame_type,
    TerminalOutputFrame.frame_type,
    TerminalErrorFrame.frame_type,
    TerminalClosedFrame.frame_type,
)


class TerminalState(str, Enum):
    """Lifecycle of one terminal session."""

    IDLE = "idle"
    INITIALIZING = "initializing"
    READY = "ready"
    ERROR = "error"
    CLOSED = "closed"


class NodeAuthorizer(Protocol):
    """The remote auth layer as seen by terminal sessions."""

    def is_authorized(self, node_reference: str) -> bool:
        """Return True while the node holds a valid token."""

    def subscribe(
        self, node_reference: str, listener: Callable[[str, Any], None]
    ) -> Callable[[], None]:
        """Register ``listener(event, data)`` for one node."""


def new_session_id() -> str:
    """Return a unique terminal session id."""

    return f"term_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


class TerminalSession:
    """One shell on one node; created by :class:`TerminalManager`."""

    def __init__(
        self,
        manager: TerminalManager,
        session_id: str,
        node_reference: str,
        *,
        rows: int,
        cols: int,
        history_size: int,
        clock: Callable[[], float],
    ) -> None:
        """Initialise an idle session."""
        self._manager = manager
        self._clock = clock
        self.session_id = session_id
        self.node_reference = node_reference
        self.rows = rows
        self.cols = cols
        self.state = TerminalState.IDLE
        self.bytes_sent = 0
        self.bytes_received = 0
        self.started_at = clock()
        self.last_activity = self.started_at
        self.has_output = False
        self.last_error: str | None = None
        self.history: deque[str] = deque(maxlen=history_size)
        self._listeners: list[SessionListener] = []
        self._ready: asyncio.Future[None] | None = None

    @property
    def is_open(self) -> bool:
        """Return True while the session is initialising or ready."""

        return self.state in (TerminalState.INITIALIZING, TerminalState.READY)

    def add_listener(self, listener: SessionListener) -> Callable[[], None]:
        """Register ``listener(event, data)`` and return a remover.

        Events are ``ready``, ``output`` (the text), ``error`` (the message)
        and ``closed`` (the reason).
        """

        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    async def send_input(self, data: str) -> None:
        """Send keystrokes to the shell."""

        self._require_ready("send input")
        self.bytes_sent += len(data)
        self.last_activity = self._clock()
        await self._manager.send(
            TerminalInputRequest(session_id=self.session_id, data=data)
        )

    async def resize(self, rows: int, cols: int) -> None:
        """Tell the shell about a new window size."""

        self._require_ready("resize")
        if rows < 1 or cols < 1:
            raise ValueError("terminal size must be positive")
        self.rows = rows
        self.cols = cols
        await self._manager.send(
            TerminalResizeRequest(session_id=self.session_id, rows=rows, cols=cols)
        )

    async def close(self) -> None:
        """Close the shell."""

        await self._manager.close_session(self.session_id)

    def info(self) -> dict[str, Any]:
        """Return a serialisable view of the session."""

        return {
            "session_id": self.session_id,
            "node_reference": self.node_reference,
            "state": self.state.value,
            "rows": self.rows,
            "cols": self.cols,
            "bytes_sent": self.bytes_sent,
            "bytes_received": self.bytes_received,
            "uptime": self._clock() - self.started_at,
            "has_output": self.has_output,
            "last_error": self.last_error,
        }

    # ----------------- Driven by the manager -----------------

    def _begin(self) -> asyncio.Future[None]:
        self.state = TerminalState.INITIALIZING
        self._ready = asyncio.get_running_loop().create_future()
        return self._ready

    def _handle_output(self, data: str) -> None:
        self.bytes_received += len(data)
        self.last_activity = self._clock()
        self.has_output = True
        self.history.append(data)
        self._notify(EVENT_OUTPUT, data)
        self._mark_ready()

    def _mark_ready(self) -> None:
        if self.state is not TerminalState.INITIALIZING:
            return
        self.state = TerminalState.READY
        if self._ready is not None and not self._ready.done():
            self._ready.set_result(None)
        self._notify(EVENT_READY, None)

    def _fail(self, message: str) -> None:
        if self.state is TerminalState.CLOSED:
            return
        self.state = TerminalState.ERROR
        self.last_error = message
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(TerminalError(message))
        self._notify(EVENT_ERROR, message)

    def _closed(self, reason: str) -> None:
        if self.state is TerminalState.CLOSED:
            return
        self.state = TerminalState.CLOSED
        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(TerminalError(f"terminal closed: {reason}"))
        self._notify(EVENT_CLOSED, reason)
        self._listeners.clear()

    def _require_ready(self, action: str) -> None:
        if self.state is not TerminalState.READY:
            raise TerminalError(
                f"cannot {action}: terminal {self.session_id} is {self.state.value}"
            )

    def _notify(self, event: str, data: Any) -> None:
        for listener in list(self._listeners):
            try:
                listener(event, data)
            except Exception:
                _LOGGER.exception("Terminal listener failed for %s", event)


class TerminalManager:
    """Open, route and clean up terminal sessions over the monitor socket."""

    def __init__(
        self,
        connection: RemoteConnection,
        dispatcher: MessageDispatcher,
        remote_auth: NodeAuthorizer,
        *,
        ready_delay: float = TERMINAL_READY_DELAY,
        idle_timeout: float = TERMINAL_IDLE_TIMEOUT,
        cleanup_interval: float = TERMINAL_CLEANUP_INTERVAL,
        history_size: int = TERMINAL_HISTORY_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialise the manager and start listening for terminal frames."""
        self._connection = connection
        self._remote_auth = remote_auth
        self._ready_delay = ready_delay
        self._idle_timeout = idle_timeout
        self._cleanup_interval = cleanup_interval
        self._history_size = history_size
        self._clock = clock
        self._sessions: dict[str, TerminalSession] = {}
        self._auth_watchers: dict[str, Callable[[], None]] = {}
        self._cleanup_task: asyncio.Task | None = None
        self._unsubscribe = dispatcher.subscribe(
            self.handle_event, frame_types=_TERMINAL_FRAME_TYPES
        )

    def __len__(self) -> int:
        return len(self._sessions)

    def get_session(self, session_id: str) -> TerminalSession | None:
        """Return the session with ``session_id``, if open."""

        return self._sessions.get(session_id)

    def node_sessions(self, node_reference: str) -> list[TerminalSession]:
        """Return the sessions open on ``node_reference``."""

        return [
            session
            for session in self._sessions.values()
            if session.node_reference == node_reference
        ]

    def sessions_info(self) -> list[dict[str, Any]]:
        """Return :meth:`TerminalSession.info` for every session."""

        return [session.info() for session in self._sessions.values()]

    async def send(self, frame: OutboundFrame) -> None:
        """Send a terminal frame over the authenticated monitor socket."""

        if not self._connection.is_authenticated:
            raise NotConnected("monitor connection is not authenticated")
        await self._connection.send(frame)

    async def create_session(
        self,
        node_reference: str,
        *,
        rows: int = TERMINAL_ROWS,
        cols: int = TERMINAL_COLS,
        cwd: str = "/",
        env: Mapping[str, str] | None = None,
    ) -> TerminalSession:
        """Open a shell on ``node_reference`` and return it once ready.

        Raises :class:`TerminalError` when the node is not authorised or
        reports an error, and :class:`NotConnected` without an authenticated
        monitor connection.
        """

        key = str(node_reference or "").strip()
        if not key:
            raise ValueError("node reference must be a non-empty string")
        if not self._remote_auth.is_authorized(key):
            raise TerminalError(f"remote management is not authorised for {key}")

        session = TerminalSession(
            self,
            new_session_id(),
            key,
            rows=rows,
            cols=cols,
            history_size=self._history_size,
            clock=self._clock,
        )
        self._sessions[session.session_id] = session
        self._watch_node(key)
        ready = session._begin()
        _LOGGER.debug("Terminal %s: opening on %s", session.session_id, key)
        try:
            await self.send(
                TerminalInitRequest(
                    session_id=session.session_id,
                    node_reference=key,
                    rows=rows,
                    cols=cols,
                    cwd=cwd,
                    env=dict(env or {}),
                )
            )
            try:
                async with asyncio.timeout(self._ready_delay):
                    await ready
            except TimeoutError:
                _LOGGER.debug(
                    "Terminal %s: no reply within %.1fs; assuming ready",
                    session.session_id,
                    self._ready_delay,
                )
                session._mark_ready()
        except (Exception, asyncio.CancelledError):
            ready.cancel()
            self._discard(session, "initialisation failed")
            raise

        self._ensure_cleanup_task()
        _LOGGER.info("Terminal %s opened on %s", session.session_id, key)
        return session

    async def close_session(
        self, session_id: str, *, reason: str = "closed by client"
    ) -> bool:
        """Close one session; return False if it was not open."""

        session = self._sessions.get(session_id)
        if session is None:
            return False
        was_open = session.is_open
        self._discard(session, reason)
        if was_open and self._connection.is_authenticated:
            try:
                await self._connection.send(TerminalCloseRequest(session_id=session_id))
            except TransportError as err:
                _LOGGER.debug("Terminal %s: close not sent (%s)", session_id, err)
        return True

    async def close_node_sessions(self, node_reference: str) -> int:
        """Close every session on ``node_reference``."""

        sessions = self.node_sessions(node_reference)
        for session in sessions:
            await self.close_session(session.session_id)
        return len(sessions)

    async def close_all(self) -> int:
        """Close every session."""

        session_ids = list(self._sessions)
        for session_id in session_ids:
            await self.close_session(session_id)
        return len(session_ids)

    async def cleanup_idle(self, idle_time: float | None = None) -> int:
        """Close sessions without activity for ``idle_time`` seconds."""

        limit = self._idle_timeout if idle_time is None else idle_time
        now = self._clock()
        idle = [
            session.session_id
            for session in self._sessions.values()
            if now - session.last_activity > limit
        ]
        for session_id in idle:
            _LOGGER.info("Closing idle terminal %s", session_id)
            await self.close_session(session_id, reason="idle")
        return len(idle)

    def handle_event(self, event: MonitorEvent) -> None:
        """Dispatcher listener: route terminal frames and drop sessions on loss."""

        if event.is_state:
            if event.state in LOST_STATES and self._sessions:
                reason = f"connection {event.state.value}"
                for session in list(self._sessions.values()):
                    self._discard(session, reason)
            return

        frame = event.frame
        if not isinstance(frame, TerminalFrame):
            return
        session = self._sessions.get(frame.session_id or "")
        if session is None:
            _LOGGER.debug(
                "Ignoring %s for unknown terminal %s", frame.type, frame.session_id
            )
            return
        if isinstance(frame, TerminalOutputFrame):
            if frame.data:
                session._handle_output(frame.data)
            else:
                session._mark_ready()
        elif isinstance(frame, TerminalReadyFrame):
            session._mark_ready()
        elif isinstance(frame, TerminalErrorFrame):
            message = frame.error or "terminal error"
            _LOGGER.info("Terminal %s: %s", session.session_id, message)
            session._fail(message)
        elif isinstance(frame, TerminalClosedFrame):
            self._discard(session, "closed by node")

    async def async_shutdown(self) -> None:
        """Close every session and stop listening."""

        await self.close_all()
        task, self._cleanup_task = self._cleanup_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task
        self._unsubscribe()

    # ----------------- Internals -----------------

    def _watch_node(self, key: str) -> None:
        if key in self._auth_watchers:
            return

        def _on_auth(event: str, data: Any) -> None:
            if event in (AUTH_EXPIRED, AUTH_ERROR):
                self._close_node_locally(key, f"remote authorisation {event}")

        self._auth_watchers[key] = self._remote_auth.subscribe(key, _on_auth)

    def _close_node_locally(self, key: str, reason: str) -> None:
        sessions = self.node_sessions(key)
        if sessions:
            _LOGGER.info("Closing %d terminal(s) on %s: %s", len(sessions), key, reason)
        for session in sessions:
            self._discard(session, reason)

    def _discard(self, session: TerminalSession, reason: str) -> None:
        self._sessions.pop(session.session_id, None)
        session._closed(reason)
        key = session.node_reference
        if not self.node_sessions(key):
            remove = self._auth_watchers.pop(key, None)
            if remove is not None:
                remove()

    def _ensure_cleanup_task(self) -> None:
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.get_running_loop().create_task(
                self._cleanup_loop(), name=f"{DOMAIN}-terminal-cleanup"
            )

    async def _cleanup_loop(self) -> None:
        while self._sessions:
            await asyncio.sleep(self._cleanup_interval)
            await self.cleanup_idle()


__all__ = [
    "EVENT_CLOSED",
    "EVENT_ERROR",
    "EVENT_OUTPUT",
    "EVENT_READY",
    "NodeAuthorizer",
    "TerminalManager",
    "TerminalSession",
    "TerminalState",
    "new_session_id",
]
