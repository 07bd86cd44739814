"""Per-node remote management authorisation over the monitor socket."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
import logging
import time
from typing import Any, Protocol

from .codecs.frames import ErrorFrame, RemoteAuthRequest, RemoteAuthSuccessFrame
from .const import (
    REMOTE_AUTH_ERROR_CODES,
    REMOTE_AUTH_RETRY_DELAYS,
    REMOTE_AUTH_TIMEOUT,
    REMOTE_TOKEN_TTL,
)
from .dispatcher import EVENT_FRAME, MessageDispatcher, MonitorEvent
from .domain.state import Credential, NodeAuthToken
from .errors import AuthRejected, NotConnected, RequestTimeout

_LOGGER = logging.getLogger(__name__)

EVENT_AUTHORIZED = "authorized"
EVENT_EXPIRED = "expired"
EVENT_ERROR = "error"
EVENT_RETRYING = "retrying"

NodeListener = Callable[[str, Any], None]
SleepCallable = Callable[[float], Awaitable[Any]]


class RemoteConnection(Protocol):
    """The primary connection as seen by the remote auth layer."""

    @property
    def is_authenticated(self) -> bool:
        """Return True once the primary connection is authenticated."""

    async def send(self, payload: Any) -> None:
        """Send one frame."""


class TokenProvider(Protocol):
    """Exchange a signed wallet credential for a node management JWT."""

    async def __call__(self, node_reference: str, credential: Credential) -> str:
        """Return a JWT authorising ``credential`` on ``node_reference``."""


def _node_key(node_reference: str) -> str:
    key = str(node_reference or "").strip()
    if not key:
        raise ValueError("node reference must be a non-empty string")
    return key


def is_not_connected(message: str | None) -> bool:
    """Return True when a failure text says the node is not connected."""

    return "not connected" in (message or "").lower()


def is_remote_auth_error(frame: ErrorFrame) -> bool:
    """Return True for error frames that reject a remote auth attempt."""

    if (frame.code or "").upper() in REMOTE_AUTH_ERROR_CODES:
        return True
    text = frame.message.lower()
    return "not connected" in text or "not enabled" in text


class RemoteAuthManager:
    """Authorise remote management per node and track token validity.

    Only one ``remote_auth`` exchange is on the wire at a time since the
    server reply does not always name the node. Concurrent ``authorize``
    calls for the same node share a single attempt.
    """

    def __init__(
        self,
        connection: RemoteConnection,
        dispatcher: MessageDispatcher,
        *,
        token_provider: TokenProvider | None = None,
        token_ttl: float = REMOTE_TOKEN_TTL,
        auth_timeout: float = REMOTE_AUTH_TIMEOUT,
        retry_delays: tuple[float, ...] = REMOTE_AUTH_RETRY_DELAYS,
        sleep: SleepCallable = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialise the manager around the primary connection."""
        self._connection = connection
        self._dispatcher = dispatcher
        self._token_provider = token_provider
        self._token_ttl = token_ttl
        self._auth_timeout = auth_timeout
        self._retry_delays = tuple(retry_delays)
        self._sleep = sleep
        self._clock = clock
        self._tokens: dict[str, NodeAuthToken] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._inflight: dict[str, asyncio.Task[NodeAuthToken]] = {}
        self._listeners: dict[str, list[NodeListener]] = {}
        self._wire_lock = asyncio.Lock()
        self._unsubscribe = dispatcher.subscribe(
            self.handle_event, frame_types=("error",), include_state=False
        )

    # ----------------- Queries -----------------

    def is_authorized(self, node_reference: str) -> bool:
        """Return True while the node holds an unexpired token."""

        return self.get_token(node_reference) is not None

    def get_token(self, node_reference: str) -> NodeAuthToken | None:
        """Return the node's token, expiring it lazily."""

        key = _node_key(node_reference)
        token = self._tokens.get(key)
        if token is None:
            return None
        if token.is_expired(self._clock()):
            _LOGGER.debug("Remote token for %s expired", key)
            self._drop(key)
            self._notify(key, EVENT_EXPIRED, {"node_reference": key})
            return None
        return token

    def remaining_time(self, node_reference: str) -> float:
        """Return seconds of validity left for the node's token."""

        token = self.get_token(node_reference)
        if token is None:
            return 0.0
        return max(0.0, token.expires_at - self._clock())

    def authorized_nodes(self) -> list[str]:
        """Return the nodes currently authorised."""

        return [key for key in list(self._tokens) if self.is_authorized(key)]

    # ----------------- Commands -----------------

    async def authorize(
        self, node_reference: str, credential: Credential | str
    ) -> NodeAuthToken:
        """Authorise remote management of ``node_reference``.

        ``credential`` is either a ready JWT or a signed wallet credential
        exchanged through the token provider. Raises :class:`NotConnected`
        unless the primary connection is authenticated, :class:`AuthRejected`
        when the server refuses and :class:`RequestTimeout` when it does not
        answer.
        """

        key = _node_key(node_reference)
        existing = self.get_token(key)
        if existing is not None:
            self._notify(key, EVENT_AUTHORIZED, {"node_reference": key, "cached": True})
            return existing

        task = self._inflight.get(key)
        if task is None or task.done():
            task = asyncio.get_running_loop().create_task(
                self._authorize_with_retry(key, credential)
            )
            self._inflight[key] = task
            task.add_done_callback(lambda done, key=key: self._on_task_done(key, done))
        else:
            _LOGGER.debug("Remote auth for %s already in progress", key)
        return await asyncio.shield(task)

    def invalidate(self, node_reference: str) -> bool:
        """Drop the node's token; return True if one was held."""

        key = _node_key(node_reference)
        if key not in self._tokens:
            return False
        self._drop(key)
        self._notify(key, EVENT_EXPIRED, {"node_reference": key, "manual": True})
        return True

    def invalidate_all(self) -> None:
        """Drop every node token."""

        for key in list(self._tokens):
            self.invalidate(key)

    def subscribe(self, node_reference: str, listener: NodeListener) -> Callable[[], None]:
        """Register ``listener(event, data)`` for one node; return a remover."""

        key = _node_key(node_reference)
        self._listeners.setdefault(key, []).append(listener)

        def _remove() -> None:
            listeners = self._listeners.get(key)
            if listeners and listener in listeners:
                listeners.remove(listener)
                if not listeners:
                    self._listeners.pop(key, None)

        return _remove

    def handle_event(self, event: MonitorEvent) -> None:
        """Dispatcher listener: drop tokens rejected by a node-scoped error."""

        if event.kind != EVENT_FRAME or not isinstance(event.frame, ErrorFrame):
            return
        frame = event.frame
        if not frame.node_reference or frame.request_id:
            return
        if not is_remote_auth_error(frame):
            return
        key = frame.node_reference.strip()
        if key in self._tokens:
            _LOGGER.info("Remote token for %s rejected (%s)", key, frame.code)
            self._drop(key)
            self._notify(key, EVENT_ERROR, AuthRejected(frame.message, code=frame.code))

    def close(self) -> None:
        """Cancel timers and in-flight attempts and stop listening."""

        self._unsubscribe()
        for task in self._inflight.values():
            task.cancel()
        self._inflight.clear()
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._tokens.clear()

    # ----------------- Internals -----------------

    async def _authorize_with_retry(
        self, key: str, credential: Credential | str
    ) -> NodeAuthToken:
        retries = 0
        while True:
            try:
                return await self._authorize_once(key, credential)
            except AuthRejected as err:
                if is_not_connected(str(err)) and retries < len(self._retry_delays):
                    delay = self._retry_delays[retries]
                    retries += 1
                    _LOGGER.info(
                        "Node %s not connected; retrying remote auth in %.0fs (%d/%d)",
                        key,
                        delay,
                        retries,
                        len(self._retry_delays),
                    )
                    self._notify(key, EVENT_RETRYING, {"attempt": retries, "delay": delay})
                    await self._sleep(delay)
                    continue
                self._notify(key, EVENT_ERROR, err)
                raise
            except asyncio.CancelledError:
                raise
            except Exception as err:
                _LOGGER.info(
                    "Remote auth for %s failed (%s: %s)", key, type(err).__name__, err
                )
                self._notify(key, EVENT_ERROR, err)
                raise

    async def _authorize_once(
        self, key: str, credential: Credential | str
    ) -> NodeAuthToken:
        if not self._connection.is_authenticated:
            raise NotConnected("monitor connection is not authenticated")

        jwt_token = await self._resolve_jwt(key, credential)

        async with self._wire_lock:
            loop = asyncio.get_running_loop()
            future: asyncio.Future[RemoteAuthSuccessFrame | ErrorFrame] = (
                loop.create_future()
            )

            def _listener(event: MonitorEvent) -> None:
                frame = event.frame
                if future.done() or frame is None:
                    return
                node = getattr(frame, "node_reference", None)
                if node is not None and node != key:
                    return
                if isinstance(frame, RemoteAuthSuccessFrame):
                    future.set_result(frame)
                elif isinstance(frame, ErrorFrame) and not frame.request_id:
                    if is_remote_auth_error(frame):
                        future.set_result(frame)

            unsubscribe = self._dispatcher.subscribe(
                _listener,
                frame_types=("remote_auth_success", "error"),
                include_state=False,
            )
            try:
                await self._connection.send(RemoteAuthRequest(jwt_token=jwt_token))
                async with asyncio.timeout(self._auth_timeout):
                    reply = await future
            except TimeoutError as err:
                raise RequestTimeout(
                    f"remote auth for {key} timed out after {self._auth_timeout:.0f}s"
                ) from err
            finally:
                unsubscribe()

        if isinstance(reply, ErrorFrame):
            message = reply.message or "remote authentication failed"
            if is_not_connected(message):
                message = f"Node {key} is not connected: {message}"
            raise AuthRejected(message, code=reply.code)

        now = self._clock()
        token = NodeAuthToken(
            node_reference=key,
            token=jwt_token,
            created_at=now,
            expires_at=now + self._token_ttl,
        )
        self._store(token)
        _LOGGER.info("Remote management authorised for %s", key)
        self._notify(key, EVENT_AUTHORIZED, {"node_reference": key, "cached": False})
        return token

    async def _resolve_jwt(self, key: str, credential: Credential | str) -> str:
        if isinstance(credential, str):
            jwt_token = credential
        else:
            if self._token_provider is None:
                raise AuthRejected("no token provider configured for remote auth")
            jwt_token = await self._token_provider(key, credential)
        if not jwt_token:
            raise AuthRejected("no remote management token received")
        return jwt_token

    def _store(self, token: NodeAuthToken) -> None:
        key = token.node_reference
        self._drop(key)
        self._tokens[key] = token
        delay = max(0.0, token.expires_at - self._clock())
        self._timers[key] = asyncio.get_running_loop().call_later(
            delay, self._expire, key, token
        )

    def _expire(self, key: str, token: NodeAuthToken) -> None:
        self._timers.pop(key, None)
        if self._tokens.get(key) is not token:
            return
        self._tokens.pop(key, None)
        _LOGGER.debug("Remote token for %s expired", key)
        self._notify(key, EVENT_EXPIRED, {"node_reference": key})

    def _drop(self, key: str) -> None:
        self._tokens.pop(key, None)
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()

    def _on_task_done(self, key: str, task: asyncio.Task[NodeAuthToken]) -> None:
        if not task.cancelled():
            task.exception()
        if self._inflight.get(key) is task:
            self._inflight.pop(key, None)

    def _notify(self, key: str, event: str, data: Any) -> None:
        for listener in list(self._listeners.get(key, ())):
            try:
                listener(event, data)
            except Exception:
                _LOGGER.exception("Remote auth listener failed for %s", event)


__all__ = [
    "EVENT_AUTHORIZED",
    "EVENT_ERROR",
    "EVENT_EXPIRED",
    "EVENT_RETRYING",
    "RemoteAuthManager",
    "RemoteConnection",
    "TokenProvider",
    "is_not_connected",
    "is_remote_auth_error",
]
